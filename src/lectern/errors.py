class PipelineError(Exception):
    """Base class for every error raised by lectern."""


class InputError(PipelineError):
    """Rejected caller input: missing media URL, bad priority, unparseable upload."""


class UnsupportedFormatError(InputError):
    """Raised when an upload format is not one of the accepted formats."""


class ConfigurationError(PipelineError):
    """Raised at startup when the configured provider cannot be built."""


class TranscriptionError(PipelineError):
    """Raised when the provider round trip fails."""


class AudioFetchError(TranscriptionError):
    """Raised when the media/audio file cannot be downloaded."""


class ProviderError(TranscriptionError):
    """Raised on a failed submission or an explicit error status from the provider."""


class ProviderTimeoutError(TranscriptionError):
    """Raised when polling exhausts its attempt budget."""


class PersistenceError(PipelineError):
    """Raised by stores when a record cannot be read or written."""


class TransitionError(PersistenceError):
    """Raised on a transcript status change the state machine does not allow."""
