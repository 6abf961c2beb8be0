import enum
from dataclasses import dataclass, field
from datetime import datetime

from lectern.errors import InputError, TransitionError


class Priority(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: "str | int | Priority") -> "Priority":
        if isinstance(value, Priority):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InputError(f"Unknown priority: {value!r}") from None
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise InputError(f"Unknown priority: {value!r}") from None


class TranscriptStatus(str, enum.Enum):
    NONE = "NONE"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[TranscriptStatus, set[TranscriptStatus]] = {
    TranscriptStatus.NONE: {TranscriptStatus.PROCESSING, TranscriptStatus.COMPLETED},
    TranscriptStatus.PROCESSING: {
        TranscriptStatus.PROCESSING, TranscriptStatus.COMPLETED, TranscriptStatus.FAILED,
    },
    TranscriptStatus.COMPLETED: {TranscriptStatus.PROCESSING, TranscriptStatus.COMPLETED},
    TranscriptStatus.FAILED: {TranscriptStatus.PROCESSING, TranscriptStatus.COMPLETED},
}


def ensure_transition(old: TranscriptStatus, new: TranscriptStatus) -> None:
    """
    Raise `TransitionError` unless `old -> new` is in `ALLOWED_TRANSITIONS`.
    COMPLETED and PROCESSING are reachable from every state; FAILED only from
    PROCESSING.
    """
    if new not in ALLOWED_TRANSITIONS[old]:
        raise TransitionError(f"Invalid transcript status transition {old.value} -> {new.value}")


@dataclass
class Segment:
    start_time: float
    end_time: float
    text: str
    speaker_name: str | None = None
    confidence: float | None = None

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time,
            "end_time": self.end_time,
            "text": self.text,
            "speaker_name": self.speaker_name,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Segment":
        return cls(
            start_time=float(d["start_time"]),
            end_time=float(d["end_time"]),
            text=d["text"],
            speaker_name=d.get("speaker_name"),
            confidence=d.get("confidence"),
        )


@dataclass
class Transcript:
    video_id: str
    status: TranscriptStatus = TranscriptStatus.NONE
    language: str | None = None
    content: str = ""
    segments: list[Segment] = field(default_factory=list)
    confidence: float | None = None
    provider: str | None = None
    error: str | None = None
    source_url: str | None = None
    generated_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TranscriptionResult:
    segments: list[Segment]
    language: str
    full_text: str
    provider: str
    confidence: float | None = None


@dataclass
class TranscriptJob:
    video_id: str
    source_url: str
    priority: Priority = Priority.MEDIUM
    force: bool = False
    queued_at: float = 0.0


@dataclass
class VideoRef:
    video_id: str
    source_url: str
    duration: float | None = None
