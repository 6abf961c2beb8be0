import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from lectern.errors import ConfigurationError

PROVIDERS = ("assemblyai", "openai")
DEFAULT_PROVIDER = "assemblyai"
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_BATCH_PAUSE = 1.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_ATTEMPTS = 120
DEFAULT_LANGUAGE = "en"
DATA_DIR = Path(os.environ.get("LECTERN_DATA_DIR", Path.home() / ".local" / "share" / "lectern"))


def _env_int(env: dict, name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: dict, name: str, default: float) -> float:
    raw = env.get(name)
    if raw in (None, ""):
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    provider: str = DEFAULT_PROVIDER
    assemblyai_api_key: str | None = None
    openai_api_key: str | None = None
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    batch_pause: float = DEFAULT_BATCH_PAUSE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    language: str = DEFAULT_LANGUAGE
    data_dir: Path = DATA_DIR

    @classmethod
    def from_env(cls, env: dict | None = None) -> "Settings":
        env = os.environ if env is None else env
        provider = (env.get("LECTERN_PROVIDER") or DEFAULT_PROVIDER).strip().lower()
        if provider not in PROVIDERS:
            raise ConfigurationError(
                f"LECTERN_PROVIDER must be one of {', '.join(PROVIDERS)}, got {provider!r}"
            )
        return cls(
            provider=provider,
            assemblyai_api_key=env.get("ASSEMBLYAI_API_KEY") or None,
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            max_concurrent=_env_int(env, "LECTERN_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT),
            batch_pause=_env_float(env, "LECTERN_BATCH_PAUSE", DEFAULT_BATCH_PAUSE),
            poll_interval=_env_float(env, "LECTERN_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            poll_attempts=_env_int(env, "LECTERN_POLL_ATTEMPTS", DEFAULT_POLL_ATTEMPTS),
            language=env.get("LECTERN_LANGUAGE") or DEFAULT_LANGUAGE,
            data_dir=Path(env["LECTERN_DATA_DIR"]) if env.get("LECTERN_DATA_DIR") else DATA_DIR,
        )

    @property
    def api_key(self) -> str | None:
        return self.assemblyai_api_key if self.provider == "assemblyai" else self.openai_api_key


def check(settings: Settings) -> tuple[list[str], list[str]]:
    """Return (errors, warnings) for the configured provider."""
    errors = []
    warnings = []

    if settings.provider == "assemblyai" and not settings.assemblyai_api_key:
        errors.append("ASSEMBLYAI_API_KEY not set: required by LECTERN_PROVIDER=assemblyai")
    if settings.provider == "openai" and not settings.openai_api_key:
        errors.append("OPENAI_API_KEY not set: required by LECTERN_PROVIDER=openai")

    if settings.provider != "assemblyai" and not settings.assemblyai_api_key:
        warnings.append("ASSEMBLYAI_API_KEY not set: speaker-labelled transcription unavailable")
    if settings.provider != "openai" and not settings.openai_api_key:
        warnings.append("OPENAI_API_KEY not set: Whisper transcription unavailable")

    return errors, warnings


def require(settings: Settings):
    errors, warnings = check(settings)
    for w in warnings:
        logging.getLogger(__name__).warning("config.warning %s", w)
    if errors:
        print("Missing requirements:", file=sys.stderr)
        for e in errors:
            print(f"  - {e}", file=sys.stderr)
        sys.exit(1)


def data_dir(settings: Settings) -> Path:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings.data_dir


def configure_logging(level: str | None = None):
    logging.basicConfig(
        level=(level or os.environ.get("LECTERN_LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
