import logging
from typing import Any

from lectern import normalize, runtime, types as t, util
from lectern.errors import InputError
from lectern.store import TranscriptStore

logger = logging.getLogger(__name__)


async def ingest(
    store: TranscriptStore,
    video_id: str,
    data: Any,
    fmt: str | None = None,
    filename: str | None = None,
    duration: float | None = None,
    language: str = runtime.DEFAULT_LANGUAGE,
) -> t.Transcript:
    """
    Store a transcript supplied by hand, bypassing the provider. The format is
    taken from `fmt`, or inferred from `filename`'s extension. The new segment
    set replaces whatever the video had, and the transcript becomes COMPLETED.
    """
    if not video_id:
        raise InputError("video_id is required")
    if not fmt:
        if not filename:
            raise InputError("Transcript format is required")
        fmt = normalize.detect_format(filename)
    fmt = fmt.lower()

    segments = normalize.parse(data, fmt, duration=duration)
    if not segments:
        raise InputError("No valid transcript segments found")

    await store.replace_segments(video_id, segments)
    transcript = await store.upsert_transcript(
        video_id, t.TranscriptStatus.COMPLETED,
        language=language,
        content=normalize.flatten(segments),
        confidence=normalize.mean_confidence(segments),
        provider=f"upload:{fmt}",
        error=None,
        generated_at=util.utcnow(),
    )
    logger.info("upload.ingested video_id=%s format=%s segments=%d", video_id, fmt, len(segments))
    return transcript
