from datetime import datetime

from pydantic import BaseModel

from lectern import types as t
from lectern.queue import COMPLETED, FAILED, PENDING, PROCESSING, TranscriptQueue
from lectern.store import TranscriptStore

RECENT_LIMIT = 10


class QueueStatus(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    current_job: str | None = None
    in_flight: list[str] = []
    active: bool = False


class SegmentView(BaseModel):
    start_time: float
    end_time: float
    text: str
    speaker_name: str | None = None
    confidence: float | None = None


class TranscriptView(BaseModel):
    video_id: str
    status: str
    language: str | None = None
    segments: list[SegmentView] = []
    confidence: float | None = None
    error: str | None = None
    generated_at: datetime | None = None
    provider: str | None = None


class RecentTranscript(BaseModel):
    video_id: str
    status: str
    provider: str | None = None
    error: str | None = None
    updated_at: datetime | None = None


class TranscriptStatistics(BaseModel):
    total: int
    counts: dict[str, int]
    recent: list[RecentTranscript]


def queue_status(queue: TranscriptQueue) -> QueueStatus:
    counts = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
    in_flight = []
    for r in queue.jobs():
        counts[r.state] += 1
        if r.state == PROCESSING:
            in_flight.append(r.video_id)
    return QueueStatus(
        pending=counts[PENDING],
        processing=counts[PROCESSING],
        completed=counts[COMPLETED],
        failed=counts[FAILED],
        total=sum(counts.values()),
        current_job=in_flight[0] if in_flight else None,
        in_flight=in_flight,
        active=queue.active,
    )


def transcript_view(video_id: str, transcript: t.Transcript | None) -> TranscriptView:
    """A video with no stored transcript reports status NONE."""
    if transcript is None:
        return TranscriptView(video_id=video_id, status=t.TranscriptStatus.NONE.value)
    return TranscriptView(
        video_id=transcript.video_id,
        status=transcript.status.value,
        language=transcript.language,
        segments=[SegmentView(**s.to_dict()) for s in transcript.segments],
        confidence=transcript.confidence,
        error=transcript.error,
        generated_at=transcript.generated_at,
        provider=transcript.provider,
    )


async def transcript_statistics(store: TranscriptStore, limit: int = RECENT_LIMIT) -> TranscriptStatistics:
    transcripts = await store.list_transcripts()
    counts = {s.value: 0 for s in t.TranscriptStatus if s != t.TranscriptStatus.NONE}
    for tr in transcripts:
        counts[tr.status.value] = counts.get(tr.status.value, 0) + 1

    recent = sorted(
        transcripts,
        key=lambda tr: tr.updated_at.timestamp() if tr.updated_at else 0.0,
        reverse=True,
    )[:limit]
    return TranscriptStatistics(
        total=len(transcripts),
        counts=counts,
        recent=[
            RecentTranscript(
                video_id=tr.video_id,
                status=tr.status.value,
                provider=tr.provider,
                error=tr.error,
                updated_at=tr.updated_at,
            )
            for tr in recent
        ],
    )
