"""
In-memory transcript job queue.

Jobs wait in a priority-ordered pending list. A single runner task drains it
in batches of at most `max_concurrent` jobs, waits for the whole batch to
settle, pauses `batch_pause` seconds if more work is pending, and exits when
the list is empty. The next enqueue starts a fresh runner.

At most one job per video is pending and at most one is in flight. Because
batches never overlap, a job queued for a video that is currently in flight
only runs after that job has settled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable

from lectern import normalize, types as t, util
from lectern.errors import InputError
from lectern.store import TranscriptStore
from lectern.transcribe import TranscriptionProvider

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class JobRecord:
    video_id: str
    source_url: str
    priority: t.Priority
    state: str
    error: str | None = None
    finished_at: float | None = None


class TranscriptQueue:
    def __init__(
        self,
        store: TranscriptStore,
        provider: TranscriptionProvider,
        max_concurrent: int = 3,
        batch_pause: float = 1.0,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.store = store
        self.provider = provider
        self.max_concurrent = max_concurrent
        self.batch_pause = batch_pause
        self._pending: list[t.TranscriptJob] = []
        self._in_flight: dict[str, t.TranscriptJob] = {}
        self._finished: dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._runner: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._runner is not None

    async def enqueue(
        self, video_id: str, source_url: str, priority: t.Priority | str = t.Priority.MEDIUM,
    ) -> bool:
        """Queue a video unless it already has a transcript or a job. Returns whether it was queued."""
        return await self._submit(video_id, source_url, priority, force=False)

    async def regenerate(
        self, video_id: str, source_url: str | None = None,
        priority: t.Priority | str = t.Priority.HIGH,
    ) -> bool:
        """Queue a video even if its transcript is COMPLETED; the new segments replace the old ones."""
        if not source_url:
            existing = await self.store.find_transcript(video_id)
            source_url = existing.source_url if existing else None
        if not source_url:
            raise InputError(f"No media URL known for video {video_id!r}")
        return await self._submit(video_id, source_url, priority, force=True)

    async def queue_missing(self, videos: Iterable[t.VideoRef]) -> int:
        count = 0
        for v in videos:
            if not v.source_url:
                logger.warning("queue.skip video_id=%s reason=no-source-url", v.video_id)
                continue
            if await self.enqueue(v.video_id, v.source_url, t.Priority.LOW):
                count += 1
        logger.info("queue.queue_missing queued=%d", count)
        return count

    async def retry_failed(self) -> int:
        """Re-queue every FAILED transcript at medium priority."""
        urls = {
            r.video_id: r.source_url for r in self._finished.values() if r.state == FAILED
        }
        for tr in await self.store.list_transcripts(t.TranscriptStatus.FAILED):
            if tr.source_url:
                urls[tr.video_id] = tr.source_url
            else:
                urls.setdefault(tr.video_id, None)

        count = 0
        for video_id, source_url in urls.items():
            if not source_url:
                logger.warning("queue.retry_skipped video_id=%s reason=no-source-url", video_id)
                continue
            if await self._submit(video_id, source_url, t.Priority.MEDIUM, force=False):
                count += 1
        logger.info("queue.retry_failed queued=%d", count)
        return count

    async def clear_failed(self) -> int:
        async with self._lock:
            failed = [vid for vid, r in self._finished.items() if r.state == FAILED]
            for vid in failed:
                del self._finished[vid]
        return len(failed)

    async def clear_all(self) -> int:
        """Drop pending jobs and finished bookkeeping. In-flight jobs keep running."""
        async with self._lock:
            count = len(self._pending) + len(self._finished)
            self._pending.clear()
            self._finished.clear()
        logger.info("queue.cleared count=%d", count)
        return count

    def jobs(self) -> list[JobRecord]:
        records = [
            JobRecord(j.video_id, j.source_url, j.priority, PENDING) for j in self._pending
        ]
        records += [
            JobRecord(j.video_id, j.source_url, j.priority, PROCESSING)
            for j in self._in_flight.values()
        ]
        records += [
            JobRecord(r.video_id, r.source_url, r.priority, r.state, r.error, r.finished_at)
            for r in self._finished.values()
        ]
        return records

    async def wait_idle(self):
        while self._runner is not None:
            await asyncio.shield(self._runner)

    async def shutdown(self):
        """Stop the runner. Pending and in-flight work is dropped."""
        runner = self._runner
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        self._runner = None

    async def _submit(self, video_id, source_url, priority, force: bool) -> bool:
        if not video_id:
            raise InputError("video_id is required")
        if not source_url:
            raise InputError(f"Video {video_id!r} has no media URL")
        priority = t.Priority.parse(priority)

        if not force:
            existing = await self.store.find_transcript(video_id)
            if existing and existing.status == t.TranscriptStatus.COMPLETED:
                logger.info("queue.skip video_id=%s reason=completed", video_id)
                return False

        async with self._lock:
            pending = util.find(lambda j: j.video_id == video_id, self._pending)
            if pending is not None:
                if not force:
                    return False
                pending.source_url = source_url
                pending.force = True
                pending.priority = max(pending.priority, priority)
                self._sort()
                logger.info("queue.upgraded video_id=%s priority=%s", video_id, pending.priority.name)
                return True
            if video_id in self._in_flight and not force:
                return False

            self._pending.append(t.TranscriptJob(
                video_id=video_id,
                source_url=source_url,
                priority=priority,
                force=force,
                queued_at=time.monotonic(),
            ))
            self._sort()
            self._finished.pop(video_id, None)
            logger.info(
                "queue.enqueued video_id=%s priority=%s force=%s pending=%d",
                video_id, priority.name, force, len(self._pending),
            )
            if self._runner is None:
                self._runner = asyncio.create_task(self._drain())
        return True

    def _sort(self):
        self._pending.sort(key=lambda j: -j.priority)

    async def _drain(self):
        while True:
            async with self._lock:
                batch = self._pending[:self.max_concurrent]
                del self._pending[:self.max_concurrent]
                if not batch:
                    self._runner = None
                    return
                for job in batch:
                    self._in_flight[job.video_id] = job

            logger.info("queue.batch size=%d pending=%d", len(batch), len(self._pending))
            await asyncio.gather(*(self._run_job(job) for job in batch))

            async with self._lock:
                for job in batch:
                    self._in_flight.pop(job.video_id, None)
                more = bool(self._pending)
            if more and self.batch_pause > 0:
                await asyncio.sleep(self.batch_pause)

    async def _run_job(self, job: t.TranscriptJob):
        vid = job.video_id
        waited = time.monotonic() - job.queued_at
        t0 = time.monotonic()
        try:
            if not job.force:
                current = await self.store.find_transcript(vid)
                if current and current.status == t.TranscriptStatus.COMPLETED:
                    logger.info("queue.job_skipped video_id=%s reason=completed", vid)
                    self._record(job, COMPLETED)
                    return
            await self.store.upsert_transcript(
                vid, t.TranscriptStatus.PROCESSING,
                error=None, source_url=job.source_url, provider=self.provider.name,
            )
            logger.info("queue.job_started video_id=%s waited=%.1fs", vid, waited)

            result = await self.provider.transcribe(job.source_url)
            segments = normalize.ordered(result.segments)
            await self.store.replace_segments(vid, segments)
            await self.store.upsert_transcript(
                vid, t.TranscriptStatus.COMPLETED,
                language=result.language,
                content=result.full_text or normalize.flatten(segments),
                confidence=result.confidence,
                provider=result.provider,
                error=None,
                generated_at=util.utcnow(),
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("queue.job_failed video_id=%s error=%s", vid, message)
            try:
                await self.store.upsert_transcript(vid, t.TranscriptStatus.FAILED, error=message)
            except Exception:
                logger.exception("queue.fail_write_failed video_id=%s", vid)
            self._record(job, FAILED, message)
            return

        logger.info(
            "queue.job_completed video_id=%s segments=%d elapsed=%.1fs",
            vid, len(segments), time.monotonic() - t0,
        )
        self._record(job, COMPLETED)

    def _record(self, job: t.TranscriptJob, state: str, error: str | None = None):
        self._finished[job.video_id] = JobRecord(
            video_id=job.video_id,
            source_url=job.source_url,
            priority=job.priority,
            state=state,
            error=error,
            finished_at=time.monotonic(),
        )
