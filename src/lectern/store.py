"""
Transcript persistence.

`TranscriptStore` is the gateway the queue, upload ingestion and HTTP layer
talk to. Two implementations: `MemoryStore` for tests and one-shot CLI runs,
`JsonFileStore` keeping one `<video_id>.json` document per video under a
data directory.
"""

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from lectern import types as t, util
from lectern.errors import PersistenceError

logger = logging.getLogger(__name__)

_FIELDS = frozenset({
    "language", "content", "confidence", "provider", "error", "source_url", "generated_at",
})


class TranscriptStore(Protocol):
    async def find_transcript(self, video_id: str) -> t.Transcript | None: ...

    async def upsert_transcript(
        self, video_id: str, status: t.TranscriptStatus, **fields,
    ) -> t.Transcript: ...

    async def replace_segments(self, video_id: str, segments: list[t.Segment]) -> None: ...

    async def list_transcripts(
        self, status: t.TranscriptStatus | None = None,
    ) -> list[t.Transcript]: ...


def _apply(
    current: t.Transcript | None, video_id: str, status: t.TranscriptStatus, fields: dict,
) -> t.Transcript:
    unknown = set(fields) - _FIELDS
    if unknown:
        raise PersistenceError(f"Unknown transcript fields: {', '.join(sorted(unknown))}")
    record = copy.deepcopy(current) if current else t.Transcript(video_id=video_id)
    t.ensure_transition(record.status, status)
    record.status = status
    for k, v in fields.items():
        setattr(record, k, v)
    record.updated_at = util.utcnow()
    return record


class MemoryStore:
    def __init__(self):
        self._records: dict[str, t.Transcript] = {}
        self._lock = asyncio.Lock()

    async def find_transcript(self, video_id):
        record = self._records.get(video_id)
        return copy.deepcopy(record) if record else None

    async def upsert_transcript(self, video_id, status, **fields):
        async with self._lock:
            record = _apply(self._records.get(video_id), video_id, status, fields)
            self._records[video_id] = record
            return copy.deepcopy(record)

    async def replace_segments(self, video_id, segments):
        async with self._lock:
            record = self._records.get(video_id) or t.Transcript(video_id=video_id)
            record.segments = [copy.copy(s) for s in segments]
            self._records[video_id] = record

    async def list_transcripts(self, status=None):
        return [
            copy.deepcopy(r) for r in self._records.values()
            if status is None or r.status == status
        ]


def _to_json(record: t.Transcript) -> dict:
    return {
        "video_id": record.video_id,
        "status": record.status.value,
        "language": record.language,
        "content": record.content,
        "segments": [s.to_dict() for s in record.segments],
        "confidence": record.confidence,
        "provider": record.provider,
        "error": record.error,
        "source_url": record.source_url,
        "generated_at": util.iso(record.generated_at),
        "updated_at": util.iso(record.updated_at),
    }


def _from_json(d: dict) -> t.Transcript:
    return t.Transcript(
        video_id=d["video_id"],
        status=t.TranscriptStatus(d.get("status", "NONE")),
        language=d.get("language"),
        content=d.get("content") or "",
        segments=[t.Segment.from_dict(s) for s in d.get("segments") or []],
        confidence=d.get("confidence"),
        provider=d.get("provider"),
        error=d.get("error"),
        source_url=d.get("source_url"),
        generated_at=util.parse_iso(d.get("generated_at")),
        updated_at=util.parse_iso(d.get("updated_at")),
    )


class JsonFileStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, video_id: str) -> Path:
        return self.root / f"{quote(video_id, safe='')}.json"

    def _read(self, path: Path) -> t.Transcript | None:
        if not path.exists():
            return None
        try:
            return _from_json(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError) as e:
            raise PersistenceError(f"Cannot read transcript {path.name}: {e}") from e

    def _write(self, record: t.Transcript):
        path = self._path(record.video_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(_to_json(record), indent=2))
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceError(f"Cannot write transcript {path.name}: {e}") from e

    async def find_transcript(self, video_id):
        return await asyncio.to_thread(self._read, self._path(video_id))

    async def upsert_transcript(self, video_id, status, **fields):
        async with self._lock:
            current = await asyncio.to_thread(self._read, self._path(video_id))
            record = _apply(current, video_id, status, fields)
            await asyncio.to_thread(self._write, record)
        logger.debug("store.upsert video_id=%s status=%s", video_id, status.value)
        return record

    async def replace_segments(self, video_id, segments):
        async with self._lock:
            record = await asyncio.to_thread(self._read, self._path(video_id))
            record = record or t.Transcript(video_id=video_id)
            record.segments = list(segments)
            await asyncio.to_thread(self._write, record)

    async def list_transcripts(self, status=None):
        def _scan():
            records = []
            for p in sorted(self.root.glob("*.json")):
                try:
                    records.append(self._read(p))
                except PersistenceError as e:
                    logger.warning("store.skip_unreadable file=%s error=%s", p.name, e)
            return records

        records = await asyncio.to_thread(_scan)
        return [r for r in records if r and (status is None or r.status == status)]
