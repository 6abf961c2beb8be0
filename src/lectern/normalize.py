"""
Segment normalization.

Every transcript representation the pipeline accepts (provider utterances and
word timings, WebVTT, SubRip, JSON segment arrays, YouTube-style arrays and
plain text) converges here on one list of `Segment`s, trimmed, with empty
spans dropped and ordered by start time.

A cue whose timestamps cannot be parsed is dropped with a warning; no
timestamp ever defaults to 0.
"""

import json
import logging
import math
import re
from typing import Any, Iterable, Sequence

from lectern import types as t
from lectern.errors import InputError, UnsupportedFormatError

logger = logging.getLogger(__name__)

WORDS_PER_SEGMENT = 15
PLAIN_TEXT_FALLBACK_DURATION = 3600.0

_EXTENSIONS = {
    ".vtt": "vtt",
    ".srt": "srt",
    ".json": "json",
    ".txt": "text",
    ".text": "text",
}

_TAG_RE = re.compile(r'<[^>]+>')
_VOICE_RE = re.compile(r'^<v(?:\.[^\s>]+)?\s+([^>]+)>')
_DIGITS_RE = re.compile(r'^\d+$')
_BOM = '\ufeff'


class TimestampError(ValueError):
    pass


def parse_timestamp(text: str, ms_sep: str = ".") -> float:
    """Parse `HH:MM:SS<sep>mmm` or `MM:SS<sep>mmm` into seconds."""
    raw = text.strip()
    pieces = raw.split(ms_sep)
    if len(pieces) > 2:
        raise TimestampError(f"Malformed timestamp {text!r}")
    fraction = 0.0
    if len(pieces) == 2:
        if not _DIGITS_RE.match(pieces[1]):
            raise TimestampError(f"Malformed timestamp {text!r}")
        fraction = int(pieces[1]) / (10 ** len(pieces[1]))

    colon_pieces = list(reversed(pieces[0].split(':')))
    if not 2 <= len(colon_pieces) <= 3 or not all(_DIGITS_RE.match(p) for p in colon_pieces):
        raise TimestampError(f"Malformed timestamp {text!r}")

    seconds = int(colon_pieces[0]) + fraction
    seconds += 60 * int(colon_pieces[1])
    if len(colon_pieces) == 3:
        seconds += 3600 * int(colon_pieces[2])
    return seconds


def _cue_times(line: str, ms_sep: str) -> tuple[float, float]:
    start_raw, _, end_raw = line.partition('-->')
    end_fields = end_raw.split()
    if not end_fields:
        raise TimestampError(f"Missing end timestamp in {line!r}")
    start = parse_timestamp(start_raw, ms_sep)
    end = parse_timestamp(end_fields[0], ms_sep)
    if end < start:
        raise TimestampError(f"End precedes start in {line!r}")
    return start, end


def ordered(segments: Iterable[t.Segment]) -> list[t.Segment]:
    kept = []
    for seg in segments:
        text = seg.text.strip()
        if not text:
            continue
        seg.text = text
        kept.append(seg)
    return sorted(kept, key=lambda s: s.start_time)


# --- Provider output ---

def _ms(value: Any) -> float:
    return float(value) / 1000.0


def _speaker_label(speaker: Any) -> str | None:
    if speaker is None or speaker == "":
        return None
    return f"Speaker {speaker}"


def from_utterances(utterances: Sequence[dict]) -> list[t.Segment]:
    """Speaker-segmented utterances with millisecond `start`/`end`."""
    return ordered(
        t.Segment(
            start_time=_ms(u["start"]),
            end_time=_ms(u["end"]),
            text=u.get("text") or "",
            speaker_name=_speaker_label(u.get("speaker")),
            confidence=u.get("confidence"),
        )
        for u in utterances
    )


def from_words(words: Sequence[dict], chunk_size: int = WORDS_PER_SEGMENT) -> list[t.Segment]:
    """Group millisecond word timings into fixed-size synthetic segments."""
    segments = []
    for i in range(0, len(words), chunk_size):
        chunk = words[i:i + chunk_size]
        confidences = [w["confidence"] for w in chunk if w.get("confidence") is not None]
        speakers = {w.get("speaker") for w in chunk}
        segments.append(t.Segment(
            start_time=_ms(chunk[0]["start"]),
            end_time=_ms(chunk[-1]["end"]),
            text=" ".join((w.get("text") or "").strip() for w in chunk),
            speaker_name=_speaker_label(speakers.pop()) if len(speakers) == 1 else None,
            confidence=sum(confidences) / len(confidences) if confidences else None,
        ))
    return ordered(segments)


# --- Subtitle files ---

def _cue_text(line: str) -> tuple[str, str | None]:
    voice = _VOICE_RE.match(line)
    return _TAG_RE.sub('', line).strip(), voice.group(1).strip() if voice else None


def parse_vtt(content: str) -> list[t.Segment]:
    segments = []
    current: t.Segment | None = None

    for raw in content.lstrip(_BOM).splitlines():
        line = raw.strip()

        if '-->' in line:
            if current and current.text:
                segments.append(current)
            try:
                start, end = _cue_times(line, '.')
            except TimestampError as e:
                logger.warning("vtt.cue_rejected reason=%s", e)
                current = None
                continue
            current = t.Segment(start_time=start, end_time=end, text="")
        elif line and current and not line.startswith('NOTE') and not line.startswith('WEBVTT'):
            text, speaker = _cue_text(line)
            if speaker and not current.speaker_name:
                current.speaker_name = speaker
            if text:
                current.text = f"{current.text} {text}" if current.text else text
        elif not line and current:
            if current.text:
                segments.append(current)
            current = None

    if current and current.text:
        segments.append(current)
    return ordered(segments)


def parse_srt(content: str) -> list[t.Segment]:
    segments = []
    text = content.lstrip(_BOM).replace('\r\n', '\n').strip()
    for block in re.split(r'\n\s*\n', text):
        lines = [l.strip() for l in block.split('\n')]
        if len(lines) >= 2 and '-->' in lines[1]:
            timing, body = lines[1], lines[2:]
        elif lines and '-->' in lines[0]:
            timing, body = lines[0], lines[1:]
        else:
            continue
        try:
            start, end = _cue_times(timing, ',')
        except TimestampError as e:
            logger.warning("srt.cue_rejected reason=%s", e)
            continue
        segments.append(t.Segment(
            start_time=start,
            end_time=end,
            text=" ".join(_TAG_RE.sub('', l).strip() for l in body if l),
        ))
    return ordered(segments)


def from_plain_text(content: str, duration: float | None = None) -> list[t.Segment]:
    """No timing information: the whole text becomes one segment."""
    return ordered([t.Segment(
        start_time=0.0,
        end_time=float(duration) if duration else PLAIN_TEXT_FALLBACK_DURATION,
        text=content,
    )])


# --- JSON arrays ---

def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _first(item: dict, *keys: str) -> Any:
    return next((item[k] for k in keys if item.get(k) is not None), None)


def _speaker(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _load_array(data: Any) -> list:
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise InputError(f"Transcript is not valid JSON: {e}") from e
    if isinstance(data, dict) and isinstance(data.get("segments"), list):
        data = data["segments"]
    if not isinstance(data, list):
        raise InputError("Transcript JSON must be an array of segments")
    return data


def from_json_segments(data: Any) -> list[t.Segment]:
    """
    A JSON array of segment objects. Accepts canonical `startTime`/`endTime`,
    snake_case, `start`/`end`, or YouTube-style `start`/`duration` keys.
    """
    segments = []
    for item in _load_array(data):
        if not isinstance(item, dict):
            logger.warning("json.segment_rejected reason=not-an-object")
            continue
        start = _number(_first(item, "startTime", "start_time", "start"))
        end = _number(_first(item, "endTime", "end_time", "end"))
        duration = _number(item.get("duration"))
        if start is None:
            logger.warning("json.segment_rejected reason=missing-start")
            continue
        if end is None:
            end = start + (duration or 0.0)
        if end < start:
            logger.warning("json.segment_rejected reason=end-before-start start=%s end=%s", start, end)
            continue
        confidence = _number(item.get("confidence"))
        segments.append(t.Segment(
            start_time=start,
            end_time=end,
            text=str(item.get("text") or ""),
            speaker_name=_speaker(_first(item, "speakerName", "speaker_name", "speaker")),
            confidence=confidence,
        ))
    return ordered(segments)


def from_youtube(data: Any) -> list[t.Segment]:
    """YouTube transcript export: `{start, duration, text}` objects."""
    segments = []
    for item in _load_array(data):
        if not isinstance(item, dict):
            logger.warning("youtube.segment_rejected reason=not-an-object")
            continue
        start = _number(item.get("start"))
        if start is None:
            logger.warning("youtube.segment_rejected reason=missing-start")
            continue
        duration = _number(item.get("duration"))
        if duration is not None and duration < 0:
            logger.warning("youtube.segment_rejected reason=negative-duration duration=%s", duration)
            continue
        segments.append(t.Segment(
            start_time=start,
            end_time=start + (duration or 0.0),
            text=str(item.get("text") or ""),
        ))
    return ordered(segments)


# --- Upload dispatch ---

def detect_format(filename: str) -> str:
    name = filename.lower()
    for ext, fmt in _EXTENSIONS.items():
        if name.endswith(ext):
            return fmt
    raise UnsupportedFormatError(f"Cannot infer transcript format from {filename!r}")


def parse(data: Any, fmt: str, duration: float | None = None) -> list[t.Segment]:
    fmt = (fmt or "").lower()
    if fmt == "vtt":
        segments = parse_vtt(_as_text(data))
    elif fmt == "srt":
        segments = parse_srt(_as_text(data))
    elif fmt == "json":
        segments = from_json_segments(data)
    elif fmt == "youtube":
        segments = from_youtube(data)
    elif fmt == "text":
        segments = from_plain_text(_as_text(data), duration)
    else:
        raise UnsupportedFormatError(f"Unsupported transcript format {fmt!r}")
    return segments


def _as_text(data: Any) -> str:
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    if not isinstance(data, str):
        raise InputError("Transcript data must be text for this format")
    return data


# --- Derived views ---

def flatten(segments: Sequence[t.Segment]) -> str:
    return " ".join(s.text for s in segments)


def mean_confidence(segments: Sequence[t.Segment]) -> float | None:
    values = [s.confidence for s in segments if s.confidence is not None]
    return sum(values) / len(values) if values else None


def format_timestamp(seconds: float) -> str:
    """`MM:SS`, or `HH:MM:SS` past the first hour."""
    total = int(seconds)
    hours, minutes, secs = total // 3600, (total % 3600) // 60, total % 60
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_with_timestamps(segments: Sequence[t.Segment]) -> str:
    lines = []
    for s in segments:
        speaker = f"{s.speaker_name}: " if s.speaker_name else ""
        lines.append(f"[{format_timestamp(s.start_time)}] {speaker}{s.text}")
    return "\n\n".join(lines)


def _vtt_time(seconds: float) -> str:
    ms_total = int(round(seconds * 1000))
    hours, rem = divmod(ms_total, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def to_vtt(segments: Sequence[t.Segment]) -> str:
    if not segments:
        return "WEBVTT\n\nNOTE\nNo transcript segments available\n"
    parts = ["WEBVTT\n"]
    for i, s in enumerate(segments, start=1):
        text = f"<v {s.speaker_name}>{s.text}" if s.speaker_name else s.text
        parts.append(f"{i}\n{_vtt_time(s.start_time)} --> {_vtt_time(s.end_time)}\n{text}\n")
    return "\n".join(parts)


def merge_segments(segments: Sequence[t.Segment], max_gap: float = 1.0) -> list[t.Segment]:
    """Join consecutive segments separated by at most `max_gap` seconds."""
    merged: list[t.Segment] = []
    for s in ordered(list(segments)):
        prev = merged[-1] if merged else None
        if prev and s.start_time - prev.end_time <= max_gap and prev.speaker_name == s.speaker_name:
            prev.end_time = max(prev.end_time, s.end_time)
            prev.text = f"{prev.text} {s.text}"
            if prev.confidence is not None and s.confidence is not None:
                prev.confidence = (prev.confidence + s.confidence) / 2
        else:
            merged.append(t.Segment(
                start_time=s.start_time, end_time=s.end_time, text=s.text,
                speaker_name=s.speaker_name, confidence=s.confidence,
            ))
    return merged
