import asyncio
import logging
import math
import re
from pathlib import PurePosixPath
from typing import Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx

from lectern import normalize, runtime, types as t
from lectern.errors import (
    AudioFetchError,
    ConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    TranscriptionError,
)

logger = logging.getLogger(__name__)

ASSEMBLYAI_URL = "https://api.assemblyai.com/v2"
OPENAI_URL = "https://api.openai.com/v1"
OPENAI_MODEL = "whisper-1"
OPENAI_MAX_UPLOAD_BYTES = 25 * 1024 * 1024
HTTP_TIMEOUT = httpx.Timeout(30.0, read=300.0)

_VIDEO_EXT_RE = re.compile(r'\.(mp4|mov|avi|mkv|webm)$', re.IGNORECASE)


def audio_url(video_url: str) -> str:
    """Cloudinary serves an audio rendition of any video at the same path with `.mp3`."""
    if "cloudinary.com" in video_url:
        return _VIDEO_EXT_RE.sub(".mp3", video_url)
    return video_url


def _new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT, follow_redirects=True)


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
    return str(body)[:200]


@runtime_checkable
class TranscriptionProvider(Protocol):
    name: str

    async def transcribe(self, source_url: str) -> t.TranscriptionResult: ...

    async def aclose(self) -> None: ...


class AssemblyAITranscriber:
    """
    Submits the audio URL, then polls the transcript until it completes,
    errors, or `max_attempts` polls have been spent.
    """

    name = "assemblyai"

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        poll_interval: float = runtime.DEFAULT_POLL_INTERVAL,
        max_attempts: int = runtime.DEFAULT_POLL_ATTEMPTS,
        language: str = runtime.DEFAULT_LANGUAGE,
        base_url: str = ASSEMBLYAI_URL,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._headers = {"Authorization": api_key}
        self._client = client or _new_client()
        self._owns_client = client is None
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._language = language
        self._base_url = base_url.rstrip("/")

    async def transcribe(self, source_url: str) -> t.TranscriptionResult:
        transcript_id = await self._submit(audio_url(source_url))
        logger.info("assemblyai.submitted transcript_id=%s", transcript_id)
        payload = await self._poll(transcript_id)
        return self._to_result(payload)

    async def _submit(self, url: str) -> str:
        try:
            resp = await self._client.post(
                f"{self._base_url}/transcript",
                headers=self._headers,
                json={
                    "audio_url": url,
                    "speaker_labels": True,
                    "language_detection": True,
                    "punctuate": True,
                    "format_text": True,
                },
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"AssemblyAI submission failed: {e}") from e
        if resp.is_error:
            raise ProviderError(f"AssemblyAI submission failed ({resp.status_code}): {_error_detail(resp)}")
        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderError("AssemblyAI submission returned invalid JSON") from e
        transcript_id = body.get("id") if isinstance(body, dict) else None
        if not transcript_id:
            raise ProviderError("Failed to submit transcript request: no transcript id returned")
        return transcript_id

    async def _poll(self, transcript_id: str) -> dict:
        for attempt in range(1, self._max_attempts + 1):
            await asyncio.sleep(self._poll_interval)
            try:
                resp = await self._client.get(
                    f"{self._base_url}/transcript/{transcript_id}", headers=self._headers,
                )
                resp.raise_for_status()
                payload = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                raise ProviderError(f"AssemblyAI status check failed: {e}") from e

            status = payload.get("status")
            if status == "completed":
                logger.info("assemblyai.completed transcript_id=%s attempts=%d", transcript_id, attempt)
                return payload
            if status == "error":
                raise ProviderError(f"Transcript generation failed: {payload.get('error') or 'unknown error'}")
            logger.debug("assemblyai.polling transcript_id=%s status=%s attempt=%d", transcript_id, status, attempt)

        raise ProviderTimeoutError(
            f"Transcript generation timed out after {self._max_attempts} status checks"
        )

    def _to_result(self, payload: dict) -> t.TranscriptionResult:
        if payload.get("utterances"):
            segments = normalize.from_utterances(payload["utterances"])
        elif payload.get("words"):
            segments = normalize.from_words(payload["words"])
        else:
            segments = normalize.from_plain_text(payload.get("text") or "", payload.get("audio_duration"))
        if not segments:
            raise TranscriptionError("AssemblyAI returned no speech")

        confidence = normalize.mean_confidence(segments)
        return t.TranscriptionResult(
            segments=segments,
            language=payload.get("language_code") or self._language,
            full_text=payload.get("text") or normalize.flatten(segments),
            provider=self.name,
            confidence=confidence if confidence is not None else payload.get("confidence"),
        )

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


class OpenAITranscriber:
    """Whisper answers synchronously, so there is nothing to poll."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        model: str = OPENAI_MODEL,
        language: str = runtime.DEFAULT_LANGUAGE,
        base_url: str = OPENAI_URL,
        max_bytes: int = OPENAI_MAX_UPLOAD_BYTES,
    ):
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or _new_client()
        self._owns_client = client is None
        self._model = model
        self._language = language
        self._base_url = base_url.rstrip("/")
        self._max_bytes = max_bytes

    async def transcribe(self, source_url: str) -> t.TranscriptionResult:
        url = audio_url(source_url)
        audio = await self._download(url)
        logger.info("openai.audio_fetched bytes=%d", len(audio))
        filename = PurePosixPath(urlparse(url).path).name or "audio.mp3"
        body = await self._create(audio, filename)

        segments = normalize.ordered(
            t.Segment(
                start_time=float(s["start"]),
                end_time=float(s["end"]),
                text=s.get("text") or "",
                confidence=math.exp(s["avg_logprob"]) if s.get("avg_logprob") is not None else None,
            )
            for s in body.get("segments") or []
        )
        if not segments:
            segments = normalize.from_plain_text(body.get("text") or "", body.get("duration"))
        if not segments:
            raise TranscriptionError("OpenAI returned no speech")

        return t.TranscriptionResult(
            segments=segments,
            language=body.get("language") or self._language,
            full_text=(body.get("text") or normalize.flatten(segments)).strip(),
            provider=self.name,
            confidence=normalize.mean_confidence(segments),
        )

    async def _download(self, url: str) -> bytes:
        chunks = []
        size = 0
        try:
            async with self._client.stream("GET", url) as r:
                if r.is_error:
                    raise AudioFetchError(f"Failed to download audio: HTTP {r.status_code}")
                async for chunk in r.aiter_bytes(chunk_size=65536):
                    size += len(chunk)
                    if size > self._max_bytes:
                        raise AudioFetchError(
                            f"Audio file too large: over {self._max_bytes // (1024 * 1024)}MB"
                        )
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            raise AudioFetchError(f"Failed to download audio: {e}") from e
        return b"".join(chunks)

    async def _create(self, audio: bytes, filename: str) -> dict:
        try:
            resp = await self._client.post(
                f"{self._base_url}/audio/transcriptions",
                headers=self._headers,
                data={
                    "model": self._model,
                    "language": self._language,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "segment",
                },
                files={"file": (filename, audio, "audio/mpeg")},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI transcription failed: {e}") from e
        if resp.is_error:
            raise ProviderError(f"OpenAI transcription failed ({resp.status_code}): {_error_detail(resp)}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError("OpenAI transcription returned invalid JSON") from e

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


def select_provider(
    settings: runtime.Settings, client: httpx.AsyncClient | None = None,
) -> TranscriptionProvider:
    if not settings.api_key:
        raise ConfigurationError(f"No API key configured for provider {settings.provider!r}")
    if settings.provider == "assemblyai":
        return AssemblyAITranscriber(
            settings.assemblyai_api_key,
            client=client,
            poll_interval=settings.poll_interval,
            max_attempts=settings.poll_attempts,
            language=settings.language,
        )
    if settings.provider == "openai":
        return OpenAITranscriber(settings.openai_api_key, client=client, language=settings.language)
    raise ConfigurationError(f"Unknown transcription provider {settings.provider!r}")
