"""End-to-end transcription of one note's audio."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Awaitable, Callable, List, Optional

from openai import AsyncOpenAI

from voicenotes import storage_client
from voicenotes.config import settings
from voicenotes.openai_client import get_client
from voicenotes.processing.audio_analyzer import AudioAnalysisResult, AudioAnalyzer, AudioChunk
from voicenotes.processing.chunk_merger import ChunkMerger
from voicenotes.processing.circuit_breaker import CircuitBreaker
from voicenotes.processing.errors import (
    AudioValidationError,
    FileTooLargeError,
    InvalidFileError,
    RateLimitExceededError,
    classify_error,
)
from voicenotes.processing.rate_limiter import RateLimiter
from voicenotes.processing.retry import with_retry

logger = logging.getLogger(__name__)

SERVICE_NAME = "transcription"

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
}


@dataclass
class TranscriptionResult:
    """Transcript plus metadata from the extended (verbose) mode."""

    text: str
    model: str
    language: Optional[str] = None
    duration: Optional[float] = None
    segments: List[dict] = field(default_factory=list)
    chunks_processed: int = 0
    chunks_failed: int = 0
    processing_time_sec: float = 0.0
    audio: Optional[AudioAnalysisResult] = None


class TranscriptionOrchestrator:
    """Rate-limited, breaker-protected transcription with adaptive chunking."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        analyzer: Optional[AudioAnalyzer] = None,
        merger: Optional[ChunkMerger] = None,
        client_factory: Callable[[], AsyncOpenAI] = get_client,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.analyzer = analyzer or AudioAnalyzer()
        self.merger = merger or ChunkMerger()
        self._client_factory = client_factory
        self._sleep = sleep

    async def transcribe(self, audio_bytes: bytes, filename: str) -> str:
        """Transcribe audio to plain text."""
        result = await self.transcribe_with_metadata(audio_bytes, filename, verbose=False)
        return result.text

    async def transcribe_with_metadata(
        self,
        audio_bytes: bytes,
        filename: str,
        verbose: bool = True,
    ) -> TranscriptionResult:
        """Transcribe audio, returning language, duration and segments too.

        Args:
            audio_bytes: Raw audio
            filename: Original filename
            verbose: Request verbose_json (language/duration/segments)

        Returns:
            TranscriptionResult
        """
        if not audio_bytes:
            raise AudioValidationError("Audio file is empty")

        start_time = time.time()
        await self._admit()

        audio = self.analyzer.analyze(audio_bytes, filename)
        if audio.format == "unknown" and audio.format_confidence < 0.2:
            logger.warning(f"Unrecognised audio signature for {filename}, sending as-is")

        if audio.chunk_plan:
            result = await self._transcribe_chunks(audio_bytes, filename, audio, verbose)
        else:
            name = self._upload_name(filename, audio)
            result = await self._protected_call(
                audio_bytes, name, settings.TRANSCRIPTION_MODEL, verbose, admit=False
            )

        result.audio = audio
        result.processing_time_sec = time.time() - start_time
        logger.info(
            f"Transcribed {filename}: {len(result.text.split())} words "
            f"in {result.processing_time_sec:.1f}s ({audio.model} tier)"
        )
        return result

    async def _admit(self) -> None:
        if not await self.rate_limiter.try_acquire(SERVICE_NAME, settings.RATE_LIMIT_TRANSCRIPTION_RPM):
            raise RateLimitExceededError(
                "Rate limit exceeded for transcription API. Please try again later."
            )

    async def _protected_call(
        self,
        data: bytes,
        filename: str,
        model: str,
        verbose: bool,
        admit: bool,
    ) -> TranscriptionResult:
        async def attempt() -> TranscriptionResult:
            if admit:
                await self._admit()
            return await self._request(data, filename, model, verbose)

        return await self.circuit_breaker.execute(
            lambda: with_retry(attempt, sleep=self._sleep, label=f"transcribe {filename}")
        )

    async def _transcribe_chunks(
        self,
        audio_bytes: bytes,
        filename: str,
        audio: AudioAnalysisResult,
        verbose: bool,
    ) -> TranscriptionResult:
        chunks = audio.chunk_plan.chunks
        concurrency = max(1, settings.AUDIO_CHUNK_CONCURRENCY)
        results: List[Optional[TranscriptionResult]] = [None] * len(chunks)
        first_error: Optional[BaseException] = None

        logger.info(f"Transcribing {filename} in {len(chunks)} chunks (concurrency {concurrency})")

        for batch_start in range(0, len(chunks), concurrency):
            batch = chunks[batch_start:batch_start + concurrency]
            outcomes = await asyncio.gather(
                *(self._transcribe_chunk(audio_bytes, filename, audio, chunk, verbose) for chunk in batch),
                return_exceptions=True,
            )
            for chunk, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception) and not classify_error(outcome).retryable:
                    # A non-retryable error would fail every chunk alike
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.error(f"Chunk {chunk.index} of {filename} failed: {outcome}")
                    first_error = first_error or outcome
                    continue
                results[chunk.index] = outcome

            if batch_start + concurrency < len(chunks):
                await self._sleep(settings.AUDIO_CHUNK_BATCH_PAUSE)

        failed = sum(1 for r in results if r is None)
        if failed == len(chunks):
            raise first_error
        if failed:
            logger.warning(f"{failed} of {len(chunks)} chunks of {filename} failed, transcript has gaps")

        texts = [r.text if r else "" for r in results]
        segments: List[dict] = []
        for chunk, chunk_result in zip(chunks, results):
            if chunk_result is None:
                continue
            for segment in chunk_result.segments:
                segments.append({
                    **segment,
                    "start": segment.get("start", 0.0) + chunk.start_seconds,
                    "end": segment.get("end", 0.0) + chunk.start_seconds,
                })

        languages = [r.language for r in results if r and r.language]
        return TranscriptionResult(
            text=self.merger.merge(texts),
            model=settings.TRANSCRIPTION_MODEL,
            language=languages[0] if languages else None,
            duration=float(audio.estimated_duration),
            segments=segments,
            chunks_processed=len(chunks) - failed,
            chunks_failed=failed,
        )

    async def _transcribe_chunk(
        self,
        audio_bytes: bytes,
        filename: str,
        audio: AudioAnalysisResult,
        chunk: AudioChunk,
        verbose: bool,
    ) -> TranscriptionResult:
        data = self.analyzer.slice(audio_bytes, chunk)
        name = self._upload_name(filename, audio, suffix=f"_chunk_{chunk.index}")
        # The first chunk was admitted up front
        return await self._protected_call(
            data, name, settings.TRANSCRIPTION_MODEL, verbose, admit=chunk.index > 0
        )

    @staticmethod
    def _upload_name(filename: str, audio: AudioAnalysisResult, suffix: str = "") -> str:
        path = PurePosixPath(filename or "audio")
        extension = path.suffix or (f".{audio.format}" if audio.format != "unknown" else ".mp3")
        return f"{path.stem}{suffix}{extension}"

    async def _request(
        self,
        data: bytes,
        filename: str,
        model: str,
        verbose: bool,
    ) -> TranscriptionResult:
        """One transcription call, picking the upload path by payload size."""
        if len(data) > settings.DIRECT_UPLOAD_THRESHOLD_MB * 1024 * 1024:
            return await self._direct_upload(data, filename, model, verbose)
        return await self._sdk_upload(data, filename, model, verbose)

    async def _sdk_upload(
        self,
        data: bytes,
        filename: str,
        model: str,
        verbose: bool,
    ) -> TranscriptionResult:
        client = self._client_factory()
        response = await client.audio.transcriptions.create(
            model=model,
            file=(filename, data),
            response_format="verbose_json" if verbose else "text",
        )
        if isinstance(response, str):
            return TranscriptionResult(text=response.strip(), model=model)
        return self._from_verbose(response, model)

    async def _direct_upload(
        self,
        data: bytes,
        filename: str,
        model: str,
        verbose: bool,
    ) -> TranscriptionResult:
        """Multipart upload straight to the HTTP endpoint for large payloads."""
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required for note processing.")

        extension = PurePosixPath(filename).suffix.lstrip(".").lower()
        http = await storage_client.get_client()
        response = await http.post(
            f"{settings.OPENAI_BASE_URL.rstrip('/')}/audio/transcriptions",
            headers={"Authorization": f"Bearer {settings.OPENAI_API_KEY}"},
            data={"model": model, "response_format": "verbose_json" if verbose else "text"},
            files={"file": (filename, data, MIME_TYPES.get(extension, "application/octet-stream"))},
            timeout=settings.DIRECT_UPLOAD_TIMEOUT,
        )

        if response.status_code == 413:
            raise FileTooLargeError(f"file_too_large: {response.text[:200]}")
        if response.status_code == 400 and "invalid" in response.text.lower():
            raise InvalidFileError(f"invalid_file: {response.text[:200]}")
        response.raise_for_status()

        if not verbose:
            return TranscriptionResult(text=response.text.strip(), model=model)
        return self._from_verbose(response.json(), model)

    @staticmethod
    def _from_verbose(payload, model: str) -> TranscriptionResult:
        def get(key, default=None):
            if isinstance(payload, dict):
                return payload.get(key, default)
            return getattr(payload, key, default)

        segments = []
        for segment in get("segments") or []:
            if not isinstance(segment, dict):
                segment = {
                    "start": getattr(segment, "start", 0.0),
                    "end": getattr(segment, "end", 0.0),
                    "text": getattr(segment, "text", ""),
                }
            segments.append({
                "start": float(segment.get("start", 0.0)),
                "end": float(segment.get("end", 0.0)),
                "text": (segment.get("text") or "").strip(),
            })

        duration = get("duration")
        return TranscriptionResult(
            text=(get("text") or "").strip(),
            model=model,
            language=get("language"),
            duration=float(duration) if duration is not None else None,
            segments=segments,
        )
