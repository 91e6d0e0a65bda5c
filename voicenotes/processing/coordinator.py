"""Top-level note processing: lock, transcribe, analyze, persist, release.

One coordinator is built per process. It owns the rate limiter, one circuit
breaker per external service, the analysis cache and the metrics collector,
and hands them to the orchestrators it creates.

Usage:
    coordinator = get_coordinator()
    result = await coordinator.process_one(note_id)
    batch = await coordinator.process_batch(5)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicenotes import storage_client
from voicenotes.config import settings
from voicenotes.db.models import Note
from voicenotes.db.repositories.knowledge import ProjectKnowledgeRepository
from voicenotes.db.repositories.notes import NoteRepository
from voicenotes.models import BatchMetrics, BatchResult, HealthMetrics, ProcessingResult
from voicenotes.processing.analysis import AnalysisCache, AnalysisOrchestrator
from voicenotes.processing.circuit_breaker import CircuitBreaker
from voicenotes.processing.errors import AudioValidationError, ErrorCategory, classify_error
from voicenotes.processing.lock_manager import ProcessingLockManager
from voicenotes.processing.metrics import MetricsCollector
from voicenotes.processing.rate_limiter import (
    DatabaseRateLimitBackend,
    MemoryRateLimitBackend,
    RateLimiter,
)
from voicenotes.processing.state import NoteState, is_eligible, note_state
from voicenotes.processing.transcription import TranscriptionOrchestrator

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "Note already processed"
LOCKED_ELSEWHERE = "Note is currently being processed by another instance"
LOCK_UNAVAILABLE = "Unable to acquire processing lock"
ATTEMPTS_EXHAUSTED = "Note has used all processing attempts; force reprocessing to retry"
SERVICE_UNAVAILABLE = "Circuit breaker open, note left for a later batch"
CHUNK_GAPS = "{failed} of {total} audio chunks could not be transcribed"
KNOWLEDGE_WRITE_ATTEMPTS = 3

# Errors that will fail the same way on every attempt
TERMINAL_CATEGORIES = {
    ErrorCategory.VALIDATION,
    ErrorCategory.INVALID_FILE,
    ErrorCategory.FILE_TOO_LARGE,
    ErrorCategory.CONTEXT_LENGTH,
}


@dataclass
class ProcessingJob:
    """A note selected for work in one batch."""
    note_id: UUID
    user_id: UUID
    audio_url: Optional[str]
    attempts: int
    recorded_at: Optional[datetime]
    duration_seconds: Optional[int]
    priority: int = 0

    @classmethod
    def from_note(cls, note: Note) -> "ProcessingJob":
        return cls(
            note_id=note.id,
            user_id=note.user_id,
            audio_url=note.audio_url,
            attempts=note.processing_attempts or 0,
            recorded_at=note.recorded_at or note.created_at,
            duration_seconds=note.duration_seconds,
        )


def prioritize(jobs: List[ProcessingJob]) -> List[ProcessingJob]:
    """Order jobs: never-attempted first, then fewer attempts, older, shorter."""
    ordered = sorted(
        jobs,
        key=lambda job: (
            job.attempts > 0,
            job.attempts,
            job.recorded_at or datetime.max,
            job.duration_seconds if job.duration_seconds is not None else float("inf"),
        ),
    )
    for index, job in enumerate(ordered):
        job.priority = index
    return ordered


def _audio_filename(reference: str) -> str:
    name = PurePosixPath(urlparse(reference).path).name
    return name or "audio.mp3"


def _as_uuid(note_id) -> UUID:
    return note_id if isinstance(note_id, UUID) else UUID(str(note_id))


class ProcessingCoordinator:
    """Sequences lock acquisition, transcription, analysis and persistence."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rate_limiter: Optional[RateLimiter] = None,
        transcription_breaker: Optional[CircuitBreaker] = None,
        analysis_breaker: Optional[CircuitBreaker] = None,
        cache: Optional[AnalysisCache] = None,
        metrics: Optional[MetricsCollector] = None,
        transcriber: Optional[TranscriptionOrchestrator] = None,
        analyzer: Optional[AnalysisOrchestrator] = None,
        fetch_bytes: Optional[Callable[[str], Awaitable[bytes]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._fetch_bytes = fetch_bytes or storage_client.fetch_bytes
        self._sleep = sleep

        if rate_limiter is None:
            shared = None
            if settings.RATE_LIMIT_BACKEND == "database":
                shared = DatabaseRateLimitBackend(session_factory)
            rate_limiter = RateLimiter(memory=MemoryRateLimitBackend(), shared=shared)
        self.rate_limiter = rate_limiter

        self.breakers = {
            "transcription": transcription_breaker or CircuitBreaker("transcription"),
            "analysis": analysis_breaker or CircuitBreaker("analysis"),
        }
        self.cache = cache or AnalysisCache()
        self.metrics = metrics or MetricsCollector()
        self.locks = ProcessingLockManager(session_factory)

        self.transcriber = transcriber or TranscriptionOrchestrator(
            self.rate_limiter, self.breakers["transcription"]
        )
        self.analyzer = analyzer or AnalysisOrchestrator(
            self.rate_limiter, self.breakers["analysis"], cache=self.cache
        )

    async def _load_note(self, note_id: UUID) -> Optional[Note]:
        async with self._session_factory() as session:
            return await NoteRepository(session).get_by_id(note_id)

    async def process_one(
        self,
        note_id,
        user_id: Optional[UUID] = None,
        force_reprocess: bool = False,
    ) -> ProcessingResult:
        """Process a single note.

        Args:
            note_id: Note to process
            user_id: If given, the note must belong to this user
            force_reprocess: Re-run a completed or terminally failed note

        Returns:
            ProcessingResult. Lock contention is reported with skipped=True.
        """
        note_id = _as_uuid(note_id)
        note = await self._load_note(note_id)
        if note is None or (user_id is not None and note.user_id != _as_uuid(user_id)):
            return ProcessingResult(success=False, note_id=str(note_id), error="Note not found")

        if note.processed_at is not None and not force_reprocess:
            return ProcessingResult(
                success=True,
                note_id=str(note_id),
                warning=ALREADY_PROCESSED,
                transcription=note.transcription,
                analysis=note.analysis,
                skipped=True,
            )

        if not await self.locks.acquire(note_id, force=force_reprocess):
            return await self._contention_result(note_id)

        return await self._process_locked(note_id, force_reprocess)

    async def _contention_result(self, note_id: UUID) -> ProcessingResult:
        note = await self._load_note(note_id)
        state = note_state(note) if note is not None else None

        if state == NoteState.COMPLETED:
            return ProcessingResult(
                success=True,
                note_id=str(note_id),
                warning=ALREADY_PROCESSED,
                transcription=note.transcription,
                analysis=note.analysis,
                skipped=True,
            )
        if state == NoteState.PROCESSING:
            return ProcessingResult(
                success=False, note_id=str(note_id), error=LOCKED_ELSEWHERE, skipped=True
            )
        if state == NoteState.FAILED_TERMINAL:
            return ProcessingResult(
                success=False, note_id=str(note_id), error=ATTEMPTS_EXHAUSTED, skipped=True
            )
        return ProcessingResult(
            success=False, note_id=str(note_id), error=LOCK_UNAVAILABLE, skipped=True
        )

    async def _process_locked(self, note_id: UUID, force_reprocess: bool = False) -> ProcessingResult:
        """Run the pipeline for a note whose lease the caller holds."""
        start_time = time.time()
        self.metrics.record_start(str(note_id))

        try:
            # Another worker may have finished between our read and the lock
            note = await self._load_note(note_id)
            if note is None:
                raise AudioValidationError(f"Note {note_id} disappeared during processing")
            if note.processed_at is not None and not force_reprocess:
                await self.locks.release(note_id)
                self.metrics.record_complete(str(note_id), True)
                return ProcessingResult(
                    success=True,
                    note_id=str(note_id),
                    warning=ALREADY_PROCESSED,
                    transcription=note.transcription,
                    analysis=note.analysis,
                )

            transcription, transcription_warning = await self._transcribe(note)

            self.metrics.record_stage(str(note_id), "analysis")
            stage_start = time.time()
            context_text = await self._knowledge_context(note.user_id)
            outcome = await self.analyzer.analyze(
                transcription, context_text, recorded_at=note.recorded_at or note.created_at
            )
            self.metrics.record_stage(str(note_id), "analysis", time.time() - stage_start)

            self.metrics.record_stage(str(note_id), "saving")
            analysis = outcome.analysis.to_storage()
            async with self._session_factory() as session:
                await NoteRepository(session).complete(note_id, transcription, analysis)
                await session.commit()

            try:
                await self._update_knowledge(note, analysis)
            except Exception as e:
                # The note is already complete
                logger.warning(f"Could not update project knowledge for note {note_id}: {e}")

            self.metrics.record_stage(str(note_id), "completed")
            self.metrics.record_complete(str(note_id), True)
            logger.info(
                f"Processed note {note_id} ({outcome.tier} tier, "
                f"{'cached' if outcome.from_cache else outcome.model})"
            )
            return ProcessingResult(
                success=True,
                note_id=str(note_id),
                warning="; ".join(w for w in (transcription_warning, outcome.warning) if w) or None,
                transcription=transcription,
                analysis=analysis,
                processing_time_sec=time.time() - start_time,
            )

        except Exception as e:
            info = classify_error(e)
            logger.error(f"Processing failed for note {note_id} [{info.category.value}]: {info.message}")
            self.metrics.record_error(str(note_id), info.category.value)
            self.metrics.record_complete(str(note_id), False)
            await self.locks.release_with_error(
                note_id,
                info.message,
                terminal=info.category in TERMINAL_CATEGORIES,
                # The note never reached the service
                refund_attempt=info.category == ErrorCategory.CIRCUIT_OPEN,
            )
            return ProcessingResult(
                success=False,
                note_id=str(note_id),
                error=info.message,
                error_category=info.category.value,
                processing_time_sec=time.time() - start_time,
            )

    async def _transcribe(self, note: Note) -> Tuple[str, Optional[str]]:
        """Reuse an existing transcript, otherwise fetch audio and transcribe.

        Returns:
            (transcript, warning). The warning reports chunks lost to errors.
        """
        if note.transcription:
            logger.info(f"Using existing transcription for note {note.id}")
            return note.transcription, None
        if not note.audio_url:
            raise AudioValidationError(f"Note {note.id} has no audio reference")

        self.metrics.record_stage(str(note.id), "transcription")
        stage_start = time.time()
        audio_bytes = await self._fetch_bytes(note.audio_url)
        result = await self.transcriber.transcribe_with_metadata(
            audio_bytes, _audio_filename(note.audio_url), verbose=False
        )
        self.metrics.record_stage(str(note.id), "transcription", time.time() - stage_start)

        warning = None
        if result.chunks_failed:
            total = result.chunks_processed + result.chunks_failed
            warning = CHUNK_GAPS.format(failed=result.chunks_failed, total=total)
            logger.warning(f"Note {note.id}: {warning}")

        # Partial progress: a later attempt skips transcription
        async with self._session_factory() as session:
            await NoteRepository(session).save_transcription(note.id, result.text)
            await session.commit()
        return result.text, warning

    async def _knowledge_context(self, user_id: UUID) -> str:
        async with self._session_factory() as session:
            knowledge = await ProjectKnowledgeRepository(session).get_by_user(user_id)
        if knowledge is None or not knowledge.content:
            return ""
        return json.dumps(knowledge.content, ensure_ascii=False, default=str)

    async def _update_knowledge(self, note: Note, analysis: dict) -> None:
        insight = {
            "note_id": str(note.id),
            "topic": analysis.get("topic"),
            "summary": analysis.get("summary"),
            "the_one_thing": analysis.get("theOneThing"),
            "recorded_at": analysis.get("recordedAt"),
        }
        for attempt in range(1, KNOWLEDGE_WRITE_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    await ProjectKnowledgeRepository(session).append_insight(
                        note.user_id, insight, max_insights=settings.PROJECT_KNOWLEDGE_MAX_INSIGHTS
                    )
                    await session.commit()
                return
            except IntegrityError:
                # Another note of the same user created the row first
                if attempt == KNOWLEDGE_WRITE_ATTEMPTS:
                    raise
                logger.debug(f"Knowledge row conflict for user {note.user_id}, retry {attempt}")
                await self._sleep(0.05 * attempt)

    def _any_breaker_open(self) -> bool:
        return any(breaker.is_open for breaker in self.breakers.values())

    def _adaptive_delay(self, completed: int, failed: int) -> float:
        if self._any_breaker_open():
            return settings.BATCH_CIRCUIT_OPEN_DELAY
        breaker_failures = sum(b.failures for b in self.breakers.values())
        error_rate = failed / completed if completed else 0.0
        if breaker_failures > 2 or error_rate > 0.3:
            return settings.BATCH_BACKOFF_DELAY
        return settings.BATCH_BASE_DELAY

    async def process_batch(self, batch_size: Optional[int] = None) -> BatchResult:
        """Process up to ``batch_size`` eligible notes, one task per note.

        Returns:
            BatchResult with processed/failed/skipped counts and metrics
        """
        batch_size = batch_size or settings.BATCH_SIZE
        batch_start = time.time()
        logger.info(f"Starting batch processing (max {batch_size} notes)")

        await self.locks.reclaim_abandoned()

        async with self._session_factory() as session:
            notes = await NoteRepository(session).get_eligible_notes(
                limit=batch_size,
                timeout_minutes=settings.LOCK_TIMEOUT_MINUTES,
                max_attempts=settings.MAX_PROCESSING_ATTEMPTS,
            )
            await session.commit()

        result = BatchResult()
        if not notes:
            logger.info("No notes available for processing")
            return result

        jobs = prioritize([ProcessingJob.from_note(note) for note in notes if is_eligible(note)])
        logger.info(f"Got {len(jobs)} notes to process")

        semaphore = asyncio.Semaphore(max(1, settings.BATCH_CONCURRENCY))
        counters = {"completed": 0, "failed": 0}
        times: List[float] = []
        breakdown: dict = {}

        async def run(job: ProcessingJob) -> ProcessingResult:
            async with semaphore:
                job_start = time.time()
                # The breaker may have opened while this job waited
                if self._any_breaker_open():
                    return ProcessingResult(
                        success=False, note_id=str(job.note_id), error=SERVICE_UNAVAILABLE, skipped=True
                    )
                if not await self.locks.acquire(job.note_id):
                    return await self._contention_result(job.note_id)
                outcome = await self._process_locked(job.note_id)
                times.append(time.time() - job_start)
                counters["completed"] += 1
                if not outcome.success:
                    counters["failed"] += 1
                return outcome

        tasks = []
        for index, job in enumerate(jobs):
            if index > 0:
                await self._sleep(self._adaptive_delay(counters["completed"], counters["failed"]))
            if self._any_breaker_open():
                logger.warning(
                    f"Circuit breaker open, leaving {len(jobs) - index} notes for a later batch"
                )
                break
            tasks.append(asyncio.create_task(run(job)))

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        # Notes never launched keep their attempt budget
        result.skipped += len(jobs) - len(tasks)

        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected failure processing note {job.note_id}: {outcome}")
                result.failed += 1
                result.errors.append(f"Note {job.note_id}: {outcome}")
                category = classify_error(outcome).category.value
                breakdown[category] = breakdown.get(category, 0) + 1
            elif outcome.skipped:
                result.skipped += 1
            elif outcome.success:
                result.processed += 1
            else:
                result.failed += 1
                result.errors.append(f"Note {job.note_id}: {outcome.error}")
                category = outcome.error_category or ErrorCategory.UNKNOWN.value
                breakdown[category] = breakdown.get(category, 0) + 1

        total_time = time.time() - batch_start
        attempted = result.processed + result.failed
        result.metrics = BatchMetrics(
            total_time=total_time,
            average_processing_time=sum(times) / len(times) if times else 0.0,
            success_rate=result.processed / attempted if attempted else 0.0,
            error_breakdown=breakdown,
        )
        self.metrics.record_batch(len(jobs), result.processed, result.failed, total_time)
        logger.info(
            f"Batch complete: {result.processed} processed, {result.failed} failed, "
            f"{result.skipped} skipped in {total_time:.1f}s"
        )
        return result

    async def _count_stuck(self) -> int:
        try:
            async with self._session_factory() as session:
                return await NoteRepository(session).count_expired_locks(settings.LOCK_TIMEOUT_MINUTES)
        except Exception as e:
            logger.warning(f"Could not count stuck notes from database: {e}")
            return len(self.metrics.get_stuck(settings.LOCK_TIMEOUT_MINUTES))

    async def get_health_metrics(self) -> HealthMetrics:
        """Breaker state, success rate, latency and an overall status."""
        summary = self.metrics.get_summary()
        stuck = await self._count_stuck()
        samples = summary["total_processed"]
        success_rate = summary["success_rate"]
        breaker_failures = sum(b.failures for b in self.breakers.values())

        if self._any_breaker_open() or stuck > 5:
            status = "critical"
        elif samples > 10 and success_rate < 0.5:
            status = "unhealthy"
        elif breaker_failures > 3 or (samples > 5 and success_rate < 0.8) or stuck > 2:
            status = "degraded"
        else:
            status = "healthy"

        return HealthMetrics(
            status=status,
            circuit_breaker_state={name: b.get_status() for name, b in self.breakers.items()},
            success_rate=success_rate,
            average_latency=summary["average_processing_time"],
            currently_processing=summary["currently_processing"],
            error_breakdown_by_category=summary["error_category_breakdown"],
            stuck_notes=stuck,
            rate_limiter_backend=self.rate_limiter.backend_name,
        )

    async def reset_stuck_locks(self, force_reset: bool = False) -> dict:
        """Reclaim stale locks, or with ``force_reset`` wipe all unprocessed notes.

        Returns:
            {"reset": count}
        """
        if force_reset:
            async with self._session_factory() as session:
                count = await NoteRepository(session).force_reset_unprocessed()
                await session.commit()
            logger.warning(f"Force reset {count} unprocessed notes")
        else:
            count = await self.locks.reclaim_abandoned(5)
        return {"reset": count}

    async def get_note_state(self, note_id) -> Optional[NoteState]:
        note = await self._load_note(_as_uuid(note_id))
        return note_state(note) if note is not None else None

    def get_breaker(self, service: str) -> Optional[CircuitBreaker]:
        return self.breakers.get(service)

    def get_status(self) -> dict:
        """Snapshot of every component the coordinator owns."""
        return {
            "rate_limiter": self.rate_limiter.get_status(),
            "circuit_breakers": {name: b.get_status() for name, b in self.breakers.items()},
            "analysis": self.analyzer.get_metrics(),
            "processing": self.metrics.get_summary(),
        }


# Singleton instance
_coordinator: Optional[ProcessingCoordinator] = None


def get_coordinator() -> ProcessingCoordinator:
    """Get the process-wide ProcessingCoordinator, creating it on first use."""
    global _coordinator
    if _coordinator is None:
        from voicenotes.db.connection import async_session_factory

        _coordinator = ProcessingCoordinator(async_session_factory)
    return _coordinator


def reset_coordinator() -> None:
    """Reset the coordinator (for testing purposes)."""
    global _coordinator
    _coordinator = None
