"""REST API for note processing."""

import logging
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from voicenotes.config import settings
from voicenotes.dependencies import CoordinatorDep, NoteRepoDep
from voicenotes.models import BatchResult, HealthMetrics, ProcessingResult
from voicenotes.processing.state import note_state

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/processing", tags=["Processing"])


class ProcessNoteRequest(BaseModel):
    user_id: Optional[UUID] = None
    force: bool = False


class BatchRequest(BaseModel):
    batch_size: Optional[int] = None


class ResetRequest(BaseModel):
    force_reset: bool = False


class ResetResponse(BaseModel):
    reset: int


class NoteStateResponse(BaseModel):
    note_id: str
    state: str
    processing_attempts: int
    error_message: Optional[str]
    last_error_at: Optional[str]
    processing_started_at: Optional[str]
    processed_at: Optional[str]


class CircuitBreakerResponse(BaseModel):
    service: str
    health: str
    status: dict


def _require_enabled() -> None:
    if not settings.PROCESSING_ENABLED:
        raise HTTPException(status_code=503, detail="Note processing is disabled")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@router.post("/notes/{note_id}", response_model=ProcessingResult)
async def process_note(
    note_id: UUID,
    coordinator: CoordinatorDep,
    data: Optional[ProcessNoteRequest] = None,
):
    """Process a single note now (or re-process it with force)."""
    _require_enabled()
    data = data or ProcessNoteRequest()

    result = await coordinator.process_one(
        note_id, user_id=data.user_id, force_reprocess=data.force
    )
    if not result.success and result.error == "Note not found":
        raise HTTPException(status_code=404, detail="Note not found")
    return result


@router.post("/batch", response_model=BatchResult)
async def process_batch(coordinator: CoordinatorDep, data: Optional[BatchRequest] = None):
    """Process the next batch of eligible notes."""
    _require_enabled()
    data = data or BatchRequest()
    if data.batch_size is not None and not 1 <= data.batch_size <= 50:
        raise HTTPException(status_code=400, detail="batch_size must be between 1 and 50")
    return await coordinator.process_batch(data.batch_size)


@router.get("/health", response_model=HealthMetrics)
async def processing_health(coordinator: CoordinatorDep):
    """Processing health: breaker state, success rate, latency, stuck notes."""
    return await coordinator.get_health_metrics()


@router.get("/status")
async def processing_status(coordinator: CoordinatorDep):
    """Detailed status of the rate limiter, breakers, cache and metrics."""
    return coordinator.get_status()


@router.post("/reset", response_model=ResetResponse)
async def reset_stuck(coordinator: CoordinatorDep, data: Optional[ResetRequest] = None):
    """Reclaim stale locks, or force-reset every unprocessed note."""
    _require_enabled()
    data = data or ResetRequest()
    result = await coordinator.reset_stuck_locks(force_reset=data.force_reset)
    return ResetResponse(**result)


@router.get("/notes/{note_id}/state", response_model=NoteStateResponse)
async def get_note_state(note_id: UUID, repo: NoteRepoDep):
    """Get the processing state of a note."""
    note = await repo.get_by_id(note_id)
    if not note:
        raise HTTPException(status_code=404, detail="Note not found")

    return NoteStateResponse(
        note_id=str(note.id),
        state=note_state(note).value,
        processing_attempts=note.processing_attempts or 0,
        error_message=note.error_message,
        last_error_at=_iso(note.last_error_at),
        processing_started_at=_iso(note.processing_started_at),
        processed_at=_iso(note.processed_at),
    )


@router.post("/circuit-breaker/{service}/{action}", response_model=CircuitBreakerResponse)
async def control_circuit_breaker(
    service: str,
    action: Literal["open", "close", "status"],
    coordinator: CoordinatorDep,
):
    """Force a service's circuit breaker open or closed, or read its status."""
    breaker = coordinator.get_breaker(service)
    if breaker is None:
        raise HTTPException(status_code=404, detail=f"Unknown service: {service}")

    if action == "open":
        breaker.force_open()
    elif action == "close":
        breaker.force_close()
    logger.info(f"Circuit breaker '{service}' action: {action}")

    return CircuitBreakerResponse(
        service=service,
        health=breaker.get_health_status(),
        status=breaker.get_status(),
    )
