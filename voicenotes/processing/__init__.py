"""Note processing pipeline: admission control, transcription, analysis and locking."""

from voicenotes.processing.analysis import AnalysisCache, AnalysisOrchestrator
from voicenotes.processing.audio_analyzer import AudioAnalyzer
from voicenotes.processing.chunk_merger import ChunkMerger
from voicenotes.processing.circuit_breaker import CircuitBreaker
from voicenotes.processing.coordinator import (
    ProcessingCoordinator,
    get_coordinator,
    reset_coordinator,
)
from voicenotes.processing.lock_manager import ProcessingLockManager
from voicenotes.processing.rate_limiter import RateLimiter
from voicenotes.processing.retry import with_retry
from voicenotes.processing.state import NoteState, note_state
from voicenotes.processing.transcription import TranscriptionOrchestrator

__all__ = [
    "AnalysisCache",
    "AnalysisOrchestrator",
    "AudioAnalyzer",
    "ChunkMerger",
    "CircuitBreaker",
    "NoteState",
    "ProcessingCoordinator",
    "ProcessingLockManager",
    "RateLimiter",
    "TranscriptionOrchestrator",
    "get_coordinator",
    "note_state",
    "reset_coordinator",
    "with_retry",
]
