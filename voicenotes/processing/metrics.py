"""In-process metrics for note processing."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Summary counters are reset after this many seconds
SUMMARY_WINDOW_SECONDS = 3600


@dataclass
class NoteMetrics:
    """Timing of one note currently being processed."""
    start_time: float
    stage: str = "initialization"
    transcription_time: Optional[float] = None
    analysis_time: Optional[float] = None
    error_category: Optional[str] = None


class MetricsCollector:
    """Tracks in-flight notes and rolling success/latency counters."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._active: Dict[str, NoteMetrics] = {}
        self._reset_summary()

    def _reset_summary(self) -> None:
        self._summary = {
            "total_processed": 0,
            "total_successful": 0,
            "total_failed": 0,
            "average_processing_time": 0.0,
            "error_category_breakdown": {},
            "last_reset": self._clock(),
        }

    def record_start(self, note_id: str) -> NoteMetrics:
        metrics = NoteMetrics(start_time=self._clock())
        self._active[str(note_id)] = metrics
        return metrics

    def record_stage(self, note_id: str, stage: str, duration: Optional[float] = None) -> None:
        metrics = self._active.get(str(note_id))
        if metrics is None:
            logger.debug(f"No metrics tracked for note {note_id}")
            return
        metrics.stage = stage
        if duration is not None:
            if stage == "transcription":
                metrics.transcription_time = duration
            elif stage == "analysis":
                metrics.analysis_time = duration

    def record_error(self, note_id: str, category: str) -> None:
        metrics = self._active.get(str(note_id))
        if metrics is not None:
            metrics.error_category = category
        breakdown = self._summary["error_category_breakdown"]
        breakdown[category] = breakdown.get(category, 0) + 1

    def record_complete(self, note_id: str, success: bool) -> Optional[float]:
        """Close out a note and fold it into the summary.

        Returns:
            Total processing time in seconds, or None if the note was not tracked
        """
        metrics = self._active.pop(str(note_id), None)
        if metrics is None:
            logger.debug(f"No metrics tracked for note {note_id}")
            return None

        if self._clock() - self._summary["last_reset"] >= SUMMARY_WINDOW_SECONDS:
            logger.info("Resetting processing summary metrics")
            self._reset_summary()

        total_time = self._clock() - metrics.start_time
        summary = self._summary
        summary["total_processed"] += 1
        if success:
            summary["total_successful"] += 1
        else:
            summary["total_failed"] += 1

        count = summary["total_processed"]
        summary["average_processing_time"] = (
            summary["average_processing_time"] * (count - 1) + total_time
        ) / count

        logger.info(
            f"Note {note_id} {'completed' if success else 'failed'} in {total_time:.1f}s "
            f"(transcription {metrics.transcription_time or 0:.1f}s, "
            f"analysis {metrics.analysis_time or 0:.1f}s)"
        )
        return total_time

    def record_batch(self, batch_size: int, processed: int, failed: int, total_time: float) -> None:
        success_rate = processed / batch_size if batch_size else 0.0
        logger.info(
            f"Batch metrics: size={batch_size} processed={processed} failed={failed} "
            f"success_rate={success_rate:.0%} total_time={total_time:.1f}s"
        )

    def get_summary(self) -> dict:
        """Success rate (0-1), average time, in-flight count and error breakdown."""
        summary = self._summary
        total = summary["total_processed"]
        return {
            "total_processed": total,
            "total_successful": summary["total_successful"],
            "total_failed": summary["total_failed"],
            "success_rate": summary["total_successful"] / total if total else 0.0,
            "average_processing_time": summary["average_processing_time"],
            "currently_processing": len(self._active),
            "error_category_breakdown": dict(summary["error_category_breakdown"]),
            "uptime": self._clock() - summary["last_reset"],
        }

    def get_stuck(self, minutes: float = 30) -> List[str]:
        """IDs of notes in flight for longer than ``minutes``."""
        threshold = minutes * 60
        now = self._clock()
        return [
            note_id for note_id, metrics in self._active.items()
            if now - metrics.start_time > threshold
        ]
