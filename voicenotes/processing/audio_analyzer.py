"""Audio inspection: format detection, duration estimate, quality proxies.

No decoding or DSP happens here. Everything is derived from the byte
signature and the file size, which is enough to decide the transcription
tier and whether to split the recording into overlapping chunks.
"""

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Optional, Tuple

from voicenotes.config import settings

logger = logging.getLogger(__name__)

# Assumed constant bitrates (kbps) used for duration estimates
FORMAT_BITRATES = {
    "mp3": 128,
    "m4a": 128,
    "mp4": 128,
    "wav": 1411,
    "ogg": 160,
    "webm": 128,
    "unknown": 128,
}

M4A_BRANDS = (b"M4A ", b"M4B ")


@dataclass
class QualityMetrics:
    """Heuristic quality estimates."""

    signal_to_noise: float
    average_volume: float
    dynamic_range: float
    speaker_count: int
    contains_speech: bool
    language_confidence: float

    def to_dict(self) -> dict:
        return {
            "signal_to_noise": round(self.signal_to_noise, 2),
            "average_volume": round(self.average_volume, 3),
            "dynamic_range": round(self.dynamic_range, 1),
            "speaker_count": self.speaker_count,
            "contains_speech": self.contains_speech,
            "language_confidence": self.language_confidence,
        }


@dataclass
class AudioChunk:
    """One time slice of the recording."""

    index: int
    start_seconds: float
    end_seconds: float
    start_byte: int
    end_byte: int

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass
class ChunkPlan:
    chunk_seconds: int
    overlap_seconds: int
    chunks: List[AudioChunk] = field(default_factory=list)


@dataclass
class AudioAnalysisResult:
    """Outcome of inspecting one audio payload."""

    format: str
    format_confidence: float
    size_bytes: int
    estimated_duration: int
    quality: QualityMetrics
    model: str
    use_large_model: bool
    estimated_cost: float
    chunk_plan: Optional[ChunkPlan] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def should_chunk(self) -> bool:
        return self.chunk_plan is not None

    def to_dict(self) -> dict:
        return {
            "format": self.format,
            "format_confidence": self.format_confidence,
            "size_bytes": self.size_bytes,
            "estimated_duration": self.estimated_duration,
            "quality": self.quality.to_dict(),
            "model": self.model,
            "estimated_cost": round(self.estimated_cost, 4),
            "chunks": len(self.chunk_plan.chunks) if self.chunk_plan else 0,
            "reasons": self.reasons,
        }


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def detect_format(data: bytes, filename: str = "") -> Tuple[str, float]:
    """Detect the container format from magic bytes.

    The file extension is consulted only for ISO base media files whose
    brand does not settle between m4a and mp4.

    Returns:
        Tuple of (format, confidence)
    """
    ext = PurePosixPath(filename).suffix.lower().lstrip(".") if filename else ""

    if data[:3] == b"ID3":
        return "mp3", 0.95
    if len(data) >= 2 and data[0] == 0xFF and (data[1] & 0xE0) == 0xE0:
        return "mp3", 0.9
    if len(data) >= 12 and data[4:8] == b"ftyp":
        brand = data[8:12]
        if brand in M4A_BRANDS:
            return "m4a", 0.95
        if ext in ("mp4", "m4a"):
            return ext, 0.8
        return "m4a", 0.8
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav", 0.95
    if data[:4] == b"OggS":
        return "ogg", 0.9
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "webm", 0.9

    return "unknown", 0.1


def estimate_duration(size_bytes: int, audio_format: str) -> int:
    """Estimated duration in seconds from size and assumed bitrate."""
    bitrate = FORMAT_BITRATES.get(audio_format, FORMAT_BITRATES["unknown"])
    size_kb = size_bytes / 1024
    return max(1, round(size_kb * 8 / bitrate))


def estimate_quality(size_bytes: int, duration: int, audio_format: str) -> QualityMetrics:
    """Quality proxies derived from the average bitrate."""
    avg_bitrate = size_bytes * 8 / (duration * 1000)

    return QualityMetrics(
        signal_to_noise=_clamp(avg_bitrate / 10, 10, 50),
        average_volume=_clamp(0.5 + (avg_bitrate - 64) / 512, 0, 1),
        dynamic_range=96.0 if audio_format == "wav" else min(80.0, avg_bitrate / 2),
        speaker_count=2 if duration > 60 else 1,
        contains_speech=size_bytes > 10000 and duration > 5,
        language_confidence=0.8 if avg_bitrate > 64 else 0.6,
    )


def select_model(duration: int, quality: QualityMetrics) -> Tuple[bool, List[str]]:
    """Decide whether the higher-capability tier is needed.

    Returns:
        Tuple of (use_large_model, reasons)
    """
    reasons = []
    if quality.signal_to_noise < settings.AUDIO_LOW_SNR_THRESHOLD:
        reasons.append(f"low signal-to-noise ({quality.signal_to_noise:.1f})")
    if quality.speaker_count > 1:
        reasons.append("multiple speakers likely")
    if duration > 300 and quality.language_confidence < 0.7:
        reasons.append("long recording with low language confidence")
    if quality.average_volume < settings.AUDIO_LOW_VOLUME_THRESHOLD:
        reasons.append("low volume")
    return bool(reasons), reasons


def chunk_length_for(duration: int) -> int:
    for above, length in settings.AUDIO_CHUNK_LENGTHS:
        if duration > above:
            return length
    return settings.AUDIO_CHUNK_LENGTHS[-1][1]


def plan_chunks(size_bytes: int, duration: int, quality: QualityMetrics) -> Optional[ChunkPlan]:
    """Build an overlapping chunk plan, or None when one pass is enough."""
    should_chunk = (
        duration > settings.AUDIO_CHUNK_DURATION_THRESHOLD
        or size_bytes > settings.AUDIO_CHUNK_SIZE_THRESHOLD_MB * 1024 * 1024
        or quality.signal_to_noise < settings.AUDIO_CHUNK_SNR_FLOOR
    )
    if not should_chunk:
        return None

    chunk_seconds = chunk_length_for(duration)
    overlap = settings.AUDIO_CHUNK_OVERLAP_SECONDS
    step = chunk_seconds - overlap
    bytes_per_second = size_bytes / duration

    plan = ChunkPlan(chunk_seconds=chunk_seconds, overlap_seconds=overlap)
    start = 0
    while start < duration:
        end = min(start + chunk_seconds, duration)
        plan.chunks.append(AudioChunk(
            index=len(plan.chunks),
            start_seconds=start,
            end_seconds=end,
            start_byte=int(start * bytes_per_second),
            end_byte=int(end * bytes_per_second),
        ))
        if end >= duration:
            break
        start += step

    return plan


class AudioAnalyzer:
    """Inspects raw audio and decides model tier and chunking."""

    def analyze(self, data: bytes, filename: str = "") -> AudioAnalysisResult:
        """Analyze an audio payload.

        Args:
            data: Raw audio bytes
            filename: Original filename (only a tie-breaker for format)

        Returns:
            AudioAnalysisResult with duration, quality, tier and chunk plan
        """
        size = len(data)
        audio_format, confidence = detect_format(data, filename)
        duration = estimate_duration(size, audio_format)
        quality = estimate_quality(size, duration, audio_format)
        use_large, reasons = select_model(duration, quality)

        model = settings.TRANSCRIPTION_MODEL_LARGE if use_large else settings.TRANSCRIPTION_MODEL
        per_minute = settings.TRANSCRIPTION_COST_PER_MINUTE.get(model, 0.006)
        chunk_plan = plan_chunks(size, duration, quality)

        result = AudioAnalysisResult(
            format=audio_format,
            format_confidence=confidence,
            size_bytes=size,
            estimated_duration=duration,
            quality=quality,
            model=model,
            use_large_model=use_large,
            estimated_cost=duration / 60 * per_minute,
            chunk_plan=chunk_plan,
            reasons=reasons,
        )

        logger.info(
            f"Audio {filename or '<bytes>'}: {audio_format} ({confidence:.2f}), "
            f"~{duration}s, SNR {quality.signal_to_noise:.1f}, model {model}"
            + (f", {len(chunk_plan.chunks)} chunks of {chunk_plan.chunk_seconds}s" if chunk_plan else "")
        )
        return result

    @staticmethod
    def slice(data: bytes, chunk: AudioChunk) -> bytes:
        """Bytes of one chunk (proportional slice of the payload)."""
        return data[chunk.start_byte:chunk.end_byte]
