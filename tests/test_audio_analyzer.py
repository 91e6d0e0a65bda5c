import pytest

from voicenotes.config import settings
from voicenotes.processing.audio_analyzer import (
    AudioAnalyzer,
    chunk_length_for,
    detect_format,
    estimate_duration,
)
from tests.conftest import mp3_bytes, wav_bytes

MB = 1024 * 1024


@pytest.mark.parametrize("header,filename,expected", [
    (b"ID3\x04\x00\x00\x00\x00\x00\x00\x00\x00", "a.bin", ("mp3", 0.95)),
    (b"\xff\xfb\x90\x00" + b"\x00" * 8, "a.bin", ("mp3", 0.9)),
    (b"\x00\x00\x00\x20ftypM4A \x00\x00\x00\x00", "a.bin", ("m4a", 0.95)),
    (b"\x00\x00\x00\x20ftypisom\x00\x00\x00\x00", "clip.mp4", ("mp4", 0.8)),
    (b"\x00\x00\x00\x20ftypisom\x00\x00\x00\x00", "memo.m4a", ("m4a", 0.8)),
    (b"RIFF\x24\x00\x00\x00WAVEfmt ", "a.mp3", ("wav", 0.95)),
    (b"OggS\x00\x02" + b"\x00" * 6, "a.mp3", ("ogg", 0.9)),
    (b"\x1a\x45\xdf\xa3" + b"\x00" * 8, "a.mp3", ("webm", 0.9)),
    (b"hello world!", "a.mp3", ("unknown", 0.1)),
])
def test_detect_format_uses_signature(header, filename, expected):
    assert detect_format(header, filename) == expected


def test_estimate_duration_from_bitrate():
    # 1 MB at 128 kbps
    assert estimate_duration(MB, "mp3") == 64
    assert estimate_duration(10, "mp3") == 1


def test_chunk_length_scales_with_duration():
    assert chunk_length_for(2400) == 300
    assert chunk_length_for(1200) == 240
    assert chunk_length_for(700) == 180


def test_short_clean_recording_is_single_pass():
    result = AudioAnalyzer().analyze(wav_bytes(10), "memo.wav")

    assert result.format == "wav"
    assert result.estimated_duration == 10
    assert result.quality.signal_to_noise == 50
    assert result.chunk_plan is None
    assert result.use_large_model is False
    assert result.model == settings.TRANSCRIPTION_MODEL


def test_large_low_quality_recording_is_chunked_on_large_model():
    result = AudioAnalyzer().analyze(mp3_bytes(22 * MB), "meeting.mp3")

    assert result.quality.signal_to_noise < settings.AUDIO_LOW_SNR_THRESHOLD
    assert result.use_large_model is True
    assert result.model == settings.TRANSCRIPTION_MODEL_LARGE

    plan = result.chunk_plan
    assert plan is not None
    assert len(plan.chunks) >= 3
    assert all(chunk.duration <= 300 for chunk in plan.chunks)
    assert plan.overlap_seconds == 10
    for previous, current in zip(plan.chunks, plan.chunks[1:]):
        assert previous.end_seconds - current.start_seconds == 10
    assert plan.chunks[0].start_seconds == 0
    assert plan.chunks[-1].end_seconds == result.estimated_duration


def test_medium_recording_uses_short_chunks():
    # ~11 minutes of 128 kbps mp3, under the size threshold
    result = AudioAnalyzer().analyze(mp3_bytes(int(10.5 * MB)), "walk.mp3")

    assert result.estimated_duration > 600
    assert result.chunk_plan is not None
    assert result.chunk_plan.chunk_seconds == 180


def test_slice_is_proportional():
    data = mp3_bytes(22 * MB)
    analyzer = AudioAnalyzer()
    plan = analyzer.analyze(data, "meeting.mp3").chunk_plan

    first = analyzer.slice(data, plan.chunks[0])
    last = analyzer.slice(data, plan.chunks[-1])

    assert first.startswith(b"ID3")
    assert len(first) == plan.chunks[0].end_byte
    assert plan.chunks[-1].end_byte == len(data)
    assert len(last) > 0
