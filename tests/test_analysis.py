import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from voicenotes.config import settings
from voicenotes.models import NoteAnalysis
from voicenotes.processing.analysis import (
    AnalysisCache,
    AnalysisOrchestrator,
    CacheEntry,
    _parse_json_response,
    assess_complexity,
)
from voicenotes.processing.circuit_breaker import CircuitBreaker
from voicenotes.processing.errors import RateLimitExceededError, SchemaValidationError
from voicenotes.processing.rate_limiter import RateLimiter

SIMPLE_TRANSCRIPT = "Buy milk and call the dentist tomorrow."
COMPLEX_TRANSCRIPT = (
    "We reviewed the api architecture budget contract deadline deployment forecast integration. "
    + "detail " * 1500
)
COMPLEX_CONTEXT = "x" * 4000


def analysis_payload(confidence=0.9, **overrides):
    payload = {
        "summary": "Errands for tomorrow.",
        "mood": "neutral",
        "topic": "Errands",
        "theOneThing": "Call the dentist",
        "tasks": [{"title": "Call the dentist", "urgency": "SOON", "domain": "PERS"}],
        "draftMessages": [],
        "people": [],
        "recordedAt": "2026-01-05T09:00:00",
        "analysisMetadata": {"overallConfidence": confidence},
    }
    payload.update(overrides)
    return json.dumps(payload)


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_orchestrator(*contents, rate_limiter=None, cache=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=[completion(c) for c in contents])
    orchestrator = AnalysisOrchestrator(
        rate_limiter=rate_limiter or RateLimiter(),
        circuit_breaker=CircuitBreaker("analysis"),
        cache=cache,
        client_factory=lambda: client,
        sleep=AsyncMock(),
    )
    return orchestrator, client


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_complexity_levels():
    assert assess_complexity(SIMPLE_TRANSCRIPT).level == "simple"
    assert assess_complexity("detail " * 1500).level == "standard"

    complex_ = assess_complexity(COMPLEX_TRANSCRIPT, COMPLEX_CONTEXT)
    assert complex_.level == "complex"
    assert complex_.factors["vocabulary"] == 1.0
    assert complex_.factors["context"] == 1.0


def test_complexity_counts_capitalised_names():
    result = assess_complexity("Meeting with Anna and Marek about the launch. Then lunch.")

    assert result.factors["people"] == pytest.approx(2 / 5)


def test_parse_json_response_strips_fences_and_prose():
    assert _parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert _parse_json_response('Here you go: {"a": 2} hope it helps') == {"a": 2}
    assert _parse_json_response("no json at all") is None
    assert _parse_json_response("[1, 2]") is None


@pytest.mark.asyncio
async def test_confident_result_is_cached():
    orchestrator, client = make_orchestrator(analysis_payload(confidence=0.9))

    first = await orchestrator.analyze(SIMPLE_TRANSCRIPT)
    second = await orchestrator.analyze(SIMPLE_TRANSCRIPT)

    assert first.from_cache is False
    assert first.tier == "simple"
    assert first.model == settings.ANALYSIS_MODEL_FAST
    assert second.from_cache is True
    assert second.analysis == first.analysis
    assert second.cost == 0.0
    client.chat.completions.create.assert_awaited_once()
    assert orchestrator.get_metrics()["cache_hit_rate"] == 0.5


@pytest.mark.asyncio
async def test_low_confidence_result_is_not_cached():
    orchestrator, client = make_orchestrator(
        analysis_payload(confidence=0.5), analysis_payload(confidence=0.5)
    )

    await orchestrator.analyze(SIMPLE_TRANSCRIPT)
    second = await orchestrator.analyze(SIMPLE_TRANSCRIPT)

    assert second.from_cache is False
    assert client.chat.completions.create.await_count == 2
    assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
async def test_skip_cache_bypasses_lookup_and_storage():
    orchestrator, client = make_orchestrator(analysis_payload(), analysis_payload())

    await orchestrator.analyze(SIMPLE_TRANSCRIPT, skip_cache=True)
    await orchestrator.analyze(SIMPLE_TRANSCRIPT, skip_cache=True)

    assert client.chat.completions.create.await_count == 2
    assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
async def test_context_changes_the_cache_key():
    orchestrator, client = make_orchestrator(analysis_payload(), analysis_payload())

    await orchestrator.analyze(SIMPLE_TRANSCRIPT, context_text="")
    outcome = await orchestrator.analyze(SIMPLE_TRANSCRIPT, context_text='{"insights": []}')

    assert outcome.from_cache is False
    assert client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_partial_validation_keeps_valid_parts():
    content = analysis_payload(
        mood="ecstatic",
        tasks=[
            {"title": "Call the dentist", "urgency": "SOON", "domain": "PERS"},
            {"title": "Broken", "urgency": "WHENEVER", "domain": "PERS"},
        ],
    )
    orchestrator, _ = make_orchestrator(content)

    outcome = await orchestrator.analyze(SIMPLE_TRANSCRIPT)

    assert outcome.warning.startswith("Partial validation")
    assert outcome.analysis.mood == "neutral"
    assert [task.title for task in outcome.analysis.tasks] == ["Call the dentist"]
    assert outcome.analysis.summary == "Errands for tomorrow."


@pytest.mark.asyncio
async def test_unparseable_response_raises_schema_error():
    orchestrator, _ = make_orchestrator("I could not analyse this note.")

    with pytest.raises(SchemaValidationError):
        await orchestrator.analyze(SIMPLE_TRANSCRIPT)
    assert orchestrator.get_metrics()["error_rate"] == 1.0


@pytest.mark.asyncio
async def test_missing_confidence_uses_default():
    payload = json.loads(analysis_payload())
    del payload["analysisMetadata"]
    orchestrator, _ = make_orchestrator(json.dumps(payload))

    outcome = await orchestrator.analyze(SIMPLE_TRANSCRIPT)

    assert outcome.confidence == settings.ANALYSIS_DEFAULT_CONFIDENCE


@pytest.mark.asyncio
async def test_complex_note_accepts_confident_quick_pass():
    orchestrator, client = make_orchestrator(analysis_payload(confidence=0.95))

    outcome = await orchestrator.analyze(COMPLEX_TRANSCRIPT, COMPLEX_CONTEXT)

    assert outcome.passes == 1
    assert outcome.model == settings.ANALYSIS_MODEL_FAST
    client.chat.completions.create.assert_awaited_once()


@pytest.mark.asyncio
async def test_complex_note_refines_unsure_quick_pass():
    orchestrator, client = make_orchestrator(
        analysis_payload(confidence=0.6),
        analysis_payload(confidence=0.92, summary="Detailed summary."),
    )

    outcome = await orchestrator.analyze(COMPLEX_TRANSCRIPT, COMPLEX_CONTEXT)

    assert outcome.passes == 2
    assert outcome.model == settings.ANALYSIS_MODEL
    assert outcome.tier == "complex"
    assert outcome.analysis.summary == "Detailed summary."

    first, second = client.chat.completions.create.await_args_list
    assert first.kwargs["model"] == settings.ANALYSIS_MODEL_FAST
    assert second.kwargs["model"] == settings.ANALYSIS_MODEL
    assert second.kwargs["max_tokens"] == 3000
    assert "quick first pass" in second.kwargs["messages"][1]["content"]
    # Both passes are paid for
    assert outcome.cost > orchestrator._estimate_cost(
        settings.ANALYSIS_MODEL, second.kwargs["messages"][1]["content"], ""
    )


@pytest.mark.asyncio
async def test_force_tier_overrides_assessment():
    orchestrator, client = make_orchestrator(analysis_payload())

    outcome = await orchestrator.analyze(SIMPLE_TRANSCRIPT, force_tier="standard")

    assert outcome.tier == "standard"
    assert client.chat.completions.create.await_args.kwargs["model"] == settings.ANALYSIS_MODEL


@pytest.mark.asyncio
async def test_single_tier_uses_fixed_model_without_cache():
    orchestrator, client = make_orchestrator(analysis_payload())

    outcome = await orchestrator.analyze_single_tier(SIMPLE_TRANSCRIPT)

    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == settings.ANALYSIS_MODEL
    assert kwargs["max_tokens"] == settings.ANALYSIS_LEGACY_MAX_TOKENS
    assert outcome.tier == "legacy"
    assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
async def test_rate_limit_denial_raises():
    limiter = MagicMock()
    limiter.try_acquire = AsyncMock(return_value=False)
    orchestrator, client = make_orchestrator(analysis_payload(), rate_limiter=limiter)

    with pytest.raises(RateLimitExceededError):
        await orchestrator.analyze(SIMPLE_TRANSCRIPT)
    client.chat.completions.create.assert_not_awaited()


def _entry():
    return CacheEntry(
        analysis=NoteAnalysis.model_validate(json.loads(analysis_payload())),
        model="gpt-4",
        confidence=0.9,
        cost=0.01,
        complexity="standard",
    )


def test_cache_entries_expire():
    clock = FakeClock()
    cache = AnalysisCache(ttl_seconds=60, clock=clock)
    cache.put("key", _entry())

    clock.now += 59
    assert cache.get("key") is not None

    clock.now += 1
    assert cache.get("key") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_over_capacity():
    clock = FakeClock()
    cache = AnalysisCache(ttl_seconds=3600, max_size=60, clock=clock)
    for i in range(61):
        clock.now += 1
        cache.put(f"key-{i}", _entry())

    # Overflow trims to 50 below capacity
    assert len(cache) == 10
    assert cache.get("key-0") is None
    assert cache.get("key-60") is not None
