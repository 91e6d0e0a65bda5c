"""Structured extraction from transcripts with tiered models and caching."""

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from openai import AsyncOpenAI

from voicenotes.config import settings
from voicenotes.models import NoteAnalysis
from voicenotes.openai_client import get_client
from voicenotes.processing.circuit_breaker import CircuitBreaker
from voicenotes.processing.errors import RateLimitExceededError, SchemaValidationError
from voicenotes.processing.rate_limiter import RateLimiter
from voicenotes.processing.retry import with_retry
from voicenotes.processing.validation import validate_analysis

logger = logging.getLogger(__name__)

SERVICE_NAME = "analysis"

SYSTEM_PROMPT = (
    "You are an expert analyst who extracts actionable insights from voice notes. "
    "Always return valid JSON."
)

ANALYSIS_PROMPT = """Analyze this voice note transcription and return a single JSON object.

Recording date/time: {recording_date}

PROJECT KNOWLEDGE (earlier insights from this user):
{project_knowledge}

REQUIRED JSON FORMAT:
{{
  "summary": "Two or three sentence summary",
  "mood": "positive | neutral | negative",
  "topic": "Primary topic in 1-3 words",
  "theOneThing": "The single most important priority, or null",
  "tasks": [
    {{"title": "...", "urgency": "NOW | SOON | LATER", "domain": "WORK | PERS | PROJ | IDEA",
      "dueDate": "optional", "assignedTo": "optional", "context": "optional"}}
  ],
  "draftMessages": [{{"recipient": "...", "subject": "...", "body": "..."}}],
  "people": [{{"name": "...", "context": "...", "relationship": "optional"}}],
  "recordedAt": "{recording_date}",
  "analysisMetadata": {{"overallConfidence": 0.0}}
}}

TRANSCRIPTION:
{transcription}

JSON:"""

REFINE_HINT = """
A quick first pass produced this draft (confidence {confidence:.2f}). Correct and complete it:
{draft}
"""

SENTENCE_END = re.compile(r"[.!?]$")
CAPITALISED = re.compile(r"^[A-Z][a-z]+$")
NOT_NAMES = {"I", "The", "This", "That", "Then", "And", "But", "So", "Monday", "Tuesday",
             "Wednesday", "Thursday", "Friday", "Saturday", "Sunday", "OK", "Okay"}


@dataclass
class ComplexityAssessment:
    """How demanding a transcript is to analyse."""

    score: float
    level: str
    factors: dict = field(default_factory=dict)


def assess_complexity(transcript: str, context_text: str = "") -> ComplexityAssessment:
    """Score transcript complexity from length, vocabulary, people and context.

    Weights, saturation points and level cut-offs come from settings.
    """
    weights = settings.COMPLEXITY_WEIGHTS
    saturation = settings.COMPLEXITY_SATURATION

    words = transcript.split()
    lowered = {w.strip(".,!?;:()\"'").lower() for w in words}
    vocabulary_hits = sum(1 for term in settings.COMPLEXITY_VOCABULARY if term in lowered)

    people = set()
    for index, word in enumerate(words):
        token = word.strip(".,!?;:()\"'")
        sentence_start = index == 0 or bool(SENTENCE_END.search(words[index - 1]))
        if not sentence_start and CAPITALISED.match(token) and token not in NOT_NAMES:
            people.add(token)

    factors = {
        "length": min(len(words) / saturation["words"], 1.0),
        "vocabulary": min(vocabulary_hits / saturation["vocabulary_hits"], 1.0),
        "people": min(len(people) / saturation["people"], 1.0),
        "context": min(len(context_text or "") / saturation["context_chars"], 1.0),
    }
    score = sum(factors[name] * weights[name] for name in factors)

    if score < settings.COMPLEXITY_SIMPLE_BELOW:
        level = "simple"
    elif score >= settings.COMPLEXITY_COMPLEX_FROM:
        level = "complex"
    else:
        level = "standard"

    return ComplexityAssessment(score=score, level=level, factors=factors)


def _parse_json_response(response: str) -> Optional[dict]:
    """
    Parse JSON from LLM response.

    Handles cases where the model wraps JSON in markdown code blocks.
    """
    text = response.strip()

    json_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if json_match:
        text = json_match.group(1)

    json_start = text.find("{")
    json_end = text.rfind("}") + 1
    if json_start != -1 and json_end > json_start:
        text = text[json_start:json_end]

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON: {e}")
        logger.debug(f"Raw response: {response[:500]}")
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class CacheEntry:
    analysis: NoteAnalysis
    model: str
    confidence: float
    cost: float
    complexity: str
    timestamp: float = 0.0


class AnalysisCache:
    """Confidence-gated result cache keyed by content fingerprint."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = (
            settings.ANALYSIS_CACHE_TTL_HOURS * 3600 if ttl_seconds is None else ttl_seconds
        )
        self.max_size = settings.ANALYSIS_CACHE_MAX_SIZE if max_size is None else max_size
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    @staticmethod
    def make_key(transcript: str, context_text: str = "") -> str:
        digest = hashlib.sha256()
        digest.update(transcript.encode("utf-8"))
        digest.update(b"\x00")
        digest.update((context_text or "").encode("utf-8"))
        return digest.hexdigest()

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.ttl_seconds:
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        entry.timestamp = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = entry
        if len(self._entries) > self.max_size:
            self.clean()

    def clean(self) -> int:
        """Evict expired entries, then the oldest until well under capacity."""
        now = self._clock()
        removed = 0
        for key in [k for k, e in self._entries.items() if now - e.timestamp >= self.ttl_seconds]:
            del self._entries[key]
            removed += 1

        if len(self._entries) > self.max_size:
            excess = len(self._entries) - self.max_size + 50
            oldest = sorted(self._entries.items(), key=lambda item: item[1].timestamp)[:excess]
            for key, _ in oldest:
                del self._entries[key]
                removed += 1
            logger.info(f"Cleaned {removed} entries from analysis cache")
        return removed

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class AnalysisOutcome:
    """Validated analysis plus how it was produced."""

    analysis: NoteAnalysis
    model: str
    tier: str
    confidence: float
    cost: float = 0.0
    from_cache: bool = False
    warning: Optional[str] = None
    cache_key: Optional[str] = None
    processing_time_sec: float = 0.0
    passes: int = 1


class AnalysisOrchestrator:
    """Complexity-tiered, cached, breaker-protected analysis."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        cache: Optional[AnalysisCache] = None,
        client_factory: Callable[[], AsyncOpenAI] = get_client,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.cache = cache or AnalysisCache()
        self._client_factory = client_factory
        self._sleep = sleep
        self._metrics = {
            "total_requests": 0,
            "cache_hits": 0,
            "errors": 0,
            "model_requests": {},
            "total_cost": 0.0,
        }

    async def analyze(
        self,
        transcript: str,
        context_text: str = "",
        recorded_at: Optional[datetime] = None,
        skip_cache: bool = False,
        force_tier: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Analyze a transcript with complexity-based model selection.

        Args:
            transcript: Transcript text
            context_text: Project knowledge for this user
            recorded_at: When the note was recorded
            skip_cache: Bypass cache lookup and storage
            force_tier: Override the assessed tier (simple/standard/complex)

        Returns:
            AnalysisOutcome
        """
        start_time = time.time()
        self._metrics["total_requests"] += 1

        complexity = assess_complexity(transcript, context_text)
        tier = force_tier or complexity.level
        config = settings.ANALYSIS_TIERS[tier]
        logger.info(
            f"Analysis complexity: {complexity.level} (score {complexity.score:.2f}), "
            f"tier {tier}, model {config['model']}"
        )

        cache_key = self.cache.make_key(transcript, context_text)
        if not skip_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._metrics["cache_hits"] += 1
                logger.info("Using cached analysis result")
                return AnalysisOutcome(
                    analysis=cached.analysis,
                    model=cached.model,
                    tier=cached.complexity,
                    confidence=cached.confidence,
                    cost=0.0,
                    from_cache=True,
                    cache_key=cache_key,
                    processing_time_sec=time.time() - start_time,
                    passes=0,
                )

        recording_date = (recorded_at or datetime.now()).isoformat()
        try:
            if config.get("multi_pass"):
                outcome = await self._multi_pass(transcript, context_text, recording_date, tier, config)
            else:
                outcome = await self._single_pass(transcript, context_text, recording_date, tier, config)
        except Exception:
            self._metrics["errors"] += 1
            raise

        outcome.cache_key = cache_key
        outcome.processing_time_sec = time.time() - start_time

        if not skip_cache and outcome.confidence >= config["confidence_threshold"]:
            self.cache.put(cache_key, CacheEntry(
                analysis=outcome.analysis,
                model=outcome.model,
                confidence=outcome.confidence,
                cost=outcome.cost,
                complexity=tier,
            ))
        elif not skip_cache:
            logger.debug(
                f"Not caching analysis: confidence {outcome.confidence:.2f} "
                f"< {config['confidence_threshold']}"
            )
        return outcome

    async def analyze_single_tier(
        self,
        transcript: str,
        context_text: str = "",
        recorded_at: Optional[datetime] = None,
    ) -> AnalysisOutcome:
        """Legacy path: one fixed model, no tiering and no caching."""
        start_time = time.time()
        self._metrics["total_requests"] += 1
        config = {
            "model": settings.ANALYSIS_MODEL,
            "temperature": 0.3,
            "max_tokens": settings.ANALYSIS_LEGACY_MAX_TOKENS,
        }
        recording_date = (recorded_at or datetime.now()).isoformat()
        try:
            outcome = await self._single_pass(transcript, context_text, recording_date, "legacy", config)
        except Exception:
            self._metrics["errors"] += 1
            raise
        outcome.processing_time_sec = time.time() - start_time
        return outcome

    async def _multi_pass(
        self,
        transcript: str,
        context_text: str,
        recording_date: str,
        tier: str,
        config: dict,
    ) -> AnalysisOutcome:
        """Quick pass on the simple tier, detailed pass unless it is already confident."""
        quick = await self._single_pass(
            transcript, context_text, recording_date, "simple", settings.ANALYSIS_TIERS["simple"]
        )
        if quick.confidence >= config["confidence_threshold"]:
            logger.info(f"Quick pass confident enough ({quick.confidence:.2f}), skipping detailed pass")
            return quick

        hint = REFINE_HINT.format(
            confidence=quick.confidence,
            draft=json.dumps(quick.analysis.to_storage(), ensure_ascii=False),
        )
        detailed = await self._single_pass(
            transcript, context_text, recording_date, tier, config, hint=hint
        )
        detailed.cost += quick.cost
        detailed.passes = 2
        return detailed

    async def _single_pass(
        self,
        transcript: str,
        context_text: str,
        recording_date: str,
        tier: str,
        config: dict,
        hint: str = "",
    ) -> AnalysisOutcome:
        if not await self.rate_limiter.try_acquire(SERVICE_NAME, settings.RATE_LIMIT_ANALYSIS_RPM):
            raise RateLimitExceededError(
                f"Rate limit exceeded for {config['model']} API. Please try again later."
            )

        prompt = ANALYSIS_PROMPT.format(
            recording_date=recording_date,
            project_knowledge=context_text or "None",
            transcription=transcript,
        ) + hint

        content = await self.circuit_breaker.execute(
            lambda: with_retry(
                lambda: self._request(prompt, config),
                sleep=self._sleep,
                label=f"analysis ({config['model']})",
            )
        )

        model = config["model"]
        requests = self._metrics["model_requests"]
        requests[model] = requests.get(model, 0) + 1
        cost = self._estimate_cost(model, prompt, content)
        self._metrics["total_cost"] += cost

        raw = _parse_json_response(content)
        if raw is None:
            raise SchemaValidationError("Failed to parse analysis JSON from model response")

        analysis, warning = validate_analysis(raw, recorded_at=recording_date)
        if analysis is None:
            raise SchemaValidationError(warning or "Analysis validation failed")
        if warning:
            logger.warning(f"Analysis accepted with {warning}")

        return AnalysisOutcome(
            analysis=analysis,
            model=model,
            tier=tier,
            confidence=analysis.confidence(settings.ANALYSIS_DEFAULT_CONFIDENCE),
            cost=cost,
            warning=warning,
        )

    async def _request(self, prompt: str, config: dict) -> str:
        client = self._client_factory()
        response = await client.chat.completions.create(
            model=config["model"],
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=config["temperature"],
            max_tokens=config["max_tokens"],
        )
        content = response.choices[0].message.content
        if not content:
            raise SchemaValidationError("Empty analysis response from model")
        return content

    @staticmethod
    def _estimate_cost(model: str, prompt: str, completion: str) -> float:
        # ~4 characters per token
        tokens = (len(SYSTEM_PROMPT) + len(prompt) + len(completion)) / 4
        return tokens / 1000 * settings.ANALYSIS_COST_PER_1K_TOKENS.get(model, 0.0)

    def get_metrics(self) -> dict:
        total = self._metrics["total_requests"]
        return {
            **self._metrics,
            "model_requests": dict(self._metrics["model_requests"]),
            "total_cost": round(self._metrics["total_cost"], 4),
            "cache_hit_rate": self._metrics["cache_hits"] / total if total else 0.0,
            "error_rate": self._metrics["errors"] / total if total else 0.0,
            "cache_size": len(self.cache),
        }
