"""Schema validation with best-effort partial reconstruction."""

import logging
from datetime import datetime
from typing import Any, Optional, Tuple

from pydantic import ValidationError

from voicenotes.models import (
    AnalysisMetadata,
    AnalysisTask,
    DraftMessage,
    MentionedPerson,
    NoteAnalysis,
)

logger = logging.getLogger(__name__)

MOODS = ("positive", "neutral", "negative")


def _format_errors(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()
    )


def _valid_items(raw: Any, model) -> list:
    if not isinstance(raw, list):
        return []
    items = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            items.append(model.model_validate(item))
        except ValidationError:
            continue
    return items


def build_partial_analysis(raw: dict, recorded_at: Optional[str] = None) -> NoteAnalysis:
    """Keep whatever is valid and fill defaults for the rest."""
    summary = raw.get("summary")
    mood = raw.get("mood")
    topic = raw.get("topic")
    one_thing = raw.get("theOneThing", raw.get("the_one_thing"))
    recorded = raw.get("recordedAt", raw.get("recorded_at"))
    metadata = raw.get("analysisMetadata")

    data = {
        "summary": summary if isinstance(summary, str) else "Analysis incomplete",
        "mood": mood if mood in MOODS else "neutral",
        "topic": topic if isinstance(topic, str) else "General",
        "theOneThing": one_thing if isinstance(one_thing, str) else None,
        "tasks": _valid_items(raw.get("tasks"), AnalysisTask),
        "draftMessages": _valid_items(raw.get("draftMessages", raw.get("draft_messages")), DraftMessage),
        "people": _valid_items(raw.get("people"), MentionedPerson),
        "recordedAt": recorded if isinstance(recorded, str) else (recorded_at or datetime.now().isoformat()),
    }
    if isinstance(metadata, dict):
        try:
            data["analysisMetadata"] = AnalysisMetadata.model_validate(metadata)
        except ValidationError:
            logger.debug("Dropping invalid analysisMetadata from partial analysis")
    return NoteAnalysis.model_validate(data)


def validate_analysis(
    raw: Any,
    recorded_at: Optional[str] = None,
) -> Tuple[Optional[NoteAnalysis], Optional[str]]:
    """Validate a raw analysis dict.

    Returns:
        Tuple of (analysis or None, warning/error message or None).
        A partially reconstructed analysis comes with a
        "Partial validation: ..." warning.
    """
    if isinstance(raw, dict) and recorded_at and not raw.get("recordedAt"):
        raw = {**raw, "recordedAt": recorded_at}

    try:
        return NoteAnalysis.model_validate(raw), None
    except ValidationError as e:
        messages = _format_errors(e)
        logger.warning(f"Analysis validation failed: {messages}")

        if not isinstance(raw, dict):
            return None, f"Validation failed: {messages}"
        try:
            return build_partial_analysis(raw, recorded_at), f"Partial validation: {messages}"
        except ValidationError as partial_error:
            return None, f"Validation failed: {_format_errors(partial_error)}"
