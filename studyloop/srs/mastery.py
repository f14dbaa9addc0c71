"""Concept mastery bookkeeping driven by graded cards."""

from datetime import datetime

from studyloop.models.concept_mastery import ConceptMastery

MASTERY_GAIN = 0.05
MASTERY_LOSS = 0.1
GAP_RESOLVED_THRESHOLD = 0.5


def new_mastery(user_id: int, concept_id: str) -> ConceptMastery:
    """A first-exposure mastery row (not yet persisted)."""
    return ConceptMastery(
        user_id=user_id,
        concept_id=concept_id,
        mastery_level=0.0,
        peak_mastery=0.0,
        total_exposures=0,
        successful_recalls=0,
    )


def apply_review(mastery: ConceptMastery, correct: bool, now: datetime) -> ConceptMastery:
    """Nudge mastery up on a correct answer and down on a miss, within [0, 1]."""
    level = mastery.mastery_level or 0.0
    if correct:
        level = min(1.0, level + MASTERY_GAIN)
        mastery.successful_recalls = (mastery.successful_recalls or 0) + 1
    else:
        level = max(0.0, level - MASTERY_LOSS)
    mastery.mastery_level = round(level, 6)
    mastery.peak_mastery = max(mastery.peak_mastery or 0.0, mastery.mastery_level)
    mastery.total_exposures = (mastery.total_exposures or 0) + 1
    mastery.last_reviewed_at = now
    return mastery


def resolves_gaps(mastery: ConceptMastery, correct: bool) -> bool:
    """Open knowledge gaps close once a correct answer lifts mastery to 0.5."""
    return correct and mastery.mastery_level >= GAP_RESOLVED_THRESHOLD
