from typing import Mapping, Optional

from .models import RunDetail, Step


def score_weight(step: Step, weights: Optional[Mapping[str, float]] = None) -> float:
    """Declared weight of a Score step, else the run's recorded weight for its key, else 1.0."""
    if step.definition is not None and step.definition.weight is not None:
        return float(step.definition.weight)
    recorded = (weights or {}).get(step.final_key) if step.final_key else None
    if isinstance(recorded, (int, float)) and not isinstance(recorded, bool):
        return float(recorded)
    return 1.0


def compute_overall_score(steps: list[Step], fallback: Optional[float] = None,
                          weights: Optional[Mapping[str, float]] = None) -> float:
    """
    Weighted agreement over the run's Score steps.

    Each finalized Score step contributes its weight (see score_weight)
    to the total and, when its consolidated label is positive, to the
    positive sum. Unknown labels (confidence 0) count as not positive.
    Steps with a non-positive weight are ignored. Without Score steps
    the header's own score is returned, or 0.
    """
    score_steps = [s for s in steps if s.step_type == "Score" and s.status == "finalized"]
    if not score_steps:
        return float(fallback) if isinstance(fallback, (int, float)) else 0.0

    total = 0.0
    positive = 0.0
    for step in score_steps:
        weight = score_weight(step, weights)
        if weight <= 0:
            continue
        total += weight
        if step.final_value is True and step.final_confidence > 0:
            positive += weight

    return round(positive / total, 4) if total > 0 else 0.0


def compute_stats(detail: RunDetail, min_confidence: float = 0.6) -> dict:
    def make_bucket(items: list[Step]) -> dict:
        finalized = [s for s in items if s.status == "finalized"]
        failed = [s for s in items if s.status == "failed"]
        attempts = [a for s in items for a in s.attempts]
        final_attempts = [a for a in attempts if a.is_final]
        confidences = [s.final_confidence for s in finalized]
        low = [c for c in confidences if c < min_confidence]

        return {
            "steps_total": len(items),
            "steps_finalized": len(finalized),
            "steps_failed": len(failed),
            "attempts_total": len(attempts),
            "attempts_final": len(final_attempts),
            "agreement_rate": len(final_attempts) / len(attempts) if attempts else 0.0,
            "mean_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
            "low_confidence_steps": len(low),
        }

    steps = detail.steps
    overall = make_bucket(steps)

    per_step_type = {}
    for step_type in ("Extraction", "Score", "Decision"):
        typed = [s for s in steps if s.step_type == step_type]
        if typed:
            per_step_type[step_type] = make_bucket(typed)

    per_step = {}
    for s in steps:
        key = f"{s.step_type}:{s.final_key or s.id}"
        per_step.setdefault(key, []).append(s)

    per_step = {k: make_bucket(v) for k, v in per_step.items()}

    return {
        "overall": overall,
        "per_step_type": per_step_type,
        "per_step": per_step,
        "overall_score": detail.run.overall_score,
    }
