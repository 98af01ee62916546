"""
Consolidation of repeated model attempts into one value per step.

This module implements the voting side of the engine:
- Heuristic quality score for a single extraction candidate
- Bucketing of extraction attempts by normalized value
- Confidence blending of vote share and candidate quality
- Boolean majority voting for score and decision steps
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import ConsolidationConfig, DEFAULT_CONFIG, QUALITY_CEILING
from .models import Attempt, Evidence
from .normalize import normalize_value, parse_bool, slugify

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"[^\W\d_]+\s+[^\W\d_]+")


@dataclass
class VoteBucket:
    key: str
    digit_key: bool
    votes: int = 0
    best_quality: float = 0.0
    best_sample: Any = None
    pretty: list = field(default_factory=list)
    members: list = field(default_factory=list)  # Indexes into the step's attempt list


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_bbox(value: Any) -> Optional[list[float]]:
    if not isinstance(value, (list, tuple)):
        return None
    try:
        box = [float(x) for x in value]
    except (TypeError, ValueError):
        return None
    return box if all(math.isfinite(x) for x in box) else None


def extract_evidence(raw: Any) -> Evidence:
    """Collect page/quote/bbox from a candidate wrapper or its nested source object."""
    if not isinstance(raw, dict):
        return Evidence()
    layers = [raw]
    if isinstance(raw.get("source"), dict):
        layers.append(raw["source"])

    page = quote = bbox = None
    for layer in layers:
        if page is None:
            page = _as_int(layer.get("page"))
        if quote is None and isinstance(layer.get("quote"), str):
            quote = layer["quote"]
        if bbox is None:
            bbox = _as_bbox(layer.get("bbox"))
    return Evidence(page=page, quote=quote, bbox=bbox)


def field_keywords(step_key: Optional[str], cfg: ConsolidationConfig = DEFAULT_CONFIG) -> list[str]:
    if not step_key:
        return []
    slug = slugify(step_key)
    words = [t for t in slug.split("_") if len(t) >= 3]
    return words + list(cfg.field_keywords.get(slug, []))


def quality(value: Any, step_key: Optional[str] = None,
            cfg: ConsolidationConfig = DEFAULT_CONFIG) -> float:
    """
    Heuristic plausibility of one extraction candidate.

    Additive, roughly 0..2.3. Only meaningful for ranking candidates
    of the same step against each other.
    """
    norm = normalize_value(value, step_key, cfg)
    if norm.junk:
        return 0.0

    score = 1.0
    if norm.digits >= cfg.long_id_digits:
        score += 0.4
    if _NAME_RE.fullmatch(norm.text):
        score += 0.3

    evidence = extract_evidence(value)
    if evidence.bbox and any(abs(x) > 0 for x in evidence.bbox):
        score += 0.2
    if evidence.page is not None and evidence.page > 0:
        score += 0.1
    if evidence.quote:
        quote = evidence.quote.casefold()
        if any(kw.casefold() in quote for kw in field_keywords(step_key, cfg)):
            score += 0.3
    return score


def bucket_attempts(attempts: list[Attempt], step_key: Optional[str] = None,
                    cfg: ConsolidationConfig = DEFAULT_CONFIG) -> list[VoteBucket]:
    """
    Group non-junk attempts by normalized key, in first-seen order.

    A candidate that cannot be normalized is dropped from the vote; one
    whose quality cannot be scored still votes with quality 0.
    """
    buckets: dict[str, VoteBucket] = {}
    for idx, attempt in enumerate(attempts):
        try:
            norm = normalize_value(attempt.candidate_value, step_key, cfg)
        except Exception as e:
            logger.warning("Skipping attempt %s of %s: %s", attempt.attempt_no, step_key, e)
            continue
        if norm.junk:
            continue
        try:
            q = quality(attempt.candidate_value, step_key, cfg)
        except Exception as e:
            logger.warning("No quality for attempt %s of %s: %s", attempt.attempt_no, step_key, e)
            q = 0.0
        bucket = buckets.get(norm.key)
        if bucket is None:
            bucket = buckets[norm.key] = VoteBucket(key=norm.key, digit_key=norm.digit_key)
        bucket.votes += 1
        bucket.pretty.append(norm.text)
        bucket.members.append(idx)
        if bucket.best_sample is None or q > bucket.best_quality:
            bucket.best_quality = q
            bucket.best_sample = attempt.candidate_value
    return list(buckets.values())


def rank_buckets(buckets: list[VoteBucket]) -> list[VoteBucket]:
    # sorted() is stable, so remaining ties keep first-seen order
    return sorted(buckets, key=lambda b: (-b.votes, -b.best_quality, not b.digit_key))


def pretty_value(bucket: VoteBucket) -> str:
    if bucket.digit_key:
        return bucket.key
    # most_common keeps insertion order among equal counts
    return Counter(bucket.pretty).most_common(1)[0][0]


def combine_confidence(v: int, v2: int, n: int, q: float, precision: int = 4) -> float:
    """
    Blend vote share with candidate quality.

    Args:
        v: Votes for the winning bucket
        v2: Votes for the runner-up (0 if none)
        n: Total valid (non-junk) votes
        q: Best quality inside the winning bucket

    Returns:
        Confidence in [0, 1], rounded to `precision` decimals.
    """
    if n <= 0:
        return 0.0
    base = (v + 0.5) / (n + 1)
    margin = max(0.0, (v - v2) / max(1, n))
    vote_signal = 0.8 * base + 0.2 * margin
    alpha = min(0.85, 0.55 + 0.06 * n)
    quality_signal = min(1.0, max(0.0, q / QUALITY_CEILING))
    confidence = alpha * vote_signal + (1 - alpha) * quality_signal
    return round(min(1.0, max(0.0, confidence)), precision)


def consolidate_extraction(attempts: list[Attempt], step_key: Optional[str] = None,
                           cfg: ConsolidationConfig = DEFAULT_CONFIG) -> dict:
    """
    Pick the winning value for an extraction step.

    Returns:
        Dict with:
        - 'value': Pretty form of the winning value, or the placeholder
        - 'confidence': Combined confidence (0 when nothing valid)
        - 'vote_count' / 'runner_up_count' / 'total_votes'
        - 'quality': Best quality in the winning bucket
        - 'evidence': Page/quote/bbox of the best sample
        - 'attempts': Attempts re-tagged with is_final
    """
    buckets = rank_buckets(bucket_attempts(attempts, step_key, cfg))
    total = sum(b.votes for b in buckets)

    if not buckets:
        return {
            'value': cfg.placeholder,
            'confidence': 0.0,
            'vote_count': 0,
            'runner_up_count': 0,
            'total_votes': 0,
            'quality': 0.0,
            'evidence': None,
            'attempts': [a.model_copy(update={"is_final": False}) for a in attempts],
        }

    winner = buckets[0]
    runner_up = buckets[1].votes if len(buckets) > 1 else 0
    winners = set(winner.members)
    evidence = extract_evidence(winner.best_sample)

    return {
        'value': pretty_value(winner),
        'confidence': combine_confidence(winner.votes, runner_up, total, winner.best_quality,
                                         cfg.confidence_precision),
        'vote_count': winner.votes,
        'runner_up_count': runner_up,
        'total_votes': total,
        'quality': winner.best_quality,
        'evidence': evidence if evidence != Evidence() else None,
        'attempts': [a.model_copy(update={"is_final": i in winners}) for i, a in enumerate(attempts)],
    }


def vote_boolean(attempts: list[Attempt], precision: int = 4) -> dict:
    """
    Majority vote over yes/no attempts.

    Unparseable attempts are excluded. Ties go to True. With no parseable
    attempts the result is False with confidence 0, which means "unknown".
    """
    votes = [parse_bool(a.candidate_value) for a in attempts]
    t = sum(1 for v in votes if v is True)
    f = sum(1 for v in votes if v is False)

    if t + f == 0:
        return {
            'value': False,
            'confidence': 0.0,
            'votes_true': 0,
            'votes_false': 0,
            'excluded': len(attempts),
            'attempts': [a.model_copy(update={"is_final": False}) for a in attempts],
        }

    winner = t >= f
    confidence = round((max(t, f) + 0.5) / (t + f + 1), precision)
    return {
        'value': winner,
        'confidence': confidence,
        'votes_true': t,
        'votes_false': f,
        'excluded': len(attempts) - t - f,
        'attempts': [a.model_copy(update={"is_final": v is not None and v == winner})
                     for a, v in zip(attempts, votes)],
    }
