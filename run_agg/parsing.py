"""
Boundary parsing of raw run-log entries.

Log entries come from several backend versions and vary in which
fields are present. Each entry is validated into a typed ParsedEntry
or returned as an Unparseable marker; nothing past this module sees
the raw dicts except as candidate values.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .models import Attempt, PROMPT_STEP_TYPES, PromptType
from .normalize import derive_final_key

logger = logging.getLogger(__name__)


class LogEntryHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")

    seq_no: Optional[int] = None
    step_id: Optional[Union[int, str]] = None
    prompt_id: Optional[Union[int, str]] = None
    prompt_type: PromptType
    prompt_text: Optional[str] = None
    decision_key: Optional[str] = None
    json_key: Optional[str] = None
    route: Optional[str] = None
    merge_key: Optional[Union[bool, str]] = None
    weight: Optional[float] = None
    result: Any = None


@dataclass
class ParsedEntry:
    kind: str  # Extraction / Score / Decision
    index: int
    final_key: str
    seq_no: Optional[int] = None
    step_id: Optional[Union[int, str]] = None
    prompt_id: Optional[Union[int, str]] = None
    prompt_type: Optional[str] = None
    prompt_text: Optional[str] = None
    json_key: Optional[str] = None
    route: Optional[str] = None
    merge_key: Optional[Union[bool, str]] = None
    weight: Optional[float] = None
    attempts: list = field(default_factory=list)


@dataclass
class Unparseable:
    index: int
    reason: str
    raw: Any = None


def _coerce_result(result: Any) -> Any:
    # Some backends store the result column as JSON text
    if isinstance(result, str) and result.strip()[:1] in ("{", "["):
        try:
            return json.loads(result)
        except json.JSONDecodeError:
            return result
    return result


def _confidence(item: Any) -> Optional[float]:
    if isinstance(item, dict):
        value = item.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def _source_tag(item: Any, default: str = "llm") -> str:
    if isinstance(item, dict) and isinstance(item.get("source"), str):
        return item["source"]
    return default


def _explanation(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        for key in ("explanation", "label", "answer"):
            if isinstance(item.get(key), str):
                return item[key]
    return None


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def extraction_attempts(result: Any) -> list[Attempt]:
    if isinstance(result, dict) and isinstance(result.get("results"), list):
        items = result["results"]
    elif isinstance(result, dict) and "value" in result:
        items = [result]
    elif _is_scalar(result):
        items = [result]
    else:
        raise ValueError("extraction result has no candidates")

    return [
        Attempt(
            attempt_no=i + 1,
            candidate_value=item,
            candidate_confidence=_confidence(item),
            source=_source_tag(item),
        )
        for i, item in enumerate(items)
    ]


def _score_vote(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    vote = item.get("vote")
    if isinstance(vote, str) and vote.strip().lower() == "unsure":
        return "unsure"
    if "result" in item:
        return item["result"]
    return vote


def scoring_attempts(result: Any) -> list[Attempt]:
    if isinstance(result, dict):
        scores = result.get("scores")
        if isinstance(scores, list) and scores:
            return [
                Attempt(
                    attempt_no=i + 1,
                    candidate_value=_score_vote(item),
                    candidate_key=_explanation(item),
                    candidate_confidence=_confidence(item),
                    source=_source_tag(item),
                )
                for i, item in enumerate(scores)
            ]
        consolidated = result.get("consolidated")
        if isinstance(consolidated, dict) and "result" in consolidated:
            return [Attempt(
                attempt_no=1,
                candidate_value=consolidated["result"],
                candidate_key=_explanation(consolidated),
                candidate_confidence=_confidence(consolidated),
                source="consolidated",
            )]
        if "result" in result or "vote" in result:
            return [Attempt(attempt_no=1, candidate_value=_score_vote(result),
                            candidate_key=_explanation(result))]
        if isinstance(scores, list):
            return []
    elif _is_scalar(result):
        return [Attempt(attempt_no=1, candidate_value=result)]
    raise ValueError("scoring result has no scores")


def decision_attempts(result: Any) -> list[Attempt]:
    if isinstance(result, dict):
        for key in ("votes", "results"):
            if isinstance(result.get(key), list):
                items = result[key]
                break
        else:
            items = [result]
    elif _is_scalar(result):
        items = [result]
    else:
        raise ValueError("decision result has no votes")

    return [
        Attempt(
            attempt_no=i + 1,
            candidate_value=item,
            candidate_key=_explanation(item),
            candidate_confidence=_confidence(item),
            source=_source_tag(item),
        )
        for i, item in enumerate(items)
    ]


_EXTRACTORS = {
    "ExtractionPrompt": extraction_attempts,
    "ScoringPrompt": scoring_attempts,
    "DecisionPrompt": decision_attempts,
}


def parse_entry(raw: Any, index: int = 0) -> Union[ParsedEntry, Unparseable]:
    """Parse one raw log entry. Never raises."""
    if not isinstance(raw, dict):
        return Unparseable(index=index, reason="entry is not an object", raw=raw)
    try:
        header = LogEntryHeader.model_validate(raw)
    except ValidationError as e:
        return Unparseable(index=index, reason=f"invalid entry: {e.error_count()} error(s)", raw=raw)

    try:
        attempts = _EXTRACTORS[header.prompt_type](_coerce_result(header.result))
    except ValueError as e:
        return Unparseable(index=index, reason=str(e), raw=raw)

    final_key = derive_final_key(header.decision_key, header.json_key,
                                 header.prompt_text, header.prompt_id)
    if final_key is None:
        final_key = f"step_{header.step_id if header.step_id is not None else index}"

    return ParsedEntry(
        kind=PROMPT_STEP_TYPES[header.prompt_type],
        index=index,
        final_key=final_key,
        seq_no=header.seq_no,
        step_id=header.step_id,
        prompt_id=header.prompt_id,
        prompt_type=header.prompt_type,
        prompt_text=header.prompt_text,
        json_key=header.json_key,
        route=header.route,
        merge_key=header.merge_key,
        weight=header.weight,
        attempts=attempts,
    )


def parse_log(entries: list) -> tuple[list[ParsedEntry], list[Unparseable]]:
    parsed, rejected = [], []
    for i, raw in enumerate(entries):
        entry = parse_entry(raw, i)
        if isinstance(entry, Unparseable):
            logger.warning("Skipping log entry %d: %s", entry.index, entry.reason)
            rejected.append(entry)
        else:
            parsed.append(entry)
    return parsed, rejected
