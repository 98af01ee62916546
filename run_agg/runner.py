import logging
from typing import Any, Optional

from pydantic import ValidationError

from .aggregation import consolidate_extraction, vote_boolean
from .config import ConsolidationConfig, DEFAULT_CONFIG
from .models import RunCore, RunDetail, Step, StepDefinition
from .normalize import derive_final_key
from .parsing import ParsedEntry, parse_log
from .stats import compute_overall_score, score_weight

logger = logging.getLogger(__name__)

_HEADER_FIELDS = set(RunCore.model_fields)


def _run_header(data: Any) -> RunCore:
    if not isinstance(data, dict):
        return RunCore()
    header = {k: v for k, v in data.items() if k in _HEADER_FIELDS}
    if "id" not in header and "run_id" in data:
        header["id"] = data["run_id"]
    try:
        return RunCore.model_validate(header)
    except ValidationError as e:
        logger.warning("Ignoring malformed run header fields: %s", e)
        return RunCore(id=header.get("id") if isinstance(header.get("id"), (int, str)) else None)


def _order_entries(entries: list[ParsedEntry]) -> list[ParsedEntry]:
    if entries and all(e.seq_no is not None for e in entries):
        return sorted(entries, key=lambda e: e.seq_no)
    return entries


def steps_from_log(entries: list) -> list[Step]:
    """
    Group log entries into Steps.

    Entries of the same prompt type and final_key are batches of the
    same step and collapse into one Step, in first-seen order. Attempt
    numbers are renumbered across the batches.
    """
    parsed, rejected = parse_log(entries)
    if rejected:
        logger.info("%d of %d log entries were unparseable", len(rejected), len(entries))

    groups: dict[tuple, list[ParsedEntry]] = {}
    for entry in _order_entries(parsed):
        groups.setdefault((entry.kind, entry.final_key), []).append(entry)

    steps = []
    for order, ((kind, key), group) in enumerate(groups.items()):
        first = group[0]
        attempts = [
            a.model_copy(update={"attempt_no": n})
            for n, a in enumerate((a for e in group for a in e.attempts), start=1)
        ]
        weight = next((e.weight for e in group if e.weight is not None), None)
        route = next((e.route for e in group if e.route), None)
        steps.append(Step(
            id=first.step_id if first.step_id is not None else f"{kind.lower()}:{key}",
            order_index=order,
            step_type=kind,
            status="running",
            final_key=key,
            attempts=attempts,
            route=route,
            definition=StepDefinition(
                prompt_id=first.prompt_id,
                prompt_type=first.prompt_type,
                prompt_text=first.prompt_text,
                json_key=first.json_key,
                weight=weight,
            ),
        ))
    return steps


def _step_from_dict(raw: Any, index: int) -> Step:
    try:
        return Step.model_validate(raw)
    except ValidationError as e:
        logger.warning("Step %d is malformed: %s", index, e)
        step_id = raw.get("id", index) if isinstance(raw, dict) else index
        if not isinstance(step_id, (int, str)):
            step_id = index
        return Step(id=step_id, order_index=index, step_type="Meta", status="failed",
                    error=f"malformed step: {e.error_count()} error(s)")


def _step_key(step: Step) -> str:
    if step.final_key:
        return step.final_key
    d = step.definition
    if d is not None:
        key = derive_final_key(None, d.json_key, d.prompt_text, d.prompt_id)
        if key:
            return key
    return f"step_{step.id}"


def consolidate_step(step: Step, cfg: ConsolidationConfig = DEFAULT_CONFIG) -> Step:
    """Reduce one step's attempts to its final value and confidence."""
    key = _step_key(step)

    if step.step_type == "Extraction":
        out = consolidate_extraction(step.attempts, key, cfg)
        update = {"final_value": out["value"], "evidence": out["evidence"]}
    elif step.step_type in ("Score", "Decision"):
        out = vote_boolean(step.attempts, cfg.confidence_precision)
        update = {"final_value": out["value"]}
    else:
        # Final/Meta steps are bookkeeping
        return step.model_copy(update={"final_key": key, "status": "finalized"})

    update.update({
        "final_key": key,
        "final_confidence": out["confidence"],
        "attempts": out["attempts"],
        "status": "finalized",
        "error": None,
    })
    return step.model_copy(update=update)


def consolidate_steps(steps: list[Step], cfg: ConsolidationConfig = DEFAULT_CONFIG) -> list[Step]:
    out = []
    for step in steps:
        if step.status == "failed" and not step.attempts:
            out.append(step)
            continue
        try:
            out.append(consolidate_step(step, cfg))
        except Exception as e:
            logger.exception("Consolidation failed for step %s", step.id)
            out.append(step.model_copy(update={
                "status": "failed",
                "error": str(e) or type(e).__name__,
                "final_value": None,
                "final_confidence": 0.0,
            }))
    return out


def resolve_score_weights(steps: list[Step], recorded: Optional[dict] = None) -> list[Step]:
    """Pin every Score step's weight on its definition so a re-run reads the same weight."""
    out = []
    for step in steps:
        if step.step_type == "Score" and (step.definition is None or step.definition.weight is None):
            definition = (step.definition or StepDefinition()).model_copy(
                update={"weight": score_weight(step, recorded)}
            )
            step = step.model_copy(update={"definition": definition})
        out.append(step)
    return out


def build_final_maps(steps: list[Step], header: Optional[RunCore] = None) -> dict:
    """
    Merge consolidated steps into the run-level maps.

    Returns:
        Dict with 'final_extraction', 'final_scores' and 'final_decisions'.
        `final_scores` holds each Score step's weight; the consolidated
        label stays on the step. Keys already present on the header and
        not produced by any step are kept.
    """
    extraction = dict(header.final_extraction) if header else {}
    scores = dict(header.final_scores) if header else {}
    decisions = dict(header.final_decisions) if header else {}
    recorded = header.final_scores if header else None

    for step in steps:
        if step.status != "finalized" or not step.final_key:
            continue
        key = step.final_key
        if step.step_type == "Extraction":
            extraction[key] = step.final_value
        elif step.step_type == "Score":
            scores[key] = score_weight(step, recorded)
        elif step.step_type == "Decision":
            decisions[key] = bool(step.final_value)

    return {
        "final_extraction": extraction,
        "final_scores": scores,
        "final_decisions": decisions,
    }


def build_run_detail(payload: Any, cfg: ConsolidationConfig = DEFAULT_CONFIG) -> RunDetail:
    """
    Assemble a consolidated RunDetail.

    Accepts either a run log (a list of entries, or a dict with a `log`
    list next to the run header fields) or an already-shaped detail
    (`run` + `steps` with attempts), which is consolidated again.
    Pure: the same payload always yields the same RunDetail.
    """
    if isinstance(payload, list):
        header, steps = RunCore(), steps_from_log(payload)
    elif isinstance(payload, dict) and isinstance(payload.get("log"), list):
        header = _run_header(payload.get("run", payload))
        steps = steps_from_log(payload["log"])
    elif isinstance(payload, dict) and isinstance(payload.get("steps"), list):
        header = _run_header(payload.get("run", {}))
        steps = [_step_from_dict(raw, i) for i, raw in enumerate(payload["steps"])]
        steps.sort(key=lambda s: s.order_index)
    else:
        raise ValueError("Unrecognised run payload: expected a log or a run detail")

    steps = resolve_score_weights(consolidate_steps(steps, cfg), header.final_scores)
    maps = build_final_maps(steps, header)
    overall = compute_overall_score(steps, fallback=header.overall_score, weights=header.final_scores)
    run = header.model_copy(update={**maps, "overall_score": overall})

    failed = sum(1 for s in steps if s.status == "failed")
    if failed:
        logger.warning("Run %s: %d of %d steps failed", run.id, failed, len(steps))
    return RunDetail(run=run, steps=steps)
