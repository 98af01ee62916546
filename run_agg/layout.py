"""
Pipeline topology layout.

Turns the flat, ordered step list of a pipeline definition into rows
with branch depth and hierarchical numbering ("2", "2.1", "2.2", "3").

Two views are provided:
- layout_steps: route-based indentation. A DecisionPrompt opens a branch
  frame; steps carrying a route sit inside it; a step without a route
  (or with the ROOT route) closes every open frame.
- layout_branches: target-based view. A step's `targets` map is followed
  into branch chains that end at a step with `mergeTo`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .config import ROOT_ROUTE
from .models import BranchRow, LayoutRow, PipelineStepDef

logger = logging.getLogger(__name__)

WARN_ORPHANED_ROUTE = "orphaned_route"
WARN_IMPLICIT_MERGE = "implicit_merge"
WARN_UNDECLARED_BRANCH = "undeclared_branch"


@dataclass
class _BranchFrame:
    decision_id: Any
    branch_keys: tuple


def _as_step(step: Any) -> PipelineStepDef:
    if isinstance(step, PipelineStepDef):
        return step
    return PipelineStepDef.model_validate(step)


def _is_root(route: Optional[str], root_route: str) -> bool:
    return not route or route.strip().upper() == root_route.upper()


def _label(counters: list[int], depth: int) -> str:
    while len(counters) <= depth:
        counters.append(0)
    del counters[depth + 1:]
    counters[depth] += 1
    return ".".join(str(c) for c in counters[:depth + 1])


def layout_steps(steps: Iterable[Any], root_route: str = ROOT_ROUTE) -> list[LayoutRow]:
    """
    Lay out pipeline steps by route.

    Args:
        steps: Ordered PipelineStepDef objects or dicts in editor shape
        root_route: Route name that means "main flow"

    Returns:
        One LayoutRow per step. Depth is the number of open branch
        frames when the row is emitted. Warnings are advisory.
    """
    rows: list[LayoutRow] = []
    stack: list[_BranchFrame] = []
    counters: list[int] = [0]
    prev: Optional[PipelineStepDef] = None

    for idx, raw in enumerate(steps, start=1):
        step = _as_step(raw)
        warnings = []

        if _is_root(step.route, root_route):
            if len(stack) > 1 and not (prev is not None and prev.has_merge_marker()):
                warnings.append(WARN_IMPLICIT_MERGE)
            stack.clear()
        elif not stack:
            warnings.append(WARN_ORPHANED_ROUTE)
        elif stack[-1].branch_keys and step.route not in stack[-1].branch_keys:
            warnings.append(WARN_UNDECLARED_BRANCH)

        depth = len(stack)
        rows.append(LayoutRow(
            step=step,
            depth=depth,
            row_idx=idx,
            row_label=_label(counters, depth),
            warnings=warnings,
        ))
        if warnings:
            logger.debug("Step %s at depth %d: %s", step.id, depth, ", ".join(warnings))

        if step.type == "DecisionPrompt":
            stack.append(_BranchFrame(decision_id=step.id, branch_keys=tuple(step.branch_keys())))
        prev = step

    return rows


def layout_branches(steps: Iterable[Any]) -> list[BranchRow]:
    """
    Lay out pipeline steps by following decision targets.

    Each target of a step gets a header row one level deeper, followed by
    the chain of steps starting at the target id up to and including the
    first step with `mergeTo`. Steps are emitted once; revisits stop the
    chain.
    """
    steps = [_as_step(s) for s in steps]
    id_to_idx = {s.id: i for i, s in enumerate(steps)}
    rows: list[BranchRow] = []
    seen: set = set()
    counters: list[int] = [0]

    def next_label(depth: int) -> str:
        while len(counters) <= depth:
            counters.append(0)
        counters[depth] += 1
        for i in range(depth + 1, len(counters)):
            counters[i] = 0
        return ".".join(str(c) for c in counters[:depth + 1])

    def process_chain(start: int, depth: int, branch_key: str, c_key: str) -> None:
        idx = start
        while idx < len(steps):
            cur = steps[idx]
            if cur.id in seen:
                break
            process_step(idx, depth, branch_key, c_key)
            if cur.merge_to is not None:
                break
            idx += 1

    def process_step(idx: int, depth: int, branch_key: Optional[str] = None,
                     c_key: Optional[str] = None) -> None:
        s = steps[idx]
        rows.append(BranchRow(
            step=s,
            depth=depth,
            row_label=next_label(depth),
            branch_key=branch_key,
            is_branch_end=s.merge_to is not None,
            c_key=c_key,
        ))
        seen.add(s.id)

        for key, target_id in s.targets.items():
            if target_id is None or target_id == "":
                continue
            sub_key = f"{s.id}:{key}"
            counters.append(0)
            rows.append(BranchRow(
                step=s,
                depth=depth + 1,
                row_label=".".join(str(c) for c in counters[:depth + 1]),
                branch_key=key,
                is_branch_header=True,
                c_key=sub_key,
            ))
            start = id_to_idx.get(target_id)
            if start is not None:
                process_chain(start, depth + 1, key, sub_key)
            else:
                logger.debug("Step %s: target %r of branch %r not found", s.id, target_id, key)
            counters.pop()

    for i, s in enumerate(steps):
        if s.id not in seen:
            process_step(i, 0)

    return rows
