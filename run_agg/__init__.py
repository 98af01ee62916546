"""
Run Aggregation - consolidation and layout for multi-step LLM pipeline runs.

This package implements two pure transforms over pipeline runs:
1. Consolidation: many model attempts per step -> one value + confidence
2. Layout: flat, branching pipeline definition -> numbered, indented rows

Key features:
- Value normalization with placeholder/junk detection
- Vote bucketing with quality tie-breaks and blended confidence
- Boolean majority voting for score and decision steps
- Weighted overall score and per-step run statistics
- Safe score-to-label rules (no code execution)
- History service loader with cached fallback
"""

from .config import ConsolidationConfig, HistoryConfig, load_history_config
from .models import (
    Attempt,
    BranchRow,
    LayoutRow,
    PipelineStepDef,
    RunCore,
    RunDetail,
    Step,
    StepDefinition,
)
from .normalize import normalize_value, parse_bool, slugify, derive_final_key
from .aggregation import (
    quality,
    bucket_attempts,
    combine_confidence,
    consolidate_extraction,
    vote_boolean,
)
from .runner import build_run_detail
from .stats import compute_overall_score, compute_stats
from .layout import layout_steps, layout_branches
from .rules import LabelRule, RuleSyntaxError, evaluate_rule, pick_label
from .loader import RunSourceError, load_run_detail

__all__ = [
    # Config
    "ConsolidationConfig",
    "HistoryConfig",
    "load_history_config",
    # Models
    "Attempt",
    "Step",
    "StepDefinition",
    "RunCore",
    "RunDetail",
    "PipelineStepDef",
    "LayoutRow",
    "BranchRow",
    # Normalization
    "normalize_value",
    "parse_bool",
    "slugify",
    "derive_final_key",
    # Aggregation
    "quality",
    "bucket_attempts",
    "combine_confidence",
    "consolidate_extraction",
    "vote_boolean",
    "build_run_detail",
    "compute_overall_score",
    "compute_stats",
    # Layout
    "layout_steps",
    "layout_branches",
    # Rules
    "LabelRule",
    "RuleSyntaxError",
    "evaluate_rule",
    "pick_label",
    # Loading
    "RunSourceError",
    "load_run_detail",
]
