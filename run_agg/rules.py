"""
Score-to-label rules.

A rule is a small comparison expression over the variable `score`,
e.g. `score >= 0.6 and score < 0.8`. Expressions are parsed into a
Python AST, checked against a whitelist of node types, and walked by
an interpreter. Nothing is compiled or executed.

Supported: numeric literals, `score`, parentheses, unary - + not,
comparisons < <= > >= == != (chaining allowed), and/or. The JavaScript
spellings &&, ||, !, === and !== are accepted as well.
"""

import ast
import logging
import operator
import re
from functools import lru_cache
from typing import Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MAX_RULE_LENGTH = 200
SCORE_NAME = "score"

_COMPARE_OPS = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

_JS_REPLACEMENTS = [
    (re.compile(r"!=="), " != "),
    (re.compile(r"==="), " == "),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]


class RuleSyntaxError(ValueError):
    pass


class LabelRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    condition: str = Field(alias="if")
    label: str


def _translate(expr: str) -> str:
    # Order matters: "!==" before "===", and both before bare "!"
    out = expr
    for pattern, repl in _JS_REPLACEMENTS:
        out = pattern.sub(repl, out)
    return out


def _check(node: ast.AST) -> None:
    if isinstance(node, ast.Expression):
        _check(node.body)
    elif isinstance(node, ast.BoolOp):
        for value in node.values:
            _check(value)
    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub, ast.UAdd)):
            raise RuleSyntaxError(f"operator {type(node.op).__name__} is not allowed")
        _check(node.operand)
    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _COMPARE_OPS:
                raise RuleSyntaxError(f"comparison {type(op).__name__} is not allowed")
        _check(node.left)
        for comparator in node.comparators:
            _check(comparator)
    elif isinstance(node, ast.Name):
        if node.id != SCORE_NAME:
            raise RuleSyntaxError(f"unknown name {node.id!r}")
    elif isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise RuleSyntaxError(f"literal {node.value!r} is not a number")
    else:
        raise RuleSyntaxError(f"{type(node).__name__} is not allowed in a rule")


@lru_cache(maxsize=256)
def compile_rule(expr: str) -> ast.Expression:
    """Parse and validate a rule. Raises RuleSyntaxError."""
    if not isinstance(expr, str) or not expr.strip():
        raise RuleSyntaxError("empty rule")
    if len(expr) > MAX_RULE_LENGTH:
        raise RuleSyntaxError(f"rule longer than {MAX_RULE_LENGTH} characters")
    try:
        tree = ast.parse(_translate(expr).strip(), mode="eval")
    except SyntaxError as e:
        raise RuleSyntaxError(f"cannot parse rule {expr!r}: {e.msg}") from e
    _check(tree)
    return tree


def _eval(node: ast.AST, score: float) -> Union[bool, float]:
    if isinstance(node, ast.Expression):
        return _eval(node.body, score)
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, score) for v in node.values)
        return any(_eval(v, score) for v in node.values)
    if isinstance(node, ast.UnaryOp):
        value = _eval(node.operand, score)
        if isinstance(node.op, ast.Not):
            return not value
        return -value if isinstance(node.op, ast.USub) else +value
    if isinstance(node, ast.Compare):
        left = _eval(node.left, score)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval(comparator, score)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.Name):
        return score
    if isinstance(node, ast.Constant):
        return node.value
    raise RuleSyntaxError(f"{type(node).__name__} is not allowed in a rule")


def evaluate_rule(expr: str, score: float) -> bool:
    return bool(_eval(compile_rule(expr), float(score)))


def pick_label(rules: Iterable[Union[LabelRule, dict]], score: float) -> Optional[str]:
    """Return the label of the first rule that matches, or None."""
    for rule in rules:
        if isinstance(rule, dict):
            rule = LabelRule.model_validate(rule)
        try:
            if evaluate_rule(rule.condition, score):
                return rule.label
        except RuleSyntaxError as e:
            logger.warning("Ignoring invalid label rule %r: %s", rule.condition, e)
    return None
