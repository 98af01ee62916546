"""
Value normalization for consolidation.

Turns raw candidate values into comparison keys so that formatting
variants of the same answer ("12 345 678" vs "12345678") vote together,
and flags placeholder answers ("nicht angegeben", "n/a", leaked field
names) as junk so they never win a vote.
"""

import re
import unicodedata
from typing import Any, NamedTuple, Optional

from .config import ConsolidationConfig, DEFAULT_CONFIG

TRUE_WORDS = {"ja", "yes", "y", "wahr", "true", "1"}
FALSE_WORDS = {"nein", "no", "n", "falsch", "false", "0"}

# Keys checked, in order, when a vote arrives wrapped in a dict
BOOL_WRAPPER_KEYS = ("boolean", "bool", "vote", "answer", "decision", "result", "value", "route")

_PUNCT_RE = re.compile(r"[.,;:!?\"'`´()\[\]{}<>/\\|_*#~+=\-‐‑‒–—―]")
_WS_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"[^0-9]")


class Normalized(NamedTuple):
    key: str
    junk: bool
    digits: int
    digit_key: bool
    text: str  # Trimmed original form, used as the "pretty" value


def unwrap_value(raw: Any) -> Any:
    """Unwrap a {value: ...} wrapper one level."""
    if isinstance(raw, dict) and "value" in raw:
        return raw["value"]
    return raw


def _to_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKC", text).casefold()
    return _WS_RE.sub(" ", text).strip()


def _strip_punct(text: str) -> str:
    return _WS_RE.sub(" ", _PUNCT_RE.sub("", text)).strip()


def _stop_set(cfg: ConsolidationConfig) -> set:
    folded = {_fold(w) for w in cfg.stop_words}
    return folded | {_strip_punct(w) for w in folded}


def is_id_key(step_key: Optional[str], cfg: ConsolidationConfig = DEFAULT_CONFIG) -> bool:
    """True when the field named by step_key holds an identifier (claim no., customer no., ...)."""
    if not step_key:
        return False
    slug = slugify(step_key)
    if any(token in cfg.id_tokens for token in slug.split("_")):
        return True
    padded = f"_{slug}_"
    return any(f"_{slugify(key)}_" in padded for key in cfg.id_keys)


def normalize_value(raw: Any, step_key: Optional[str] = None,
                    cfg: ConsolidationConfig = DEFAULT_CONFIG) -> Normalized:
    text = _to_text(unwrap_value(raw))
    if not text:
        return Normalized(key="", junk=True, digits=0, digit_key=False, text=text or "")

    folded = _fold(text)
    stripped = _strip_punct(folded)
    stops = _stop_set(cfg)
    digit_str = _NON_DIGIT_RE.sub("", folded)
    n_digits = len(digit_str)

    if not stripped or folded in stops or stripped in stops:
        return Normalized(key=stripped, junk=True, digits=n_digits, digit_key=False, text=text)

    if n_digits >= cfg.min_id_digits:
        return Normalized(key=digit_str, junk=False, digits=n_digits, digit_key=True, text=text)

    # Partial or garbled identifiers
    junk = is_id_key(step_key, cfg)
    return Normalized(key=stripped, junk=junk, digits=n_digits, digit_key=False, text=text)


def parse_bool(raw: Any) -> Optional[bool]:
    """
    Parse a yes/no vote.

    Returns None for anything outside the lexicon ("unsure", free text,
    missing values) so that callers can exclude the vote instead of
    counting it as a negative. Numbers other than 1 and 0 are not votes.
    """
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        # Only 1/0; other numbers are scores, not votes
        if raw == 1:
            return True
        if raw == 0:
            return False
        return None
    if isinstance(raw, str):
        word = raw.strip().casefold()
        if word in TRUE_WORDS:
            return True
        if word in FALSE_WORDS:
            return False
        return None
    if isinstance(raw, dict):
        for key in BOOL_WRAPPER_KEYS:
            if key in raw:
                parsed = parse_bool(raw[key])
                if parsed is not None:
                    return parsed
    return None


def slugify(text: str) -> str:
    """Lowercase ASCII slug; runs of other characters collapse to one underscore."""
    text = unicodedata.normalize("NFKD", str(text).replace("ß", "ss"))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    out = []
    last_us = False
    for ch in text.lower():
        if ch.isascii() and ch.isalnum():
            out.append(ch)
            last_us = False
        elif not last_us:
            out.append("_")
            last_us = True
    return "".join(out).strip("_")


def derive_final_key(decision_key: Optional[str] = None, json_key: Optional[str] = None,
                     prompt_text: Optional[str] = None, prompt_id: Any = None) -> Optional[str]:
    """Pick the field slug a step's output is stored under."""
    for explicit in (decision_key, json_key):
        if explicit and slugify(explicit):
            return slugify(explicit)
    if prompt_text and slugify(prompt_text):
        base = slugify(prompt_text)
        return f"{base}_{prompt_id}" if prompt_id is not None else base
    if prompt_id is not None:
        return f"prompt_{prompt_id}"
    return None
