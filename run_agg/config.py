from __future__ import annotations
import os
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

PLACEHOLDER = "—"
ROOT_ROUTE = "ROOT"
QUALITY_CEILING = 2.3

DEFAULT_STOP_WORDS = [
    "",
    "-",
    "--",
    "—",
    "–",
    "n/a",
    "na",
    "none",
    "null",
    "undefined",
    "unknown",
    "unbekannt",
    "nicht angegeben",
    "keine angabe",
    "schadennummer",
    "kundennummer",
    "max mustermann",
]

# Fields that hold identifiers; matched against whole slug tokens or token runs
DEFAULT_ID_KEYS = [
    "schadennummer",
    "schadennr",
    "kundennummer",
    "kundennr",
    "versicherungsnummer",
    "vertragsnummer",
    "policennummer",
    "aktenzeichen",
    "iban",
    "claim_number",
    "customer_number",
    "policy_number",
    "contract_number",
]

# Tokens that make any field an identifier on their own ("kunden_nr", "customer_id")
DEFAULT_ID_TOKENS = ["id", "nr"]

DEFAULT_FIELD_KEYWORDS = {
    "schadennummer": ["schaden", "schadennr", "schaden-nr", "claim"],
    "kundennummer": ["kunde", "kunden", "kundennr", "customer"],
    "versicherungsnummer": ["versicherung", "police", "policy"],
    "name": ["name", "herr", "frau", "versicherungsnehmer"],
}


def _load_setting(env_var: str, default: Optional[str] = None) -> Optional[str]:
    """Read a setting from the environment, stripping whitespace."""
    value = os.environ.get(env_var)
    if value is not None and value.strip():
        return value.strip()
    return default


class ConsolidationConfig(BaseModel):
    stop_words: List[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    id_keys: List[str] = Field(default_factory=lambda: list(DEFAULT_ID_KEYS))
    id_tokens: List[str] = Field(default_factory=lambda: list(DEFAULT_ID_TOKENS))
    field_keywords: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FIELD_KEYWORDS.items()}
    )
    min_id_digits: int = Field(default=6, ge=1)
    long_id_digits: int = Field(default=8, ge=1)
    confidence_precision: int = Field(default=4, ge=0, le=12)
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)  # Display threshold only
    placeholder: str = PLACEHOLDER
    root_route: str = ROOT_ROUTE


class HistoryConfig(BaseModel):
    base_url: str = "/hist"
    timeout_s: float = Field(default=10.0, gt=0)
    cache_dir: Optional[str] = None


def load_history_config(**overrides) -> HistoryConfig:
    """Build a HistoryConfig from RUN_AGG_* environment variables.

    Keyword arguments that are not None take precedence over the environment.
    """
    data = {}
    base_url = _load_setting("RUN_AGG_HISTORY_URL")
    if base_url:
        data["base_url"] = base_url
    timeout_s = _load_setting("RUN_AGG_TIMEOUT_S")
    if timeout_s:
        data["timeout_s"] = float(timeout_s)
    cache_dir = _load_setting("RUN_AGG_CACHE_DIR")
    if cache_dir:
        data["cache_dir"] = cache_dir
    data.update({k: v for k, v in overrides.items() if v is not None})
    return HistoryConfig(**data)


DEFAULT_CONFIG = ConsolidationConfig()
