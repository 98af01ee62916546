"""
Loading run details from the history service.

Sources are tried in order until one yields a payload that consolidates:
1. Consolidated results endpoint: GET {base}/analyses/{id}/results
2. Aggregated detail endpoint:    GET {base}/analyses/{id}/detail
3. Piecewise assembly: the run header, its steps, and each step's attempts
4. The last-seen copy in the local cache directory
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Optional

import httpx

from .config import ConsolidationConfig, DEFAULT_CONFIG, HistoryConfig, load_history_config
from .io import read_cached_detail, write_cached_detail
from .models import RunDetail
from .runner import build_run_detail

logger = logging.getLogger(__name__)


class RunSourceError(RuntimeError):
    pass


async def _get_json(client: httpx.AsyncClient, url: str) -> Any:
    resp = await client.get(url)
    resp.raise_for_status()
    return resp.json()


async def fetch_results(client: httpx.AsyncClient, base: str, run_id) -> Any:
    return await _get_json(client, f"{base}/analyses/{run_id}/results")


async def fetch_detail(client: httpx.AsyncClient, base: str, run_id) -> Any:
    return await _get_json(client, f"{base}/analyses/{run_id}/detail")


async def fetch_pieces(client: httpx.AsyncClient, base: str, run_id) -> Any:
    run = await _get_json(client, f"{base}/analyses/{run_id}")
    steps = await _get_json(client, f"{base}/analyses/{run_id}/steps")
    if not isinstance(steps, list):
        raise ValueError("steps endpoint did not return a list")

    async def with_attempts(step: dict) -> dict:
        attempts = await _get_json(client, f"{base}/analyses/{run_id}/steps/{step['id']}/attempts")
        return {**step, "attempts": attempts if isinstance(attempts, list) else []}

    steps = await asyncio.gather(*(with_attempts(s) for s in steps if isinstance(s, dict) and "id" in s))
    return {"run": run, "steps": list(steps)}


SOURCES = [
    ("results", fetch_results),
    ("detail", fetch_detail),
    ("piecewise", fetch_pieces),
]


async def load_run_detail(
    run_id,
    config: Optional[HistoryConfig] = None,
    client: Optional[httpx.AsyncClient] = None,
    consolidation: ConsolidationConfig = DEFAULT_CONFIG,
) -> RunDetail:
    """
    Load and consolidate one run.

    Each successful load refreshes the cache when `config.cache_dir` is
    set. Raises RunSourceError when no source yields a usable payload.
    """
    config = config or load_history_config()
    base = config.base_url.rstrip("/")
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=config.timeout_s)

    try:
        for name, fetch in SOURCES:
            try:
                payload = await fetch(client, base, run_id)
                detail = build_run_detail(payload, consolidation)
            except httpx.TimeoutException:
                logger.warning("Run %s: %s source timed out after %ss", run_id, name, config.timeout_s)
            except httpx.HTTPStatusError as e:
                logger.warning("Run %s: %s source returned HTTP %d", run_id, name, e.response.status_code)
            except httpx.RequestError as e:
                logger.warning("Run %s: %s source unreachable: %s", run_id, name, e)
            except ValueError as e:
                logger.warning("Run %s: %s source payload unusable: %s", run_id, name, e)
            else:
                logger.info("Run %s loaded from %s source", run_id, name)
                if config.cache_dir:
                    write_cached_detail(config.cache_dir, run_id, detail)
                return detail
    finally:
        if own_client:
            await client.aclose()

    cached = read_cached_detail(config.cache_dir, run_id)
    if cached is not None:
        try:
            detail = build_run_detail(cached, consolidation)
        except ValueError as e:
            logger.warning("Run %s: cached copy unusable: %s", run_id, e)
        else:
            logger.warning("Run %s: serving last-seen cached copy", run_id)
            return detail

    raise RunSourceError(f"No source yielded a parseable payload for run {run_id}")
