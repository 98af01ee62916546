import csv
import json
from pathlib import Path
from typing import Any, Iterable, Optional

from .normalize import slugify


def _ensure_dir(out_dir: str) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p


def _dump(data) -> Any:
    return data.model_dump(mode="json") if hasattr(data, "model_dump") else data


def read_json(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def read_run_payload(path: str) -> Any:
    """Read a run detail (.json) or a run log (.json list or .jsonl, one entry per line)."""
    if Path(path).suffix.lower() == ".jsonl":
        entries = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(json.loads(line))
        return entries
    return read_json(path)


def write_run_detail(out_dir: str, detail) -> Path:
    p = _ensure_dir(out_dir)
    target = p / "run_detail.json"
    with open(target, "w", encoding="utf-8") as f:
        json.dump(_dump(detail), f, indent=2, ensure_ascii=False)
    return target


def _write_json_csv(p: Path, name: str, data: Any, rows: list[dict]) -> None:
    with open(p / f"{name}.json", "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    if rows:
        with open(p / f"{name}.csv", "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=rows[0].keys())
            writer.writeheader()
            writer.writerows(rows)


def _stats_rows(stats_dict: dict) -> list[dict]:
    rows = []
    if "overall" in stats_dict:
        rows.append({"bucket": "overall", **stats_dict["overall"]})
    for step_type, data in stats_dict.get("per_step_type", {}).items():
        rows.append({"bucket": f"type:{step_type}", **data})
    for key, data in stats_dict.get("per_step", {}).items():
        rows.append({"bucket": key, **data})
    return rows


def write_stats(out_dir: str, stats_dict: dict) -> None:
    _write_json_csv(_ensure_dir(out_dir), "stats", stats_dict, _stats_rows(stats_dict))


def _layout_csv_row(row: dict) -> dict:
    step = row.get("step") or {}
    out = {
        "row_label": row.get("row_label", ""),
        "depth": row.get("depth", 0),
        "step_id": step.get("id", ""),
        "type": step.get("type", ""),
        "route": step.get("route") or "",
    }
    if "row_idx" in row:
        out["row_idx"] = row["row_idx"]
        out["warnings"] = ";".join(row.get("warnings") or [])
    else:
        out["branch_key"] = row.get("branch_key") or ""
        out["is_branch_header"] = row.get("is_branch_header", False)
        out["is_branch_end"] = row.get("is_branch_end", False)
    return out


def write_layout(out_dir: str, rows: Iterable, name: str = "layout") -> None:
    data = [_dump(r) for r in rows]
    _write_json_csv(_ensure_dir(out_dir), name, data, [_layout_csv_row(r) for r in data])


def _cache_path(cache_dir: str, run_id) -> Path:
    return Path(cache_dir) / f"run_{slugify(str(run_id)) or 'unknown'}.json"


def read_cached_detail(cache_dir: Optional[str], run_id) -> Optional[Any]:
    if not cache_dir:
        return None
    path = _cache_path(cache_dir, run_id)
    if not path.exists():
        return None
    try:
        return read_json(str(path))
    except json.JSONDecodeError:
        return None


def write_cached_detail(cache_dir: str, run_id, detail) -> Path:
    p = _ensure_dir(cache_dir)
    path = _cache_path(str(p), run_id)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(_dump(detail), f, ensure_ascii=False)
    tmp.replace(path)
    return path
