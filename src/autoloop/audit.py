from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# USD per 1k tokens.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-5-codex": (0.00125, 0.01),
    "claude-sonnet-4-5": (0.003, 0.015),
    "claude-haiku-4-5": (0.001, 0.005),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def calculate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return 0.0
    input_per_1k, output_per_1k = pricing
    return (tokens_in / 1000) * input_per_1k + (tokens_out / 1000) * output_per_1k


def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed line %d in %s", line_number, path)
            continue
        if isinstance(payload, dict):
            entries.append(payload)
    return entries


class AuditLog:
    """Append-only JSONL record of orchestrator events."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def record(self, event: str, **fields: Any) -> dict[str, Any]:
        entry = {"timestamp": _utcnow_iso(), "event": event, **fields}
        _append_jsonl(self.path, entry)
        return entry

    def entries(self, event: str | None = None) -> list[dict[str, Any]]:
        entries = _read_jsonl(self.path)
        if event is None:
            return entries
        return [entry for entry in entries if entry.get("event") == event]

    def summary(self) -> dict[str, Any]:
        finished = self.entries("task_finished")
        total = len(finished)
        if total == 0:
            return {"total_runs": 0, "success_rate": 0.0, "avg_duration_ms": 0.0}
        passed = sum(1 for entry in finished if entry.get("status") == "completed")
        durations = [int(entry.get("duration_ms", 0)) for entry in finished]
        return {
            "total_runs": total,
            "success_rate": passed / total,
            "avg_duration_ms": sum(durations) / total,
        }


@dataclass(slots=True)
class TaskCost:
    task_id: str
    model: str
    tokens_in: int
    tokens_out: int
    cost: float
    timestamp: str


class CostTracker:
    def __init__(self, path: Path) -> None:
        self.path = path

    def track(self, task_id: str, model: str, tokens_in: int, tokens_out: int) -> TaskCost:
        entry = TaskCost(
            task_id=task_id,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=calculate_cost(model, tokens_in, tokens_out),
            timestamp=_utcnow_iso(),
        )
        _append_jsonl(
            self.path,
            {
                "task_id": entry.task_id,
                "model": entry.model,
                "tokens_in": entry.tokens_in,
                "tokens_out": entry.tokens_out,
                "cost": entry.cost,
                "timestamp": entry.timestamp,
            },
        )
        return entry

    def summary(self) -> dict[str, Any]:
        cost_by_model: dict[str, float] = {}
        total = 0.0
        entries = _read_jsonl(self.path)
        for entry in entries:
            cost = float(entry.get("cost", 0.0))
            model = str(entry.get("model", "unknown"))
            cost_by_model[model] = cost_by_model.get(model, 0.0) + cost
            total += cost
        return {
            "total_cost": total,
            "cost_by_model": cost_by_model,
            "task_count": len({entry.get("task_id") for entry in entries}),
        }
