from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autoloop.errors import ConfigError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
EXECUTION_ID_PATTERN = re.compile(r"^[\w.-]+$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateManager:
    """One JSON document per workflow execution under ``state_dir``.

    Documents are wrapped in an envelope (``schema_version``, ``revision``,
    ``updated_at``, ``data``) and rewritten whole on every save. Concurrent writers
    for the same execution id would overwrite each other.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def _file(self, execution_id: str) -> Path:
        if not EXECUTION_ID_PATTERN.match(execution_id):
            raise ConfigError(f"Invalid execution id: {execution_id}")
        return self.state_dir / f"{execution_id}.json"

    @staticmethod
    def _read_envelope(path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        if "schema_version" in payload and "data" in payload:
            if int(payload.get("schema_version") or 0) > SCHEMA_VERSION:
                logger.warning("State file %s uses a newer schema; skipping", path)
                return None
            return payload
        # Bare documents predate the envelope.
        return {"schema_version": SCHEMA_VERSION, "revision": 1, "updated_at": None, "data": payload}

    def save(self, execution: dict[str, Any]) -> None:
        execution_id = str(execution["execution_id"])
        path = self._file(execution_id)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        current = self._read_envelope(path) if path.exists() else None
        envelope = {
            "schema_version": SCHEMA_VERSION,
            "revision": int((current or {}).get("revision") or 0) + 1,
            "updated_at": _utcnow_iso(),
            "data": execution,
        }
        path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")

    def load(self, execution_id: str) -> dict[str, Any] | None:
        path = self._file(execution_id)
        if not path.exists():
            return None
        envelope = self._read_envelope(path)
        if envelope is None:
            logger.warning("Corrupt state file: %s", path)
            return None
        data = envelope.get("data")
        return data if isinstance(data, dict) else None

    def list(self) -> list[dict[str, Any]]:
        """All readable executions, newest first."""
        if not self.state_dir.exists():
            return []
        executions: list[dict[str, Any]] = []
        for path in sorted(self.state_dir.glob("*.json")):
            envelope = self._read_envelope(path)
            data = envelope.get("data") if envelope else None
            if not isinstance(data, dict):
                logger.warning("Skipping corrupt state file: %s", path)
                continue
            executions.append(data)
        executions.sort(key=lambda item: str(item.get("started_at") or ""), reverse=True)
        return executions
