from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from conductor.errors import RunNotFound
from conductor.models import Observation, Task, WorkflowState, utcnow_iso

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RunStore:
    """Keeps each run under ``<root>/runs/<run_id>/``.

    ``state.json`` holds the workflow state, ``tasks/`` one record per task and
    ``observations.jsonl`` the ledger. JSON files are wrapped in a versioned envelope
    and replaced atomically.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.runs_dir = self.root / "runs"
        self._lock = threading.Lock()

    @staticmethod
    def _validate_run_id(run_id: str) -> None:
        if not RUN_ID_PATTERN.match(run_id):
            raise ValueError(f"Invalid run id: {run_id!r}")

    def run_dir(self, run_id: str) -> Path:
        self._validate_run_id(run_id)
        return self.runs_dir / run_id

    def _write_atomic(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def _write_envelope(self, path: Path, data: Any) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        self._write_atomic(path, json.dumps(envelope, ensure_ascii=False, indent=2, default=str))

    @staticmethod
    def _read_envelope(path: Path) -> Any:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            return raw["data"]
        return raw

    def save_state(self, state: WorkflowState, extra: dict[str, Any] | None = None) -> None:
        payload = state.to_dict()
        payload.update(extra or {})
        with self._lock:
            self._write_envelope(self.run_dir(state.run_id) / "state.json", payload)

    def save_tasks(self, run_id: str, tasks: Iterable[Task]) -> None:
        tasks_dir = self.run_dir(run_id) / "tasks"
        with self._lock:
            for task in tasks:
                self._write_envelope(tasks_dir / f"{task.id}.json", task.to_record())

    def save_observations(self, run_id: str, observations: Iterable[Observation]) -> None:
        lines = [json.dumps(item.to_dict(), ensure_ascii=False, default=str) for item in observations]
        content = "\n".join(lines) + ("\n" if lines else "")
        with self._lock:
            self._write_atomic(self.run_dir(run_id) / "observations.jsonl", content)

    def load_state(self, run_id: str) -> dict[str, Any]:
        data = self._read_envelope(self.run_dir(run_id) / "state.json")
        if not isinstance(data, dict):
            raise RunNotFound(run_id)
        return data

    def load_workflow_state(self, run_id: str) -> WorkflowState:
        return WorkflowState.from_dict(self.load_state(run_id))

    def load_tasks(self, run_id: str) -> list[Task]:
        run_dir = self.run_dir(run_id)
        if not run_dir.exists():
            raise RunNotFound(run_id)
        tasks: list[Task] = []
        for path in sorted((run_dir / "tasks").glob("*.json")):
            data = self._read_envelope(path)
            if not isinstance(data, dict) or "id" not in data:
                logger.warning("Skipping unreadable task record %s", path)
                continue
            tasks.append(Task.from_record(data))
        tasks.sort(key=lambda task: (task.sequence, task.created_at))
        return tasks

    def load_observations(self, run_id: str) -> list[dict[str, Any]]:
        path = self.run_dir(run_id) / "observations.jsonl"
        if not path.exists():
            return []
        records: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return records

    def list_runs(self) -> list[str]:
        if not self.runs_dir.exists():
            return []
        return sorted(
            path.name
            for path in self.runs_dir.iterdir()
            if path.is_dir() and (path / "state.json").exists()
        )
