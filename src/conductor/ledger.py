from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from conductor.models import (
    Observation,
    ObservationDigest,
    ObservationSource,
    ObservationSummary,
)

logger = logging.getLogger(__name__)


def _average(durations: list[float]) -> float:
    if not durations:
        return 0.0
    return sum(durations) / len(durations)


def digest(observations: Iterable[Observation]) -> ObservationDigest:
    items = list(observations)
    succeeded = [item for item in items if item.success]
    failed = [item for item in items if not item.success]
    return ObservationDigest(
        total=len(items),
        succeeded=len(succeeded),
        failed=len(failed),
        avg_duration_ms=_average([item.duration_ms for item in items]),
        blockers=tuple(
            f"{item.source_name} failed: {item.error or 'unknown error'}" for item in failed
        ),
        progress_indicators=tuple(f"{item.source_name} succeeded" for item in succeeded),
    )


class ObservationLedger:
    """Append-only record of everything the Acting phase produced.

    Checkpoints are plain sequence numbers: ``since(n)`` returns the entries appended
    after the first ``n``.
    """

    def __init__(self, observations: Iterable[Observation] = ()) -> None:
        self._lock = threading.Lock()
        self._entries: list[Observation] = list(observations)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, observation: Observation) -> int:
        with self._lock:
            self._entries.append(observation)
            position = len(self._entries)
        if not observation.success:
            logger.debug(
                "Recorded failed observation from %s: %s",
                observation.source_name,
                observation.error,
            )
        return position

    def checkpoint(self) -> int:
        return len(self)

    def since(self, checkpoint: int) -> list[Observation]:
        with self._lock:
            return list(self._entries[max(0, checkpoint):])

    def all(self) -> list[Observation]:
        return self.since(0)

    def recent(self, count: int) -> list[Observation]:
        if count <= 0:
            return []
        with self._lock:
            return list(self._entries[-count:])

    def failures(self) -> list[Observation]:
        with self._lock:
            return [item for item in self._entries if not item.success]

    def by_source(self, source: ObservationSource) -> list[Observation]:
        with self._lock:
            return [item for item in self._entries if item.source == source]

    def summary(self) -> ObservationSummary:
        with self._lock:
            entries = list(self._entries)
        durations = [item.duration_ms for item in entries]
        succeeded = sum(1 for item in entries if item.success)
        return ObservationSummary(
            total=len(entries),
            succeeded=succeeded,
            failed=len(entries) - succeeded,
            avg_duration_ms=_average(durations),
            total_duration_ms=sum(durations),
            tool_executions=sum(
                1 for item in entries if item.source == ObservationSource.TOOL_EXECUTION
            ),
            subagent_results=sum(
                1 for item in entries if item.source == ObservationSource.SUBAGENT_RESULT
            ),
        )
