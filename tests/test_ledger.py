import threading

import pytest

from conductor.ledger import ObservationLedger, digest
from conductor.models import Observation, ObservationSource


def _tool(name: str, *, success: bool = True, duration_ms: float = 10.0) -> Observation:
    return Observation.tool_execution(
        name,
        input={"path": "src"},
        output="ok" if success else None,
        success=success,
        error=None if success else f"{name} exploded",
        duration_ms=duration_ms,
    )


def test_since_returns_only_the_delta() -> None:
    ledger = ObservationLedger()
    ledger.record(_tool("grep"))
    checkpoint = ledger.checkpoint()
    ledger.record(_tool("read_file"))
    ledger.record(_tool("edit_file", success=False))

    delta = ledger.since(checkpoint)

    assert [item.source_name for item in delta] == ["read_file", "edit_file"]
    assert ledger.since(ledger.checkpoint()) == []
    assert len(ledger.since(0)) == 3


def test_record_never_mutates_existing_entries() -> None:
    ledger = ObservationLedger()
    first = _tool("grep")
    ledger.record(first)
    snapshot = ledger.all()
    ledger.record(_tool("ls"))

    assert snapshot == [first]
    assert ledger.all()[0] is first


def test_observations_are_immutable() -> None:
    observation = _tool("grep")

    with pytest.raises(AttributeError):
        observation.success = False  # type: ignore[misc]


def test_failures_and_summary() -> None:
    ledger = ObservationLedger()
    ledger.record(_tool("grep", duration_ms=10.0))
    ledger.record(_tool("edit_file", success=False, duration_ms=30.0))
    ledger.record(
        Observation.subagent_result("explore", request="find usages", output="3 files", duration_ms=50.0)
    )

    summary = ledger.summary()

    assert [item.source_name for item in ledger.failures()] == ["edit_file"]
    assert summary.total == 3
    assert summary.succeeded == 2
    assert summary.failed == 1
    assert summary.avg_duration_ms == pytest.approx(30.0)
    assert summary.total_duration_ms == pytest.approx(90.0)
    assert summary.tool_executions == 2
    assert summary.subagent_results == 1


def test_empty_summary_and_recent() -> None:
    ledger = ObservationLedger()

    assert ledger.summary().total == 0
    assert ledger.summary().avg_duration_ms == 0.0
    assert ledger.recent(5) == []

    for name in ("a", "b", "c"):
        ledger.record(_tool(name))
    assert [item.source_name for item in ledger.recent(2)] == ["b", "c"]
    assert ledger.recent(0) == []
    assert len(ledger.by_source(ObservationSource.SUBAGENT_RESULT)) == 0
    assert len(ledger.by_source(ObservationSource.TOOL_EXECUTION)) == 3


def test_digest_lists_blockers_and_progress() -> None:
    result = digest([_tool("grep"), _tool("pytest", success=False)])

    assert result.total == 2
    assert result.success_rate == 0.5
    assert result.blockers == ("pytest failed: pytest exploded",)
    assert result.progress_indicators == ("grep succeeded",)
    assert result.has_blockers
    assert digest([]).success_rate == 1.0


def test_concurrent_records_keep_every_entry() -> None:
    ledger = ObservationLedger()

    def worker(index: int) -> None:
        for offset in range(20):
            ledger.record(_tool(f"tool-{index}-{offset}"))

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ledger) == 200
    assert ledger.summary().succeeded == 200
    names = [item.source_name for item in ledger.all()]
    for index in range(10):
        own = [name for name in names if name.startswith(f"tool-{index}-")]
        assert own == [f"tool-{index}-{offset}" for offset in range(20)]
