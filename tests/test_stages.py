from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from chorebot.config import ChoreBotConfig, EngineSettings
from chorebot.issues import IssueErrorKind, IssueStoreError
from chorebot.stages import STAGES, StageContext, StagePolicy, WorkflowParams, get_stage, process_units
from chorebot.stages.base import LeaseConflict, ModuleLeases, UnitPlan
from chorebot.config import ConfigError
from chorebot.schema import StagePolicyKind

from conftest import build_harness


def _context(tmp_path: Path, *, max_units: Optional[int] = None, concurrency: int = 4) -> StageContext:
    config = ChoreBotConfig(engine=EngineSettings(concurrency=concurrency))
    services = build_harness(tmp_path, config=config).engine.services
    return StageContext(params=WorkflowParams(repo_path=tmp_path, max_units=max_units), services=services)


def _plan(work) -> UnitPlan[Tuple[str, int]]:
    return UnitPlan(name=lambda unit: f"{unit[0]}#{unit[1]}", key=lambda unit: unit[0], work=work)


def test_process_units_bounds_attempts(tmp_path: Path) -> None:
    ctx = _context(tmp_path, max_units=5)
    units = [(f"m{index}", index) for index in range(12)]
    done: List[int] = []

    def work(unit: Tuple[str, int]) -> Tuple[str, Optional[str]]:
        done.append(unit[1])
        return "ok", None

    outcome = process_units(ctx, units, _plan(work), parallel=True)

    assert sorted(done) == [0, 1, 2, 3, 4]
    assert outcome.counts.eligible == 12
    assert outcome.counts.attempted == 5
    assert "bounded to 5" in outcome.detail


def test_process_units_contains_unit_failures(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    units = [("a", 1), ("b", 2), ("c", 3)]

    def work(unit: Tuple[str, int]) -> Tuple[str, Optional[str]]:
        if unit[1] == 2:
            raise IssueStoreError(IssueErrorKind.INVALID, "rejected")
        return "ok", f"#{unit[1]}"

    outcome = process_units(ctx, units, _plan(work), parallel=True)

    by_name = {result.unit: result for result in outcome.units}
    assert outcome.success
    assert outcome.counts.succeeded == 2
    assert outcome.counts.failed == 1
    assert by_name["b#2"].success is False
    assert by_name["b#2"].detail == "rejected"
    assert by_name["c#3"].reference == "#3"


def test_process_units_fails_when_every_unit_fails(tmp_path: Path) -> None:
    ctx = _context(tmp_path)

    def work(unit: Tuple[str, int]) -> Tuple[str, Optional[str]]:
        raise ValueError("nope")

    outcome = process_units(ctx, [("a", 1), ("b", 2)], _plan(work))

    assert not outcome.success
    assert outcome.counts.failed == 2


def test_process_units_with_nothing_to_do_succeeds(tmp_path: Path) -> None:
    outcome = process_units(_context(tmp_path), [], _plan(lambda unit: ("ok", None)))

    assert outcome.success
    assert outcome.counts.attempted == 0


def test_units_sharing_a_module_never_overlap(tmp_path: Path) -> None:
    ctx = _context(tmp_path, concurrency=4)
    units = [("a", 1), ("b", 2), ("a", 3), ("c", 4), ("a", 5), ("b", 6)]
    lock = threading.Lock()
    active: Dict[str, int] = {}
    overlaps: List[str] = []
    threads: set[str] = set()

    def work(unit: Tuple[str, int]) -> Tuple[str, Optional[str]]:
        key = unit[0]
        with lock:
            active[key] = active.get(key, 0) + 1
            if active[key] > 1:
                overlaps.append(key)
            threads.add(threading.current_thread().name)
        time.sleep(0.02)
        with lock:
            active[key] -= 1
        return "ok", None

    outcome = process_units(ctx, units, _plan(work), parallel=True)

    assert outcome.counts.succeeded == 6
    assert overlaps == []
    assert len(threads) > 1


def test_cancelled_context_stops_scheduling_units(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    seen: List[int] = []

    def work(unit: Tuple[str, int]) -> Tuple[str, Optional[str]]:
        seen.append(unit[1])
        ctx.cancel_event.set()
        return "ok", None

    outcome = process_units(ctx, [("a", 1), ("a", 2), ("a", 3)], _plan(work))

    assert seen == [1]
    assert outcome.counts.attempted == 1


def test_module_leases_reject_a_second_claim() -> None:
    leases = ModuleLeases()

    with leases.hold("parser"):
        assert leases.held == frozenset({"parser"})
        with pytest.raises(LeaseConflict):
            with leases.hold("parser"):
                pass

    assert leases.held == frozenset()
    assert leases.claim("parser")


def test_stage_policies() -> None:
    assert StagePolicy.fatal().max_attempts == 1
    assert StagePolicy.skip().kind is StagePolicyKind.SKIP
    assert StagePolicy.retry(2).max_attempts == 3
    assert StagePolicy.retry(2).describe() == "retry(2)"
    with pytest.raises(ValueError):
        StagePolicy.retry(0)


def test_registry_lookup() -> None:
    assert get_stage("batch-by-module") is STAGES["batch-by-module"]
    assert get_stage("fetch-testing-issues").policy.kind is StagePolicyKind.FATAL
    assert get_stage("dispatch-test-batches").policy.kind is StagePolicyKind.SKIP
    with pytest.raises(ConfigError):
        get_stage("make-coffee")
