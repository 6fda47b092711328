from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import List

import pytest

from chorebot.tools import invocation as invocation_module
from chorebot.tools.invocation import FailureKind, ToolInvocation, ToolInvocationError, ToolOutcome, ToolRunner


def _python(code: str, *, timeout: float = 10.0, cwd: Path | None = None) -> ToolInvocation:
    return ToolInvocation(tool_name=sys.executable, args=("-c", code), working_dir=cwd, timeout=timeout)


def test_successful_invocation_captures_output(tmp_path: Path) -> None:
    runner = ToolRunner()

    outcome = runner.invoke(_python("import os; print(os.getcwd())", cwd=tmp_path))

    assert outcome.ok
    assert outcome.exit_status == 0
    assert Path(outcome.stdout.strip()).resolve() == tmp_path.resolve()
    assert outcome.short_reason() == "ok"


def test_non_zero_exit_is_reported() -> None:
    runner = ToolRunner()

    outcome = runner.invoke(_python("import sys; sys.stderr.write('boom\\n'); sys.exit(3)"))

    assert outcome.failure is FailureKind.NON_ZERO_EXIT
    assert outcome.exit_status == 3
    assert outcome.short_reason() == "exit status 3: boom"
    with pytest.raises(ToolInvocationError) as excinfo:
        outcome.raise_for_failure()
    assert excinfo.value.kind is FailureKind.NON_ZERO_EXIT


def test_deadline_terminates_the_process() -> None:
    runner = ToolRunner()
    started = time.monotonic()

    outcome = runner.invoke(_python("import time; time.sleep(30)", timeout=0.5))

    assert outcome.failure is FailureKind.TIMEOUT
    assert time.monotonic() - started < 15
    assert "timed out" in outcome.short_reason()


def test_missing_executable_is_not_found() -> None:
    outcome = ToolRunner().run("definitely-not-a-chorebot-tool", "--help")

    assert outcome.failure is FailureKind.NOT_FOUND
    assert outcome.exit_status is None


def test_env_overrides_reach_the_process() -> None:
    invocation = ToolInvocation(
        tool_name=sys.executable,
        args=("-c", "import os; print(os.environ['CHOREBOT_MARKER'])"),
        env={"CHOREBOT_MARKER": "present"},
    )

    outcome = ToolRunner().invoke(invocation)

    assert outcome.stdout.strip() == "present"


def test_cancelled_runner_refuses_new_work() -> None:
    runner = ToolRunner()
    runner.cancel()

    outcome = runner.invoke(_python("print('never')"))

    assert runner.cancelled
    assert outcome.failure is FailureKind.CANCELLED


def test_cancel_terminates_in_flight_process() -> None:
    runner = ToolRunner()
    results: List[ToolOutcome] = []
    worker = threading.Thread(
        target=lambda: results.append(runner.invoke(_python("import time; time.sleep(30)", timeout=60))),
    )
    worker.start()

    deadline = time.monotonic() + 10
    while not runner._active and time.monotonic() < deadline:
        time.sleep(0.02)
    runner.cancel()
    worker.join(timeout=20)

    assert not worker.is_alive()
    assert results[0].failure is FailureKind.CANCELLED


def test_cancel_racing_the_spawn_still_stops_the_process(monkeypatch: pytest.MonkeyPatch) -> None:
    runner = ToolRunner()
    real_popen = subprocess.Popen
    spawned: List[subprocess.Popen] = []

    def popen_then_cancel(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        spawned.append(process)
        runner.cancel()
        return process

    monkeypatch.setattr(invocation_module.subprocess, "Popen", popen_then_cancel)
    started = time.monotonic()

    outcome = runner.invoke(_python("import time; time.sleep(30)", timeout=60))

    assert outcome.failure is FailureKind.CANCELLED
    assert time.monotonic() - started < 15
    assert spawned[0].poll() is not None
    assert not runner._active


def test_concurrent_invocations_keep_their_own_outcomes() -> None:
    runner = ToolRunner()
    results: dict[int, ToolOutcome] = {}

    def work(index: int) -> None:
        results[index] = runner.invoke(_python(f"print({index})"))

    threads = [threading.Thread(target=work, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=20)

    assert {index: outcome.stdout.strip() for index, outcome in results.items()} == {
        index: str(index) for index in range(4)
    }
