"""Tests for sequential and parallel stage execution."""

import asyncio

import pytest

from packager.errors import CodeSyncError, ProcessExitError
from packager.utils.stage_runner import Stage, StageOutcome, execute_stage, run_parallel, run_sequential


async def _ok():
    return None


class TestExecuteStage:
    async def test_none_is_success(self):
        outcome = await execute_stage(Stage(name="a", run=_ok))
        assert outcome.success
        assert outcome.name == "a"

    async def test_packager_error_becomes_failed_outcome(self):
        async def fail():
            raise ProcessExitError("exit 1", exit_code=1, output="tail of log")

        outcome = await execute_stage(Stage(name="android", run=fail, advisory=False))
        assert not outcome.success
        assert outcome.message == "exit 1"
        assert outcome.output == "tail of log"
        assert isinstance(outcome.error, ProcessExitError)

    async def test_os_error_becomes_failed_outcome(self):
        async def fail():
            raise PermissionError(13, "Permission denied")

        outcome = await execute_stage(Stage(name="copy", run=fail))
        assert not outcome.success
        assert "PermissionError" in outcome.message

    async def test_unexpected_error_absorbed_by_advisory_stage(self):
        async def fail():
            raise UnicodeDecodeError("utf-8", b"\xb0", 0, 1, "invalid start byte")

        outcome = await execute_stage(Stage(name="version", run=fail))
        assert not outcome.success
        assert "UnicodeDecodeError" in outcome.message
        assert outcome.error.stage == "version"

    async def test_unexpected_error_propagates_from_required_stage(self):
        async def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await execute_stage(Stage(name="android", run=fail, advisory=False))

    async def test_returned_outcome_passed_through(self):
        async def run():
            return StageOutcome(name="x", success=True, output="summary")

        assert (await execute_stage(Stage(name="x", run=run))).output == "summary"

    def test_display_name(self):
        assert Stage(name="git", run=_ok, label="代码拉取").display_name == "代码拉取"
        assert Stage(name="git", run=_ok).display_name == "git"


class TestRunSequential:
    async def test_failure_does_not_stop_later_stages(self):
        order = []

        async def fail():
            order.append("first")
            raise CodeSyncError("pull failed")

        async def second():
            order.append("second")

        done = []

        async def on_done(stage, outcome):
            done.append((stage.name, outcome.success))

        outcomes = await run_sequential(
            [Stage(name="one", run=fail), Stage(name="two", run=second)], on_done
        )
        assert order == ["first", "second"]
        assert done == [("one", False), ("two", True)]
        assert [o.success for o in outcomes] == [False, True]


class TestRunParallel:
    async def test_runs_concurrently_and_reports_in_completion_order(self):
        started = asyncio.Event()
        done = []

        async def slow():
            await started.wait()

        async def fast():
            started.set()

        async def on_done(stage, outcome):
            done.append(stage.name)

        outcomes = await asyncio.wait_for(
            run_parallel([Stage(name="slow", run=slow), Stage(name="fast", run=fast)], on_done),
            timeout=1,
        )
        assert done == ["fast", "slow"]
        assert [o.name for o in outcomes] == ["slow", "fast"]
