import asyncio
import os
import signal
import sys

import pytest

from toolselect.engine import IsolatedEngine
from toolselect.errors import ProcessFault
from toolselect.operations import CallBudget, OperationHost, build_meta_operations
from tests.fakes import FakeCatalog


class StallingCatalog(FakeCatalog):
    async def search_apps(self, query):
        await asyncio.sleep(30)
        return []


def make_isolated(limit=30, catalog=None, **kwargs):
    host = OperationHost(build_meta_operations(catalog or FakeCatalog(), 0.3), CallBudget(limit))
    kwargs.setdefault("line_timeout_s", 5.0)
    kwargs.setdefault("startup_timeout_s", 30.0)
    return IsolatedEngine(host, **kwargs)


async def wait_for_fault(engine, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not engine.faulted:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("engine never faulted")
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_lines_run_in_child_with_persistent_bindings():
    async with make_isolated() as engine:
        out = await engine.execute_line("ms = get_methods({'search_queries': ['price']})")
        assert out.error is None
        out = await engine.execute_line("print(len(ms)); [m['slug'] for m in ms]")
        assert out.logs == ["2"]
        assert out.last_value == ["coingecko-get-price", "coingecko-get-history"]
        assert engine.budget.count == 1
        pid = engine.process.pid
    assert engine.process.returncode is not None
    assert pid > 0


@pytest.mark.asyncio
async def test_finish_is_recorded_before_the_line_result_returns():
    async with make_isolated() as engine:
        out = await engine.execute_line("finish(['coingecko-get-price'])")
        assert out.error is None
        assert engine.is_finish_called()
        assert engine.get_finish_result() == ["coingecko-get-price"]
        out = await engine.execute_line("finish([])")
        assert out.error_type == "LineExecutionError"


@pytest.mark.asyncio
async def test_budget_errors_cross_the_channel_with_their_type():
    async with make_isolated(limit=3) as engine:
        out = await engine.execute_line("for i in range(5): get_apps('coin')")
        assert out.error_type == "CallBudgetExceeded"
        assert engine.budget.count == 4
        out = await engine.execute_line("1 / 0")
        assert out.error_type == "ZeroDivisionError"
        out = await engine.execute_line("'alive'")
        assert out.last_value == "alive"


@pytest.mark.asyncio
async def test_killed_child_faults_the_engine():
    engine = make_isolated()
    await engine.start()
    try:
        engine.process.kill()
        await wait_for_fault(engine)
        with pytest.raises(ProcessFault):
            await engine.execute_line("1 + 1")
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_missing_interpreter_is_a_process_fault():
    engine = make_isolated(python=os.path.join(os.sep, "nonexistent", "python3"))
    with pytest.raises(ProcessFault):
        await engine.start()
    assert engine.faulted


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="needs SIGSTOP")
async def test_hung_child_misses_heartbeat():
    engine = make_isolated(heartbeat_interval_s=0.1, heartbeat_timeout_s=0.3)
    await engine.start()
    try:
        os.kill(engine.process.pid, signal.SIGSTOP)
        await wait_for_fault(engine)
        with pytest.raises(ProcessFault) as exc_info:
            await engine.execute_line("1 + 1")
        assert "heartbeat" in exc_info.value.message
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_stalled_tool_request_times_out_inside_the_child():
    async with make_isolated(catalog=StallingCatalog(), ipc_timeout_s=0.3) as engine:
        out = await engine.execute_line("apps = get_apps('coin')")
        assert out.error_type == "RPCTimeout"
        assert "tool_request" in out.error
        assert not engine.faulted
        out = await engine.execute_line("'still here'")
        assert out.last_value == "still here"
