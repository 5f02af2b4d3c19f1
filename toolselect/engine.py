import asyncio
import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AppSettings
from .errors import LineTimeout, ProcessFault, RPCTimeout
from .formatting import build_line_output
from .interpreter import RunScope
from .ipc import STREAM_LIMIT, RpcChannel
from .operations import CallBudget, OperationHost, build_meta_operations
from .sandbox import LineRunner, bind_operations
from .schemas import LineOutput

logger = logging.getLogger("uvicorn.error")

PACKAGE_ROOT = Path(__file__).resolve().parent.parent
EXECUTE_GRACE_S = 5.0
SHUTDOWN_WAIT_S = 2.0


class SandboxEngine(ABC):
    """
    One engine per run. Owns the binding scope (directly or inside the child),
    and shares the call budget and finish signal through its OperationHost.
    """

    def __init__(self, host: OperationHost):
        self.host = host

    async def __aenter__(self) -> "SandboxEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def execute_line(self, code: str) -> LineOutput:
        """Run one line and return its output; ProcessFault propagates."""

    async def execute_lines(self, lines: List[str]) -> List[LineOutput]:
        outputs: List[LineOutput] = []
        for idx, line in enumerate(lines):
            if not isinstance(line, str) or not line.strip():
                continue
            if self.is_finish_called():
                skipped = len([entry for entry in lines[idx:] if isinstance(entry, str) and entry.strip()])
                logger.info("[sandbox] finish() already called; skipping %s remaining line(s)", skipped)
                break
            outputs.append(await self.execute_line(line))
        return outputs

    @property
    def budget(self) -> CallBudget:
        return self.host.budget

    def is_finish_called(self) -> bool:
        return self.host.is_finish_called()

    def get_finish_result(self) -> Optional[List[str]]:
        return self.host.get_finish_result()

    def reset_finish(self) -> None:
        self.host.reset_finish()


class InProcessEngine(SandboxEngine):
    def __init__(self, host: OperationHost, *, line_timeout_s: float = 120.0, max_loop_iterations: int = 10000):
        super().__init__(host)
        self.runner = LineRunner(
            bind_operations(self._invoke),
            line_timeout_s=line_timeout_s,
            max_loop_iterations=max_loop_iterations,
        )

    @property
    def scope(self) -> RunScope:
        return self.runner.scope

    async def _invoke(self, tool: str, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        return await self.host.invoke(tool, args, kwargs)

    async def execute_line(self, code: str) -> LineOutput:
        return await self.runner.run_line(code)


class IsolatedEngine(SandboxEngine):
    """
    Runs the interpreter in a child Python process.

    The child asks for every operation, finish included, through tool_request
    messages, so the parent has recorded the finish signal before the line's
    execute_result comes back. Any loss of the child (EOF, missed heartbeat,
    no ready message) faults the engine for the rest of the run.
    """

    def __init__(
        self,
        host: OperationHost,
        *,
        line_timeout_s: float = 120.0,
        ipc_timeout_s: float = 240.0,
        heartbeat_interval_s: float = 5.0,
        heartbeat_timeout_s: float = 15.0,
        startup_timeout_s: float = 10.0,
        max_loop_iterations: int = 10000,
        python: Optional[str] = None,
    ):
        super().__init__(host)
        self.line_timeout_s = line_timeout_s
        self.ipc_timeout_s = ipc_timeout_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.startup_timeout_s = startup_timeout_s
        self.max_loop_iterations = max_loop_iterations
        self.python = python or sys.executable
        self.process: Optional[asyncio.subprocess.Process] = None
        self.channel: Optional[RpcChannel] = None
        self._ready: Optional[asyncio.Event] = None
        self._fault: Optional[ProcessFault] = None
        self._closing = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def faulted(self) -> bool:
        return self._fault is not None

    def _child_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        paths = [str(PACKAGE_ROOT)]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(paths)
        env["PYTHONUNBUFFERED"] = "1"
        return env

    async def start(self) -> None:
        if self.process is not None:
            return
        self._ready = asyncio.Event()
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.python,
                "-m",
                "toolselect.sandbox_child",
                "--line-timeout",
                str(self.line_timeout_s),
                "--ipc-timeout",
                str(self.ipc_timeout_s),
                "--max-loop-iterations",
                str(self.max_loop_iterations),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_env(),
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            self._set_fault(ProcessFault(f"Sandbox could not be started: {exc}"))
            raise self._fault from exc
        self.channel = RpcChannel(
            self.process.stdout,
            self.process.stdin,
            name="sandbox",
            handlers={"ready": self._on_ready, "tool_request": self._on_tool_request},
            on_close=self._on_channel_close,
        )
        self.channel.start()
        self._stderr_task = asyncio.create_task(self._forward_stderr())
        try:
            await asyncio.wait_for(self._ready.wait(), self.startup_timeout_s)
        except asyncio.TimeoutError:
            self._set_fault(ProcessFault(f"Sandbox did not become ready within {self.startup_timeout_s:g}s"))
        if self._fault is not None:
            fault = self._fault
            await self.close()
            raise fault
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("[sandbox] child started pid=%s", self.process.pid)

    async def _on_ready(self, message: Dict[str, Any]) -> None:
        if self._ready is not None:
            self._ready.set()

    async def _on_tool_request(self, message: Dict[str, Any]) -> Any:
        tool = str(message.get("tool") or "")
        args = message.get("args") or []
        kwargs = message.get("kwargs") or {}
        return await self.host.invoke(tool, list(args), dict(kwargs))

    def _on_channel_close(self, fault: ProcessFault) -> None:
        if not self._closing:
            self._set_fault(fault)
        if self._ready is not None:
            self._ready.set()

    def _set_fault(self, fault: ProcessFault) -> None:
        if self._fault is not None:
            return
        self._fault = fault
        logger.error("[sandbox] engine faulted: %s", fault.message)

    def _kill(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            if self.channel is None or self.channel.closed:
                return
            try:
                await self.channel.request("ping", timeout_s=self.heartbeat_timeout_s)
            except RPCTimeout:
                fault = ProcessFault(
                    f"Sandbox missed heartbeat (no pong within {self.heartbeat_timeout_s:g}s)",
                    {"heartbeat_timeout_s": self.heartbeat_timeout_s},
                )
                self._set_fault(fault)
                self.channel.abort(fault)
                self._kill()
                return
            except ProcessFault:
                return

    async def _forward_stderr(self) -> None:
        if self.process is None or self.process.stderr is None:
            return
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("[sandbox:%s] %s", self.process.pid, text)

    def _raise_if_faulted(self) -> None:
        if self._fault is not None:
            raise self._fault
        if self.channel is None:
            raise ProcessFault("Sandbox is not started")

    async def execute_line(self, code: str) -> LineOutput:
        self._raise_if_faulted()
        try:
            result = await self.channel.request(
                "execute",
                {"code": code},
                timeout_s=self.line_timeout_s + EXECUTE_GRACE_S,
            )
        except RPCTimeout:
            self._raise_if_faulted()
            error = LineTimeout(
                f"Line execution timed out after {self.line_timeout_s:g}s",
                {"timeout_s": self.line_timeout_s},
            )
            return build_line_output(code, [], None, error)
        return LineOutput.model_validate(result)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        if self.channel is not None and not self.channel.closed:
            try:
                await self.channel.notify("shutdown")
            except ProcessFault:
                pass
        if self.process is not None and self.process.returncode is None:
            try:
                await asyncio.wait_for(self.process.wait(), SHUTDOWN_WAIT_S)
            except asyncio.TimeoutError:
                try:
                    self.process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(self.process.wait(), SHUTDOWN_WAIT_S)
                except asyncio.TimeoutError:
                    self._kill()
                    await self.process.wait()
        if self.channel is not None:
            await self.channel.close()
        pending = [task for task in (self._heartbeat_task, self._stderr_task) if task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.process is not None:
            logger.info("[sandbox] child exited code=%s", self.process.returncode)


def create_engine(settings: AppSettings, catalog: Any) -> SandboxEngine:
    host = OperationHost(
        build_meta_operations(catalog, settings.default_threshold),
        CallBudget(settings.max_meta_tool_calls),
    )
    if settings.sandbox_isolated:
        return IsolatedEngine(
            host,
            line_timeout_s=settings.line_timeout_s,
            ipc_timeout_s=settings.ipc_timeout_s,
            heartbeat_interval_s=settings.heartbeat_interval_s,
            heartbeat_timeout_s=settings.heartbeat_timeout_s,
            startup_timeout_s=settings.sandbox_startup_timeout_s,
            max_loop_iterations=settings.max_loop_iterations,
        )
    return InProcessEngine(
        host,
        line_timeout_s=settings.line_timeout_s,
        max_loop_iterations=settings.max_loop_iterations,
    )
