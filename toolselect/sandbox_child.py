"""Sandbox child: runs model code lines and forwards every operation call to the parent."""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from .errors import ProcessFault
from .ipc import RpcChannel, connect_stdio
from .operations import OPERATION_NAMES
from .sandbox import LineRunner, bind_operations

logger = logging.getLogger("uvicorn.error")


class SandboxChild:
    def __init__(self, *, line_timeout_s: float, ipc_timeout_s: float, max_loop_iterations: int):
        self.ipc_timeout_s = ipc_timeout_s
        self.channel: Optional[RpcChannel] = None
        self.runner = LineRunner(
            bind_operations(self._call_parent, OPERATION_NAMES),
            line_timeout_s=line_timeout_s,
            max_loop_iterations=max_loop_iterations,
        )
        self._stop = asyncio.Event()
        self._execute_lock = asyncio.Lock()

    async def _call_parent(self, tool: str, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        if self.channel is None:
            raise ProcessFault("sandbox channel is not connected")
        return await self.channel.request(
            "tool_request",
            {"tool": tool, "args": args, "kwargs": kwargs},
            timeout_s=self.ipc_timeout_s,
        )

    async def _on_execute(self, message: Dict[str, Any]) -> Dict[str, Any]:
        code = str(message.get("code") or "")
        async with self._execute_lock:
            output = await self.runner.run_line(code)
        return output.model_dump()

    async def _on_ping(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _on_shutdown(self, message: Dict[str, Any]) -> None:
        logger.info("[sandbox-child] shutdown requested")
        self._stop.set()

    def _on_close(self, fault: ProcessFault) -> None:
        self._stop.set()

    async def serve(self) -> None:
        reader, writer = await connect_stdio()
        self.channel = RpcChannel(
            reader,
            writer,
            name="sandbox-child",
            handlers={"execute": self._on_execute, "ping": self._on_ping, "shutdown": self._on_shutdown},
            on_close=self._on_close,
        )
        self.channel.start()
        await self.channel.notify("ready")
        logger.info("[sandbox-child] ready")
        await self._stop.wait()
        await self.channel.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="toolselect sandbox child")
    parser.add_argument("--line-timeout", type=float, default=120.0)
    parser.add_argument("--ipc-timeout", type=float, default=240.0)
    parser.add_argument("--max-loop-iterations", type=int, default=10000)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)
    # stdout carries the protocol; logs go to stderr only.
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(levelname)s %(message)s",
    )
    child = SandboxChild(
        line_timeout_s=args.line_timeout,
        ipc_timeout_s=args.ipc_timeout,
        max_loop_iterations=args.max_loop_iterations,
    )
    try:
        asyncio.run(child.serve())
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
