import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .errors import LineTimeout, ProcessFault
from .formatting import build_line_output, render_value
from .interpreter import SAFE_BUILTINS, Interpreter, RunScope
from .operations import OPERATION_NAMES
from .schemas import LineOutput

logger = logging.getLogger("uvicorn.error")

Invoker = Callable[[str, List[Any], Dict[str, Any]], Awaitable[Any]]


def bind_operations(invoke: Invoker, names: Iterable[str] = OPERATION_NAMES) -> Dict[str, Callable[..., Awaitable[Any]]]:
    """Stubs that forward each call to invoke(tool, args, kwargs)."""

    def _stub(tool: str) -> Callable[..., Awaitable[Any]]:
        async def _call(*args: Any, **kwargs: Any) -> Any:
            return await invoke(tool, list(args), dict(kwargs))

        _call.__name__ = tool
        return _call

    return {name: _stub(name) for name in names}


class LineRunner:
    """
    Runs model code one line at a time against a single RunScope.

    Shared by the in-process engine and the sandbox child; the only thing that
    differs between them is where the operation stubs send their calls.
    """

    def __init__(
        self,
        operations: Dict[str, Callable[..., Any]],
        *,
        line_timeout_s: Optional[float] = 120.0,
        max_loop_iterations: int = 10000,
    ):
        self.line_timeout_s = line_timeout_s
        names: Dict[str, Any] = dict(SAFE_BUILTINS)
        names["print"] = self._print
        names.update(operations)
        self.scope = RunScope(reserved=names.keys())
        self.interpreter = Interpreter(self.scope, names, max_loop_iterations=max_loop_iterations)
        self._logs: List[str] = []

    def _print(self, *values: Any, sep: str = " ", end: str = "\n") -> None:
        self._logs.append(str(sep).join(render_value(v) for v in values))

    async def run_line(self, code: str) -> LineOutput:
        self._logs = []
        logs = self._logs
        value: Any = None
        error: Optional[BaseException] = None
        timeout = self.line_timeout_s if self.line_timeout_s and self.line_timeout_s > 0 else None
        try:
            run = self.interpreter.run(code, timeout)
            if timeout:
                value = await asyncio.wait_for(run, timeout)
            else:
                value = await run
        except asyncio.TimeoutError:
            error = LineTimeout(f"Line execution timed out after {timeout:g}s", {"timeout_s": timeout})
        except ProcessFault:
            raise
        except Exception as exc:
            error = exc
        if error is not None:
            logger.info("[sandbox] line failed: %s: %s", type(error).__name__, error)
        return build_line_output(code, logs, value, error)
