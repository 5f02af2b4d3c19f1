"""
Iterative tool selection.

Each step asks the model for a few lines of code, runs them in the run's
sandbox engine and feeds the output back on the next step. The run ends when
the code calls finish(), when the step ceiling is reached, or early after
repeated call-limit errors. Termination is checked twice per step: once right
after generation (in which case the freshly generated lines are dropped
unexecuted) and once after execution plus a short settle delay.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from .config import AppSettings
from .engine import SandboxEngine, create_engine
from .schemas import (
    DebugTrace,
    ExecutionHistoryItem,
    LineOutput,
    MethodRecord,
    StepResult,
    StepTrace,
    ToolSelectorResult,
)
from .script_generator import ScriptGenerator

logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[str], Union[Awaitable[None], None]]

MAX_STEPS_REASONING = "Max steps reached without finding tools"
BUDGET_REASONING = "Stopped after repeated operation call-limit errors without a final selection"
BUDGET_STRIKE_LIMIT = 2


def dedupe_slugs(slugs: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for slug in slugs:
        if slug in seen:
            continue
        seen.add(slug)
        ordered.append(slug)
    return ordered


class ToolSelector:
    def __init__(
        self,
        settings: AppSettings,
        llm_client: Any,
        catalog: Any,
        *,
        generator: Optional[ScriptGenerator] = None,
        engine_factory: Optional[Callable[[], SandboxEngine]] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.generator = generator or ScriptGenerator(
            llm_client,
            catalog,
            model=settings.model_selector,
            timeout_s=settings.generation_timeout_s,
            max_calls=settings.max_meta_tool_calls,
        )
        self.engine_factory = engine_factory or (lambda: create_engine(settings, catalog))

    async def _notify(self, on_step_change: Optional[ProgressCallback], message: str) -> None:
        if on_step_change is None:
            return
        try:
            result = on_step_change(message)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("[tool-selector] progress callback failed: %s", exc)

    async def select_tools(
        self,
        query: str,
        chat_history: Optional[Sequence[Any]] = None,
        max_steps: Optional[int] = None,
        on_step_change: Optional[ProgressCallback] = None,
    ) -> ToolSelectorResult:
        max_steps = max(1, int(max_steps or self.settings.max_steps))
        preview = query[:60] + ("..." if len(query) > 60 else "")
        logger.info('[tool-selector] starting selection for "%s" (max %s steps)', preview, max_steps)

        await self._notify(on_step_change, "Analyzing query...")
        system_prompt, user_prompt = await self.generator.prepare_initial_context(query, chat_history, max_steps)

        history: List[ExecutionHistoryItem] = []
        budget_strikes = 0
        settle_s = max(0, self.settings.finish_settle_delay_ms) / 1000.0

        async with self.engine_factory() as engine:
            step = 0
            while step < max_steps:
                step += 1
                await self._notify(on_step_change, f"Selecting Tools {step}/{max_steps}")
                script = await self.generator.generate_next_script(
                    system_prompt, user_prompt, history, step, max_steps
                )

                if engine.is_finish_called():
                    logger.info(
                        "[tool-selector] step %s/%s: finish() already recorded; discarding %s new line(s)",
                        step,
                        max_steps,
                        len(script.lines),
                    )
                    if history and history[-1].finish_method_slugs is None:
                        history[-1].finish_method_slugs = engine.get_finish_result()
                    return await self._conclude(system_prompt, user_prompt, history, engine.get_finish_result() or [])

                if script.lines:
                    await self._notify(on_step_change, "Exploring tools...")
                logger.info("[tool-selector] step %s/%s: executing %s line(s)", step, max_steps, len(script.lines))
                for idx, line in enumerate(script.lines):
                    logger.debug("[tool-selector]   %s: %s", idx + 1, line)

                outputs = await engine.execute_lines(script.lines)
                self._log_errors(step, max_steps, outputs)
                item = ExecutionHistoryItem(
                    lines=script.lines,
                    thought=script.thought,
                    result=StepResult(success=not any(o.error for o in outputs), outputs=outputs),
                )

                if settle_s:
                    await asyncio.sleep(settle_s)

                if engine.is_finish_called():
                    item.finish_method_slugs = engine.get_finish_result()
                    history.append(item)
                    return await self._conclude(system_prompt, user_prompt, history, item.finish_method_slugs or [])

                history.append(item)
                if any(o.error_type == "CallBudgetExceeded" for o in outputs):
                    budget_strikes += 1
                    if budget_strikes >= BUDGET_STRIKE_LIMIT:
                        logger.warning("[tool-selector] ending early after %s call-limit steps", budget_strikes)
                        return self._empty_result(system_prompt, user_prompt, history, BUDGET_REASONING)

        logger.info("[tool-selector] %s", MAX_STEPS_REASONING)
        return self._empty_result(system_prompt, user_prompt, history, MAX_STEPS_REASONING)

    def _log_errors(self, step: int, max_steps: int, outputs: List[LineOutput]) -> None:
        errors = [o for o in outputs if o.error]
        if not errors:
            logger.info("[tool-selector] step %s/%s: execution complete", step, max_steps)
            return
        logger.warning("[tool-selector] step %s/%s: %s error(s) during execution", step, max_steps, len(errors))
        for output in errors:
            logger.warning("[tool-selector]   %s: %s (in: %s)", output.error_type, output.error, output.code[:120])

    async def _resolve(self, slugs: Sequence[str]) -> List[MethodRecord]:
        unique = dedupe_slugs(slugs)
        if not unique:
            return []
        records = await self.catalog.resolve_methods(unique)
        by_slug = {record.slug: record for record in records}
        missing = [slug for slug in unique if slug not in by_slug]
        if missing:
            logger.warning("[tool-selector] dropping unknown method slugs: %s", ", ".join(missing))
        return [by_slug[slug] for slug in unique if slug in by_slug]

    def _debug(self, system_prompt: str, user_prompt: str, history: List[ExecutionHistoryItem], finish_step: Optional[int]) -> DebugTrace:
        return DebugTrace(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            execution_history=[StepTrace(step=idx + 1, **item.model_dump()) for idx, item in enumerate(history)],
            finish_step=finish_step,
        )

    async def _conclude(
        self,
        system_prompt: str,
        user_prompt: str,
        history: List[ExecutionHistoryItem],
        slugs: List[str],
    ) -> ToolSelectorResult:
        tools = await self._resolve(slugs)
        finishing = history[-1] if history else None
        reasoning = finishing.thought.reasoning if finishing else None
        if not reasoning:
            reasoning = f"Selected {len(tools)} tool(s)" if tools else "No relevant tools needed for this query"
        logger.info(
            "[tool-selector] finish() called with %s slug(s); resolved %s tool(s) in %s step(s)",
            len(slugs),
            len(tools),
            len(history),
        )
        return ToolSelectorResult(
            tools=tools,
            reasoning=reasoning,
            debug=self._debug(system_prompt, user_prompt, history, len(history) or None),
        )

    def _empty_result(
        self,
        system_prompt: str,
        user_prompt: str,
        history: List[ExecutionHistoryItem],
        reasoning: str,
    ) -> ToolSelectorResult:
        return ToolSelectorResult(
            tools=[],
            reasoning=reasoning,
            debug=self._debug(system_prompt, user_prompt, history, None),
        )
