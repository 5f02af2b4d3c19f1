import asyncio

import httpx
import pytest

from toolselect.engine import InProcessEngine, create_engine
from toolselect.errors import ProcessFault
from toolselect.operations import CallBudget, OperationHost, build_meta_operations
from toolselect.prompts import CONTINUE_PROMPT
from toolselect.tool_selector import (
    BUDGET_REASONING,
    MAX_STEPS_REASONING,
    ToolSelector,
    dedupe_slugs,
)

from tests.fakes import FakeCatalog, FakeModelClient, make_settings, script


def make_selector(tmp_path, responses, engine_factory=None, **settings_overrides):
    llm = FakeModelClient(responses)
    catalog = FakeCatalog()
    selector = ToolSelector(
        make_settings(tmp_path, **settings_overrides),
        llm,
        catalog,
        engine_factory=engine_factory,
    )
    return selector, llm, catalog


def slugs_of(result):
    return [tool.slug for tool in result.tools]


class LateFinishEngine(InProcessEngine):
    """Records finish() on the next loop turn after a step's lines ran."""

    def __init__(self, slugs):
        super().__init__(OperationHost(build_meta_operations(FakeCatalog(), 0.3), CallBudget(30)))
        self.slugs = slugs
        self.executed = []

    async def execute_lines(self, lines):
        self.executed.append(list(lines))
        outputs = await super().execute_lines(lines)
        if len(self.executed) == 1:
            asyncio.get_running_loop().call_soon(self.host.finish, self.slugs)
        return outputs


class FaultingEngine(InProcessEngine):
    def __init__(self):
        super().__init__(OperationHost(build_meta_operations(FakeCatalog(), 0.3), CallBudget(30)))
        self.closed = False

    async def execute_lines(self, lines):
        raise ProcessFault("Sandbox missed heartbeat")

    async def close(self):
        self.closed = True


def test_dedupe_keeps_first_occurrence_order():
    assert dedupe_slugs(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


@pytest.mark.asyncio
async def test_greeting_finishes_with_no_tools_in_one_step(tmp_path):
    selector, llm, _ = make_selector(tmp_path, [script(["finish([])"], "Greeting")])
    result = await selector.select_tools("hello")

    assert result.tools == []
    assert result.reasoning == "Greeting"
    assert len(result.debug.execution_history) == 1
    assert result.debug.finish_step == 1
    assert result.debug.execution_history[0].finish_method_slugs == []
    assert len(llm.selector_calls) == 1


@pytest.mark.asyncio
async def test_merged_searches_resolve_in_first_occurrence_order(tmp_path):
    lines = [
        "prices = get_methods({'search_queries': ['price'], 'top': 5, 'threshold': 0.3})",
        "volumes = get_methods({'search_queries': ['volume'], 'top': 5, 'threshold': 0.3})",
        "finish([m['slug'] for m in prices + volumes + prices])",
    ]
    selector, _, catalog = make_selector(tmp_path, [script(lines, "Price and volume endpoints")])
    result = await selector.select_tools("bitcoin price and volume")

    assert slugs_of(result) == ["coingecko-get-price", "coingecko-get-history", "coingecko-get-volume"]
    assert result.tools[0].id == "method-coingecko-get-price"
    assert catalog.resolve_calls == [["coingecko-get-price", "coingecko-get-history", "coingecko-get-volume"]]
    trace = result.debug.execution_history[0]
    assert trace.step == 1
    assert trace.result.success is True
    assert len(trace.result.outputs) == 3


@pytest.mark.asyncio
async def test_unknown_finish_slugs_are_dropped(tmp_path):
    selector, _, _ = make_selector(tmp_path, [script(["finish(['nope', 'slack-send-message'])"], None)])
    result = await selector.select_tools("send a slack message")
    assert slugs_of(result) == ["slack-send-message"]
    assert result.reasoning == "Selected 1 tool(s)"


@pytest.mark.asyncio
async def test_runaway_step_then_finish_still_completes(tmp_path):
    responses = [
        script(["for i in range(40): get_apps('coin')"], "Scanning"),
        script(["finish(['coingecko-get-price'])"], "Found it"),
    ]
    selector, _, _ = make_selector(tmp_path, responses)
    result = await selector.select_tools("bitcoin price")

    first = result.debug.execution_history[0]
    assert first.result.success is False
    assert first.result.outputs[0].error_type == "CallBudgetExceeded"
    assert slugs_of(result) == ["coingecko-get-price"]
    assert result.debug.finish_step == 2


@pytest.mark.asyncio
async def test_two_call_limit_steps_end_the_run_early(tmp_path):
    responses = [
        script(["for i in range(40): get_apps('coin')"], "Scanning"),
        script(["get_apps('coin')"], "Again"),
        script(["finish(['coingecko-get-price'])"], "Too late"),
    ]
    selector, llm, _ = make_selector(tmp_path, responses)
    result = await selector.select_tools("bitcoin price")

    assert result.tools == []
    assert result.reasoning == BUDGET_REASONING
    assert result.debug.finish_step is None
    assert len(result.debug.execution_history) == 2
    assert len(llm.selector_calls) == 2


@pytest.mark.asyncio
async def test_step_ceiling_without_finish(tmp_path):
    responses = [
        script(["a = get_apps('coin')"], "Look at apps"),
        script(["c = get_classes('coin')"], "Look at classes"),
        script(["print(len(a), len(c))"], "Still unsure"),
    ]
    selector, llm, _ = make_selector(tmp_path, responses)
    result = await selector.select_tools("something vague")

    assert result.tools == []
    assert result.reasoning == MAX_STEPS_REASONING
    assert result.debug.finish_step is None
    assert [t.step for t in result.debug.execution_history] == [1, 2, 3]
    calls = llm.selector_calls
    assert len(calls) == 3
    assert "FINAL step" not in calls[0]["messages"][-1]["content"]
    assert "step 3 of 3" in calls[2]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_max_steps_argument_overrides_settings(tmp_path):
    selector, llm, _ = make_selector(tmp_path, [script(["x = 1"], "one")])
    result = await selector.select_tools("query", max_steps=1)
    assert result.reasoning == MAX_STEPS_REASONING
    assert len(llm.selector_calls) == 1
    assert "step 1 of 1" in llm.selector_calls[0]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_late_finish_discards_next_generated_lines(tmp_path):
    engine = LateFinishEngine(["coingecko-get-volume"])
    responses = [
        script(["v = get_methods('volume')"], "Found volume"),
        script(["should_not_run = 1"], "More exploring"),
    ]
    llm = FakeModelClient(responses, delay_seconds=0.01)
    selector = ToolSelector(make_settings(tmp_path), llm, FakeCatalog(), engine_factory=lambda: engine)
    result = await selector.select_tools("coin volume")

    assert engine.executed == [["v = get_methods('volume')"]]
    assert "should_not_run" not in engine.scope
    assert len(llm.selector_calls) == 2
    assert slugs_of(result) == ["coingecko-get-volume"]
    assert len(result.debug.execution_history) == 1
    assert len(llm.selector_calls) == len(result.debug.execution_history) + 1
    assert result.debug.finish_step == 1
    assert result.debug.execution_history[0].finish_method_slugs == ["coingecko-get-volume"]
    assert result.reasoning == "Found volume"


@pytest.mark.asyncio
async def test_same_responses_give_same_result(tmp_path):
    lines = ["ms = get_methods('price')", "finish(ms)"]
    first, _, _ = make_selector(tmp_path, [script(lines, "r")])
    second, _, _ = make_selector(tmp_path, [script(lines, "r")])
    a = await first.select_tools("price")
    b = await second.select_tools("price")
    assert slugs_of(a) == slugs_of(b)
    assert a.reasoning == b.reasoning
    assert a.debug.execution_history == b.debug.execution_history


@pytest.mark.asyncio
async def test_bindings_and_history_carry_across_steps(tmp_path):
    responses = [
        script(["prices = get_methods('price')", "print(len(prices))"], "Collected"),
        script(["finish([prices[0]['slug']])"], "Pick first"),
    ]
    selector, llm, _ = make_selector(tmp_path, responses)
    result = await selector.select_tools("bitcoin price", chat_history=[{"role": "user", "content": "hi there"}])

    assert slugs_of(result) == ["coingecko-get-price"]
    first_call, second_call = llm.selector_calls
    assert "user: hi there" in first_call["messages"][1]["content"]
    assert len(first_call["messages"]) == 2
    replay = second_call["messages"][2]
    assert replay["role"] == "assistant"
    assert "1. prices = get_methods('price')" in replay["content"]
    assert "REPL Output:\n2" in replay["content"]
    assert second_call["messages"][3]["content"] == CONTINUE_PROMPT
    assert first_call["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_generation_failures_become_empty_steps(tmp_path):
    responses = [
        "this is not json",
        httpx.ConnectError("model down"),
        script(["finish([])"], None),
    ]
    selector, _, _ = make_selector(tmp_path, responses)
    result = await selector.select_tools("hello")

    history = result.debug.execution_history
    assert history[0].lines == []
    assert "not a JSON object" in history[0].thought.reasoning
    assert history[1].thought.reasoning == "Model call failed: model down"
    assert result.tools == []
    assert result.reasoning == "No relevant tools needed for this query"
    assert result.debug.finish_step == 3


@pytest.mark.asyncio
async def test_progress_callbacks_sync_async_and_failing(tmp_path):
    seen = []

    async def async_cb(message):
        seen.append(("async", message))

    def failing_cb(message):
        raise RuntimeError("ui went away")

    selector, _, _ = make_selector(tmp_path, [script(["finish([])"], "hi")])
    await selector.select_tools("hello", on_step_change=lambda m: seen.append(("sync", m)))
    assert [m for _, m in seen] == ["Analyzing query...", "Selecting Tools 1/3", "Exploring tools..."]

    seen.clear()
    selector, _, _ = make_selector(tmp_path, [script(["finish([])"], "hi")])
    await selector.select_tools("hello", on_step_change=async_cb)
    assert seen[0] == ("async", "Analyzing query...")

    selector, _, _ = make_selector(tmp_path, [script(["finish([])"], "hi")])
    result = await selector.select_tools("hello", on_step_change=failing_cb)
    assert result.reasoning == "hi"


@pytest.mark.asyncio
async def test_process_fault_ends_the_run_and_closes_engine(tmp_path):
    engine = FaultingEngine()
    selector, _, _ = make_selector(tmp_path, [script(["x = 1"], "go")], engine_factory=lambda: engine)
    with pytest.raises(ProcessFault):
        await selector.select_tools("anything")
    assert engine.closed is True


@pytest.mark.asyncio
async def test_settle_delay_catches_finish_recorded_after_the_lines(tmp_path):
    engine = LateFinishEngine(["coingecko-get-volume"])
    responses = [
        script(["v = get_methods('volume')"], "Found volume"),
        script(["should_not_run = 1"], "More exploring"),
    ]
    selector, llm, _ = make_selector(
        tmp_path, responses, engine_factory=lambda: engine, finish_settle_delay_ms=50
    )
    result = await selector.select_tools("coin volume")

    assert len(llm.selector_calls) == 1
    assert slugs_of(result) == ["coingecko-get-volume"]
    assert result.debug.finish_step == 1
    assert result.debug.execution_history[0].finish_method_slugs == ["coingecko-get-volume"]


def isolated_selector(tmp_path, responses, **settings_overrides):
    settings = make_settings(tmp_path, sandbox_isolated=True, sandbox_startup_timeout_s=30.0, **settings_overrides)
    catalog = FakeCatalog()
    llm = FakeModelClient(responses)
    engines = []

    def factory():
        engines.append(create_engine(settings, catalog))
        return engines[-1]

    return ToolSelector(settings, llm, catalog, engine_factory=factory), llm, engines


@pytest.mark.asyncio
async def test_isolated_run_stops_at_finish_and_releases_the_child(tmp_path):
    lines = ["ms = get_methods('volume') + get_methods('price')", "finish(ms)", "after = 1"]
    selector, _, engines = isolated_selector(tmp_path, [script(lines, "Volume and price")])
    result = await selector.select_tools("coin volume and price")

    assert slugs_of(result) == ["coingecko-get-volume", "coingecko-get-price", "coingecko-get-history"]
    assert result.debug.finish_step == 1
    outputs = result.debug.execution_history[0].result.outputs
    assert [o.code for o in outputs] == lines[:2]
    assert engines[0].process.returncode is not None


@pytest.mark.asyncio
async def test_isolated_run_releases_the_child_at_the_step_ceiling(tmp_path):
    selector, llm, engines = isolated_selector(tmp_path, [script(["x = 1"], "one")])
    result = await selector.select_tools("query", max_steps=1)

    assert result.reasoning == MAX_STEPS_REASONING
    assert len(llm.selector_calls) == 1
    assert engines[0].process.returncode is not None
