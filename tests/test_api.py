import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from toolselect.engine import InProcessEngine
from toolselect.errors import ProcessFault
from toolselect.operations import CallBudget, OperationHost
from tests.fakes import FakeModelClient, script


class DeadEngine(InProcessEngine):
    def __init__(self):
        super().__init__(OperationHost({}, CallBudget(1)))

    async def start(self):
        raise ProcessFault("Sandbox did not become ready within 10s")


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/api/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True}


@pytest.mark.asyncio
async def test_select_returns_resolved_tools_and_trace(app_factory):
    fake_llm = FakeModelClient([script(["ms = get_methods('volume')", "finish(ms)"], "Volume endpoint")])
    app, _, _, _ = app_factory(fake_llm=fake_llm)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/tools/select", json={"query": "coin volume", "max_steps": 2})
            assert res.status_code == 200
            data = res.json()
            assert [t["slug"] for t in data["tools"]] == ["coingecko-get-volume"]
            assert data["tools"][0]["id"] == "method-coingecko-get-volume"
            assert data["reasoning"] == "Volume endpoint"
            assert data["debug"]["finish_step"] == 1
            assert data["debug"]["execution_history"][0]["step"] == 1
            assert "at most 2 steps" in fake_llm.selector_calls[0]["messages"][1]["content"]
    assert fake_llm.closed is True


@pytest.mark.asyncio
async def test_select_rejects_blank_query_and_bad_step_ceiling(client):
    res = await client.post("/api/tools/select", json={"query": "   "})
    assert res.status_code == 400
    res = await client.post("/api/tools/select", json={"query": "price", "max_steps": 11})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_select_maps_sandbox_failure_to_503(client, monkeypatch):
    monkeypatch.setattr("toolselect.tool_selector.create_engine", lambda settings, catalog: DeadEngine())
    res = await client.post("/api/tools/select", json={"query": "price"})
    assert res.status_code == 503
    assert "Sandbox failure" in res.json()["detail"]
