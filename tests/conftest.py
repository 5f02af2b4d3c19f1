from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from toolselect.main import create_app
from tests.fakes import FakeCatalog, FakeModelClient, make_settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeModelClient | None = None,
        catalog: FakeCatalog | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeModelClient()
        catalog_obj = catalog or FakeCatalog()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_client=llm_client, catalog=catalog_obj, config_path=cfg_path)
        return app, cfg_path, llm_client, catalog_obj

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, catalog = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.catalog = catalog  # type: ignore[attr-defined]
            yield http_client
