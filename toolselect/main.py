import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .catalog import SqliteCatalog
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .errors import ProcessFault
from .llm import LLMClient
from .schemas import SelectToolsRequest, ToolSelectorResult
from .tool_selector import ToolSelector

logger = logging.getLogger("uvicorn.error")

MASKED_SECRET = "********"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_llm_client(request: Request) -> Any:
    return request.app.state.llm_client


def get_catalog(request: Request) -> Any:
    return request.app.state.catalog


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


@router.get("/api/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    llm_client: Any = Depends(get_llm_client),
    catalog: Any = Depends(get_catalog),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    if body.get("llm_api_key") == MASKED_SECRET:
        body.pop("llm_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    if isinstance(llm_client, LLMClient):
        llm_client.base_url = new_settings.llm_base_url.rstrip("/")
        llm_client.api_key = new_settings.llm_api_key
    if isinstance(catalog, SqliteCatalog):
        catalog.model = new_settings.model_meta_tools
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/tools/select", response_model=ToolSelectorResult)
async def select_tools_route(
    payload: SelectToolsRequest,
    settings: AppSettings = Depends(get_settings),
    llm_client: Any = Depends(get_llm_client),
    catalog: Any = Depends(get_catalog),
):
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query is required.")
    selector = ToolSelector(settings, llm_client, catalog)
    try:
        return await selector.select_tools(query, payload.chat_history, max_steps=payload.max_steps)
    except ProcessFault as exc:
        logger.error("[tool-selector] sandbox failure: %s", exc.message)
        raise HTTPException(status_code=503, detail=f"Sandbox failure: {exc.message}")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[Any] = None,
    catalog: Optional[Any] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.llm_client.close()

    app = FastAPI(title="toolselect", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or LLMClient(
        settings.llm_base_url, api_key=settings.llm_api_key, timeout=settings.generation_timeout_s
    )
    app.state.catalog = catalog or SqliteCatalog(
        app.state.db, llm_client=app.state.llm_client, model=settings.model_meta_tools
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("TOOLSELECT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "toolselect.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
