import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TOOLSELECT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    # OpenAI-compatible model endpoint
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    model_selector: str = "gpt-5-nano"
    model_meta_tools: str = "gpt-4o-mini"
    generation_timeout_s: float = 180.0

    # Selection loop
    max_steps: int = 3
    max_meta_tool_calls: int = 30
    finish_settle_delay_ms: int = 100
    default_threshold: float = 0.3

    # Sandbox
    sandbox_isolated: bool = False
    line_timeout_s: float = 120.0
    ipc_timeout_s: float = 240.0
    heartbeat_interval_s: float = 5.0
    heartbeat_timeout_s: float = 15.0
    sandbox_startup_timeout_s: float = 10.0
    max_loop_iterations: int = 10000

    database_path: str = "catalog.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("llm_api_key"):
            data["llm_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = ("max_steps", "max_meta_tool_calls", "finish_settle_delay_ms", "max_loop_iterations", "port")
_FLOAT_FIELDS = (
    "generation_timeout_s",
    "default_threshold",
    "line_timeout_s",
    "ipc_timeout_s",
    "heartbeat_interval_s",
    "heartbeat_timeout_s",
    "sandbox_startup_timeout_s",
)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
        "model_selector": os.getenv("MODEL_SELECTOR"),
        "model_meta_tools": os.getenv("MODEL_META_TOOLS"),
        "generation_timeout_s": os.getenv("GENERATION_TIMEOUT_S"),
        "max_steps": os.getenv("MAX_STEPS"),
        "max_meta_tool_calls": os.getenv("MAX_META_TOOL_CALLS"),
        "finish_settle_delay_ms": os.getenv("FINISH_SETTLE_DELAY_MS"),
        "default_threshold": os.getenv("DEFAULT_THRESHOLD"),
        "sandbox_isolated": os.getenv("SANDBOX_ISOLATED"),
        "line_timeout_s": os.getenv("LINE_TIMEOUT_S"),
        "ipc_timeout_s": os.getenv("IPC_TIMEOUT_S"),
        "heartbeat_interval_s": os.getenv("HEARTBEAT_INTERVAL_S"),
        "heartbeat_timeout_s": os.getenv("HEARTBEAT_TIMEOUT_S"),
        "sandbox_startup_timeout_s": os.getenv("SANDBOX_STARTUP_TIMEOUT_S"),
        "max_loop_iterations": os.getenv("MAX_LOOP_ITERATIONS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "sandbox_isolated" in cleaned:
        cleaned["sandbox_isolated"] = str(cleaned["sandbox_isolated"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("llm_api_key") and env_data.get("llm_api_key"):
        merged["llm_api_key"] = env_data["llm_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
