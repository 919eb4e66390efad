import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
MASKED_KEY = "********"
ENV_OVERRIDE_KEY = "TABPILOT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
DEFAULT_BASE_URL = "http://127.0.0.1:1234/v1"
DEFAULT_MODEL = "qwen/qwen3-8b"
ROLES = ("router", "planner", "executor", "researcher", "synthesizer")


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


def _endpoint(model_id: str = DEFAULT_MODEL) -> EndpointConfig:
    return EndpointConfig(base_url=DEFAULT_BASE_URL, model_id=model_id)


class AppSettings(BaseModel):
    # Single endpoint used to backfill per-role endpoints
    llm_base_url: str = DEFAULT_BASE_URL
    llm_api_key: Optional[str] = None
    default_model: str = DEFAULT_MODEL

    # Per-role endpoints/models
    router_endpoint: EndpointConfig = Field(default_factory=_endpoint)
    planner_endpoint: EndpointConfig = Field(default_factory=_endpoint)
    executor_endpoint: EndpointConfig = Field(default_factory=_endpoint)
    researcher_endpoint: EndpointConfig = Field(default_factory=_endpoint)
    synthesizer_endpoint: EndpointConfig = Field(default_factory=_endpoint)

    browser_base_url: str = "http://127.0.0.1:9222/api"
    search_url_template: str = "https://duckduckgo.com/?q={query}"

    max_tasks: int = 10
    max_replans_per_task: int = 3
    max_context_turns: int = 40
    subtask_max_rounds: int = 25
    page_worker_max_rounds: int = 10
    search_planner_max_rounds: int = 12
    max_search_results: int = 10
    max_parallel_workers: int = 4

    tool_timeout_short_s: float = 10.0
    tool_timeout_long_s: float = 45.0
    llm_timeout_s: float = 120.0
    max_tokens: int = 4096
    temperature: float = 0.2

    database_path: str = "tabpilot.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def endpoint_for(self, role: str) -> EndpointConfig:
        return getattr(self, f"{role}_endpoint")

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("llm_api_key"):
            data["llm_api_key"] = MASKED_KEY
        return data

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = (
    "max_tasks",
    "max_replans_per_task",
    "max_context_turns",
    "subtask_max_rounds",
    "page_worker_max_rounds",
    "search_planner_max_rounds",
    "max_search_results",
    "max_parallel_workers",
    "max_tokens",
    "port",
)
_FLOAT_FIELDS = ("tool_timeout_short_s", "tool_timeout_long_s", "llm_timeout_s", "temperature")


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "browser_base_url": os.getenv("BROWSER_BASE_URL"),
        "search_url_template": os.getenv("SEARCH_URL_TEMPLATE"),
        "max_tasks": os.getenv("MAX_TASKS"),
        "max_replans_per_task": os.getenv("MAX_REPLANS_PER_TASK"),
        "max_context_turns": os.getenv("MAX_CONTEXT_TURNS"),
        "subtask_max_rounds": os.getenv("SUBTASK_MAX_ROUNDS"),
        "page_worker_max_rounds": os.getenv("PAGE_WORKER_MAX_ROUNDS"),
        "search_planner_max_rounds": os.getenv("SEARCH_PLANNER_MAX_ROUNDS"),
        "max_search_results": os.getenv("MAX_SEARCH_RESULTS"),
        "max_parallel_workers": os.getenv("MAX_PARALLEL_WORKERS"),
        "tool_timeout_short_s": os.getenv("TOOL_TIMEOUT_SHORT_S"),
        "tool_timeout_long_s": os.getenv("TOOL_TIMEOUT_LONG_S"),
        "llm_timeout_s": os.getenv("LLM_TIMEOUT_S"),
        "max_tokens": os.getenv("MAX_TOKENS"),
        "temperature": os.getenv("TEMPERATURE"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    for role in ROLES:
        env_map[f"{role}_model"] = os.getenv(f"{role.upper()}_MODEL")
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_role_endpoints(merged: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Fill per-role endpoints from the shared base url/model when config.json leaves them out."""
    base_url = merged.get("llm_base_url") or DEFAULT_BASE_URL
    default_model = merged.get("default_model") or DEFAULT_MODEL
    for role in ROLES:
        key = f"{role}_endpoint"
        role_model = merged.pop(f"{role}_model", None)
        endpoint = merged.get(key)
        if not isinstance(endpoint, dict):
            endpoint = {}
        endpoint = dict(endpoint)
        if role_model and (allow_env_overrides or not endpoint.get("model_id")):
            endpoint["model_id"] = role_model
        endpoint.setdefault("base_url", base_url)
        endpoint.setdefault("model_id", default_model)
        merged[key] = endpoint


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("llm_api_key") and env_data.get("llm_api_key"):
        merged["llm_api_key"] = env_data["llm_api_key"]
    _apply_role_endpoints(merged, allow_env_overrides)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
