import json
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "RESEARCH_ROUTER_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

# Credential names the registry refers to via ModelConfig.api_key_ref or optional_key_ref.
CREDENTIAL_ENV_NAMES = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GATEWAY_API_KEY")
# Older deployments exported the gateway key under this name
CREDENTIAL_ENV_ALIASES = {"LOVABLE_API_KEY": "GATEWAY_API_KEY"}


class AppSettings(BaseModel):
    # Local inference runtimes
    ollama_url: str = "http://localhost:11434"
    vllm_url: str = "http://localhost:8000"
    hf_tgi_url: str = "http://localhost:8080"

    # Commercial APIs and the always-available gateway
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    gateway_url: str = "https://ai.gateway.lovable.dev/v1"

    api_keys: Dict[str, str] = Field(default_factory=dict)
    tavily_api_key: Optional[str] = None

    provider_timeout_s: float = 60.0
    search_timeout_s: float = 20.0
    scrape_timeout_s: float = 30.0
    search_concurrency: int = 3
    extract_top_n: int = 6
    max_sources_default: int = 10
    prefer_local_default: bool = True

    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        data["api_keys"] = {name: "********" for name, value in data.get("api_keys", {}).items() if value}
        if data.get("tavily_api_key"):
            data["tavily_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


class CredentialStore:
    """Credential resolver over a name -> secret mapping."""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = {name: value for name, value in (secrets or {}).items() if value}

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "CredentialStore":
        return cls(settings.api_keys)

    def has(self, ref: str) -> bool:
        return bool(self._secrets.get(ref))

    def get(self, ref: str) -> str:
        value = self._secrets.get(ref)
        if not value:
            raise KeyError(ref)
        return value

    def names(self) -> list[str]:
        return sorted(self._secrets)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_url": os.getenv("OLLAMA_URL"),
        "vllm_url": os.getenv("VLLM_URL"),
        "hf_tgi_url": os.getenv("HF_TGI_URL"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "anthropic_base_url": os.getenv("ANTHROPIC_BASE_URL"),
        "gateway_url": os.getenv("GATEWAY_URL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "provider_timeout_s": os.getenv("PROVIDER_TIMEOUT_S"),
        "search_timeout_s": os.getenv("SEARCH_TIMEOUT_S"),
        "scrape_timeout_s": os.getenv("SCRAPE_TIMEOUT_S"),
        "search_concurrency": os.getenv("SEARCH_CONCURRENCY"),
        "extract_top_n": os.getenv("EXTRACT_TOP_N"),
        "max_sources_default": os.getenv("MAX_SOURCES_DEFAULT"),
        "prefer_local_default": os.getenv("PREFER_LOCAL_DEFAULT"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("provider_timeout_s", "search_timeout_s", "scrape_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("search_concurrency", "extract_top_n", "max_sources_default", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "prefer_local_default" in cleaned:
        cleaned["prefer_local_default"] = str(cleaned["prefer_local_default"]).lower() in ENV_OVERRIDE_TRUE
    api_keys = {name: os.getenv(name) for name in CREDENTIAL_ENV_NAMES}
    for alias, name in CREDENTIAL_ENV_ALIASES.items():
        if not api_keys.get(name) and os.getenv(alias):
            api_keys[name] = os.getenv(alias)
    api_keys = {name: value for name, value in api_keys.items() if value}
    if api_keys:
        cleaned["api_keys"] = api_keys
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
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Credentials merge per name so a key from the environment is not lost
    # when config.json carries a different one.
    env_keys = env_data.get("api_keys") or {}
    file_keys = file_data.get("api_keys") or {}
    if allow_env_overrides:
        merged["api_keys"] = {**file_keys, **env_keys}
    else:
        merged["api_keys"] = {**env_keys, **file_keys}
    if not merged.get("tavily_api_key") and env_data.get("tavily_api_key"):
        merged["tavily_api_key"] = env_data["tavily_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
