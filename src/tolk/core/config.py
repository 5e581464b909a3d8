"""Application configuration via environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_REGISTRY_INDEX_URL = (
    "https://raw.githubusercontent.com/opentolk/community-plugins/main/plugins.json"
)


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "TOLK_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    # Paths
    base_dir: Path = Path.home() / ".opentolk"

    # Logging
    log_level: str = "INFO"

    # AI credentials; provider is "openai" or "anthropic"
    ai_api_key: str = Field(default="", validation_alias="TOLK_AI_API_KEY")
    ai_provider: str = "openai"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-sonnet-4-20250514"
    ai_max_tokens: int = 4096
    ai_timeout: float = 60.0
    ai_stream_timeout: float = 120.0

    # Execution
    default_timeout: float = 30.0
    max_pipeline_depth: int = 8
    max_tool_rounds: int = 10
    script_env_prefix: str = "OPENTOLK_"
    shortcuts_binary: str = "/usr/bin/shortcuts"
    web_search_url: str = "https://api.duckduckgo.com/"

    # Conversations
    conversation_ttl_seconds: float = 600.0
    conversation_sweep_seconds: float = 60.0

    # Hot reload
    reload_debounce_seconds: float = 0.5

    # Registry
    registry_index_url: str = DEFAULT_REGISTRY_INDEX_URL
    registry_cache_ttl_seconds: float = 300.0

    # Feature toggles
    plugins_enabled: bool = True
    snippets_enabled: bool = True
    intent_matching_enabled: bool = True

    # Host-level capability denials, e.g. "shell,clipboard"
    denied_permissions_raw: str = Field(default="", validation_alias="TOLK_DENIED_PERMISSIONS")

    @property
    def denied_permissions(self) -> list[str]:
        raw = self.denied_permissions_raw.strip()
        if not raw:
            return []
        return [x.strip().lower() for x in raw.split(",") if x.strip()]

    @property
    def plugins_dir(self) -> Path:
        return self.base_dir / "plugins"

    @property
    def plugin_settings_dir(self) -> Path:
        return self.base_dir / "plugin-settings"

    @property
    def plugin_data_dir(self) -> Path:
        return self.base_dir / "plugin-data"

    @property
    def secrets_path(self) -> Path:
        return self.base_dir / "secrets.json"

    @property
    def enabled_plugins_path(self) -> Path:
        return self.base_dir / "enabled-plugins.json"

    @property
    def snippets_path(self) -> Path:
        return self.base_dir / "snippets.json"

    @property
    def audit_log_path(self) -> Path:
        return self.base_dir / "logs" / "audit.jsonl"

    @property
    def app_log_path(self) -> Path:
        return self.base_dir / "logs" / "app.log"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
