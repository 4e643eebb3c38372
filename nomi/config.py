from pathlib import Path
from functools import lru_cache

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from pydantic import SecretStr
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Supabase
    supabase_url: str = "http://127.0.0.1:54321"
    supabase_anon_key: SecretStr = SecretStr("")
    functions_url: str = ""

    # Backend selection
    storage_backend: Literal["supabase", "local"] = "supabase"
    database_url: str = "./data/nomi.db"

    # Client
    log_level: str = "INFO"
    request_timeout: float = 30.0

    # Chat
    daily_message_limit: int = 40
    message_page_size: int = 20
    message_cache_size: int = 32
    usage_warning_threshold: int = 35
    title_max_length: int = 50

    # Loaded from YAML
    yaml_config: dict = {}

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        yaml_path = Path(__file__).parent.parent / "config" / "settings.yaml"
        if yaml_path.exists():
            with open(yaml_path, "r", encoding="utf-8") as f:
                self.yaml_config = yaml.safe_load(f) or {}

    @property
    def edge_functions_url(self) -> str:
        if self.functions_url:
            return self.functions_url.rstrip("/")
        return f"{self.supabase_url.rstrip('/')}/functions/v1"

    @property
    def tables(self) -> dict:
        defaults = {
            "conversations": "nomi_conversations",
            "messages": "nomi_messages",
            "context": "nomi_context_data",
        }
        return {**defaults, **self.yaml_config.get("tables", {})}

    @property
    def rpc_config(self) -> dict:
        defaults = {"increment_usage": "increment_daily_usage", "limit_param": "p_limit"}
        return {**defaults, **self.yaml_config.get("rpc", {})}

    @property
    def edge_functions(self) -> dict:
        defaults = {"chat": "nomi-chat", "summarize": "nomi-summarize"}
        return {**defaults, **self.yaml_config.get("edge_functions", {})}


@lru_cache
def get_settings() -> Settings:
    return Settings()
