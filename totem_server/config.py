"""
Configuration for the totem server process.
Loads from environment variables with sensible defaults.
"""
from dataclasses import dataclass, field
from typing import List

from totem_pipeline.config import (
    _clean_env,
    _parse_bool_env,
    _parse_int_env,
    load_env_files,
)


def _parse_list_env(key: str, default: List[str]) -> List[str]:
    raw = _clean_env(key)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class ServerConfig:
    """HTTP/WebSocket server settings."""

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # Conversation entries kept per session (user and assistant each count)
    history_limit: int = 20

    log_level: str = "INFO"
    json_logs: bool = True

    @classmethod
    def from_env(cls) -> "ServerConfig":
        load_env_files()
        return cls(
            host=_clean_env("HOST") or "0.0.0.0",
            port=_parse_int_env("PORT", 3001),
            cors_origins=_parse_list_env("CORS_ORIGINS", ["*"]),
            history_limit=_parse_int_env("CONVERSATION_HISTORY_LIMIT", 20),
            log_level=(_clean_env("LOG_LEVEL") or "INFO").upper(),
            json_logs=_parse_bool_env("LOG_JSON", True),
        )
