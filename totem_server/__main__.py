"""
Entry point for running the totem server.

Usage:
    python -m totem_server

Listens on HOST:PORT (default 0.0.0.0:3001): WebSocket at /ws, HTTP API under /api.
"""
import uvicorn

from logging_setup import setup_logging
from .config import ServerConfig

if __name__ == "__main__":
    server_config = ServerConfig.from_env()
    setup_logging(level=server_config.log_level, use_json=server_config.json_logs)

    uvicorn.run(
        "totem_server.server:app",
        host=server_config.host,
        port=server_config.port,
        log_level=server_config.log_level.lower(),
    )
