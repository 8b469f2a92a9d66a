"""
Configuration for Sofa SDK.

Uses pydantic-settings for environment variable loading. Every setting has a
default suitable for a local development server, so ``ClientSettings()``
works out of the box.

Environment variables (prefix ``SOFA_``):
    SOFA_HOST, SOFA_PORT, SOFA_SCHEME, SOFA_DATABASE_PREFIX,
    SOFA_TIMEOUT, SOFA_LOG_LEVEL, SOFA_LOG_FORMAT
"""

from __future__ import annotations

import logging

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    # Server connection
    host: str = Field(default="localhost", description="Database server host")
    port: int = Field(default=5984, description="Database server port")
    scheme: str = Field(default="http", description="URL scheme (http or https)")

    # Prepended to every database name opened through the client
    database_prefix: str = Field(default="", description="Database name prefix")

    # Transport
    timeout: float = Field(default=3600.0, description="Request timeout seconds")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (text or json)")

    model_config = {"env_prefix": "SOFA_"}

    @property
    def base_url(self) -> str:
        """Root URL of the server."""
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def address(self) -> str:
        """host:port of the server."""
        return f"{self.host}:{self.port}"


def setup_logging(settings: ClientSettings | None = None) -> None:
    """Configure logging based on settings.

    Args:
        settings: Client settings (loaded from environment when omitted)
    """
    settings = settings or ClientSettings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
