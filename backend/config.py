"""Application configuration using Pydantic Settings.

This module provides centralized configuration for the execution tracker.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list(v: Any, default: list[str]) -> list[str]:
    """Parse a list setting from a JSON array, a comma-separated string, or a list."""
    if isinstance(v, (list, tuple, set, frozenset)):
        return [str(item) for item in v]
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        return [item.strip() for item in v.split(",") if item.strip()]
    return list(default)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        orchestrator_base_url: Base URL of the orchestrator HTTP API.
        orchestrator_events_path: Path of the orchestrator's event stream.
        orchestrator_request_timeout_seconds: Timeout for orchestrator requests.
        channel_reconnect_seconds: Delay before reconnecting a dropped stream.
        tool_timeout_seconds: Upper bound for a single tool invocation.
        tool_servers: Tool providers this client can invoke.
        auto_approved_servers: Providers whose calls skip human approval.
        workflow_servers: Provider names that stand for the remote workflow
            itself; approving their calls needs no local invocation.
        orchestrator_approval_prefix: Id prefix of orchestrator-side approvals.
        history_limit: Number of executions shown in history by default.
        database_path: SQLite file for durable execution storage.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Orchestrator
    orchestrator_base_url: str = "http://localhost:8000"
    orchestrator_events_path: str = "/api/events"
    orchestrator_request_timeout_seconds: float = 60.0
    channel_reconnect_seconds: float = 2.0

    # Tool approvals
    tool_timeout_seconds: float = 30.0
    tool_servers: str | list[str] = []
    auto_approved_servers: str | list[str] = []
    workflow_servers: str | list[str] = ["langgraph", "agent_orchestrator"]
    orchestrator_approval_prefix: str = "approval-"

    # History
    history_limit: int = 50
    database_path: str = "./data/executions.db"

    # Server Configuration
    backend_port: int = 8100
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, comma-separated string, or list."""
        return _parse_list(v, ["http://localhost:3000"])

    @field_validator("tool_servers", "auto_approved_servers", mode="before")
    @classmethod
    def parse_server_list(cls, v: Any) -> list[str]:
        return _parse_list(v, [])

    @field_validator("workflow_servers", mode="before")
    @classmethod
    def parse_workflow_servers(cls, v: Any) -> list[str]:
        return _parse_list(v, ["langgraph", "agent_orchestrator"])

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
