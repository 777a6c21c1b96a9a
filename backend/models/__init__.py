"""Models module for API schemas and durable storage.

This module exposes the request/response models used by the API.
"""

from models.schemas import (
    DeleteResponse,
    ExecutionStatsResponse,
    ExecutionSummaryResponse,
    HealthResponse,
    ToolActionResponse,
    ViewResponse,
)

__all__ = [
    "DeleteResponse",
    "ExecutionStatsResponse",
    "ExecutionSummaryResponse",
    "HealthResponse",
    "ToolActionResponse",
    "ViewResponse",
]
