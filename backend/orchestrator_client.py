"""HTTP client for the remote orchestrator.

The orchestrator schedules agents and tools; this client talks to it over
plain HTTP with httpx:

- ``invoke_tool`` runs a tool on one of the orchestrator's tool providers
- ``resume`` hands a human decision to a workflow paused on a tool call
- ``send_tool_decision`` answers an orchestrator-side approval request
- ``stream_events`` reads the push channel as Server-Sent Events

Every request method returns a typed result; HTTP and transport errors never
escape.
"""

import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from approvals.types import (
    CommandResult,
    HumanInteractionResponse,
    ResumeResult,
    ToolInvocationResult,
)
from events.types import ChannelMessage

logger = structlog.get_logger(__name__)


def _describe_http_error(e: httpx.HTTPStatusError) -> str:
    detail: Any
    try:
        detail = e.response.json()
    except ValueError:
        detail = e.response.text
    if isinstance(detail, dict):
        detail = detail.get("detail") or detail.get("error") or detail
    return f"HTTP {e.response.status_code}: {detail}"


class OrchestratorClient:
    """Async client for the orchestrator's HTTP API.

    Args:
        base_url: Orchestrator base URL, e.g. ``http://localhost:8000``.
        events_path: Path of the Server-Sent Events stream.
        timeout: Request timeout in seconds (the event stream has none).
        client: Optional preconfigured httpx client (tests).
    """

    def __init__(
        self,
        base_url: str,
        events_path: str = "/api/events",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.events_path = events_path
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST JSON and return the decoded body, or an ``error`` dict."""
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload)
            resp.raise_for_status()
            body = resp.json() if resp.content else {}
            return body if isinstance(body, dict) else {"result": body}
        except httpx.HTTPStatusError as e:
            return {"error": _describe_http_error(e), "status_code": e.response.status_code}
        except httpx.RequestError as e:
            return {"error": f"Request failed: {e}"}
        except ValueError as e:
            return {"error": f"Invalid response body: {e}"}

    async def invoke_tool(
        self, server: str, tool_name: str, arguments: dict[str, Any]
    ) -> ToolInvocationResult:
        body = await self._post(
            "/api/tools/invoke",
            {"server": server, "tool": tool_name, "arguments": arguments},
        )
        if "error" in body and body.get("success") is not True:
            logger.warning(
                "tool_invoke_failed",
                server=server,
                tool_name=tool_name,
                error=body["error"],
            )
            return ToolInvocationResult(success=False, error=str(body["error"]))
        return ToolInvocationResult(
            success=bool(body.get("success", True)),
            data=body.get("result", body.get("data")),
            error=body.get("error"),
        )

    async def resume(
        self, thread_id: str, response: HumanInteractionResponse
    ) -> ResumeResult:
        body = await self._post(
            f"/api/workflows/{quote(thread_id, safe='')}/resume",
            response.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        if body.get("error") and not body.get("success"):
            logger.warning("workflow_resume_request_failed", thread_id=thread_id, error=body["error"])
            return ResumeResult(success=False, error=str(body["error"]))
        result = body.get("result")
        if result is not None and not isinstance(result, str):
            result = json.dumps(result, default=str)
        return ResumeResult(
            success=bool(body.get("success", True)),
            completed=bool(body.get("completed", False)),
            result=result,
            error=body.get("error"),
        )

    async def send_tool_decision(self, approval_id: str, approved: bool) -> CommandResult:
        body = await self._post(
            f"/api/tool-approvals/{quote(approval_id, safe='')}",
            {"approvalId": approval_id, "approved": approved},
        )
        if body.get("error"):
            return CommandResult(success=False, error=str(body["error"]))
        return CommandResult(success=True)

    async def stream_events(self) -> AsyncIterator[ChannelMessage]:
        """Yield channel messages from the orchestrator's SSE stream.

        Each SSE event carries the topic in its ``event:`` field and the
        payload as JSON in ``data:``. Events without a known topic or with
        undecodable data are logged and skipped. The iterator ends when the
        server closes the stream; transport errors propagate to the caller,
        which owns the reconnect policy.
        """
        url = f"{self.base_url}{self.events_path}"
        async with self.client.stream(
            "GET", url, headers={"Accept": "text/event-stream"}, timeout=None
        ) as resp:
            resp.raise_for_status()
            logger.info("event_stream_connected", url=url)
            event_name: str | None = None
            data_lines: list[str] = []
            async for line in resp.aiter_lines():
                if line == "":
                    message = self._decode_event(event_name, data_lines)
                    event_name, data_lines = None, []
                    if message is not None:
                        yield message
                    continue
                if line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                value = value[1:] if value.startswith(" ") else value
                if field == "event":
                    event_name = value
                elif field == "data":
                    data_lines.append(value)

    @staticmethod
    def _decode_event(event_name: str | None, data_lines: list[str]) -> ChannelMessage | None:
        if not data_lines:
            return None
        try:
            data = json.loads("\n".join(data_lines))
        except json.JSONDecodeError as e:
            logger.warning("event_stream_bad_json", topic=event_name, error=str(e))
            return None
        if event_name is None or event_name == "message":
            # Unnamed events wrap the topic inside the data.
            raw: Any = data
        else:
            raw = {"topic": event_name, "payload": data if isinstance(data, dict) else {}}
        try:
            return ChannelMessage.model_validate(raw)
        except ValidationError:
            logger.debug("event_stream_unknown_event", topic=event_name)
            return None

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
