"""HTTP client for an OpenCode server."""

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from opencode_claw.runtime.base import AgentRuntime, AgentRuntimeError, EventSubscription
from opencode_claw.runtime.events import AgentEvent, RemoteSession, parse_event


class SSEEventSubscription(EventSubscription):
    """Server-sent events from GET /event, decoded into typed agent events."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[AgentEvent]:
        data_lines: list[str] = []
        async for line in self._response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
                continue
            if line or not data_lines:
                # Comments, event names and ids carry nothing we use
                continue
            payload = "\n".join(data_lines)
            data_lines = []
            try:
                raw = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed event payload: {payload[:100]}")
                continue
            event = parse_event(raw)
            if event is not None:
                yield event

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class OpencodeClient(AgentRuntime):
    """
    Agent runtime backed by the OpenCode HTTP API.

    Prompts are fired through /session/{id}/prompt_async and observed through
    the /event stream.
    """

    def __init__(
        self,
        base_url: str,
        directory: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_s,
            transport=transport,
        )

    def _params(self) -> dict[str, str]:
        return {"directory": self.directory} if self.directory else {}

    async def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, params=self._params(), json=json_body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AgentRuntimeError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise AgentRuntimeError(f"{method} {path} failed: {e}") from e

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AgentRuntimeError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _session_id(data: Any, action: str) -> str:
        if isinstance(data, dict) and isinstance(data.get("id"), str) and data["id"]:
            return data["id"]
        raise AgentRuntimeError(f"{action} returned no session id")

    async def create_session(self, title: str | None = None) -> str:
        body = {"title": title} if title else {}
        data = await self._request("POST", "/session", body)
        session_id = self._session_id(data, "create session")
        logger.debug(f"Created OpenCode session {session_id}")
        return session_id

    async def fork_session(self, session_id: str) -> str:
        data = await self._request("POST", f"/session/{session_id}/fork", {})
        return self._session_id(data, "fork session")

    async def list_sessions(self) -> list[RemoteSession]:
        data = await self._request("GET", "/session")
        sessions: list[RemoteSession] = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            created = (item.get("time") or {}).get("created") if isinstance(item.get("time"), dict) else None
            sessions.append(
                RemoteSession(
                    id=str(item["id"]),
                    title=str(item.get("title") or ""),
                    created_at=float(created) if isinstance(created, (int, float)) else None,
                    extra=item,
                )
            )
        return sessions

    async def prompt_async(self, session_id: str, text: str) -> None:
        body = {"parts": [{"type": "text", "text": text}]}
        await self._request("POST", f"/session/{session_id}/prompt_async", body)

    async def subscribe_events(self) -> EventSubscription:
        request = self._client.build_request(
            "GET",
            "/event",
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._client.timeout.connect, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise AgentRuntimeError(f"Event stream connection failed: {e}") from e
        if response.status_code >= 400:
            await response.aclose()
            raise AgentRuntimeError(f"Event stream returned {response.status_code}")
        return SSEEventSubscription(response)

    async def abort(self, session_id: str) -> bool:
        data = await self._request("POST", f"/session/{session_id}/abort", {})
        return data is not False

    async def reply_question(self, question_id: str, answers: list[list[str]]) -> None:
        await self._request("POST", f"/question/{question_id}/reply", {"answers": answers})

    async def reject_question(self, question_id: str) -> None:
        await self._request("POST", f"/question/{question_id}/reject", {})

    async def close(self) -> None:
        await self._client.aclose()
