from __future__ import annotations

from typing import Any, Protocol

import httpx


class ResponderError(RuntimeError):
    pass


class ChatResponder(Protocol):
    async def reply(self, message: str, *, history: list[dict[str, str]], mode: str) -> str:
        ...


class UpstreamChatResponder:
    """Forwards an admitted message to the assistant service and returns its reply text."""

    def __init__(self, url: str, *, timeout_seconds: float = 30.0) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds

    async def reply(self, message: str, *, history: list[dict[str, str]], mode: str) -> str:
        payload: dict[str, Any] = {"message": message, "history": history, "mode": mode}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(self._url, json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ResponderError("Assistant service request failed.") from exc

        reply = body.get("reply") if isinstance(body, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            raise ResponderError("Assistant service returned an empty reply.")
        return reply.strip()
