from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


class WebhookError(RuntimeError):
    """Transport, HTTP status or JSON failure while calling the webhook."""


class WebhookClient:
    """
    Minimal async client for the automation webhook.

    Notes
    - POSTs a JSON body and returns the decoded JSON response.
    - No retries: the automation behind the webhook is expected to handle its
      own redelivery policy.
    - `extract_reply()` implements the response contract: object or
      single-element list, `reply` or `Reply` key, anything else means no reply.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "WebhookClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def post(self, payload: Dict[str, Any]) -> Any:
        """POST `payload` as JSON; return the parsed response body."""
        try:
            resp = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise WebhookError(f"Webhook request failed: {exc.__class__.__name__}: {exc}") from exc

        if resp.status_code >= 400:
            raise WebhookError(f"HTTP {resp.status_code} from webhook: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise WebhookError("Failed to parse JSON from webhook") from exc

    @staticmethod
    def extract_reply(data: Any) -> Optional[str]:
        """Return the reply string from a webhook response, or None."""
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            return None
        reply = data.get("Reply")
        if reply is None:
            reply = data.get("reply")
        if not isinstance(reply, str) or not reply:
            return None
        return reply


__all__ = ["WebhookClient", "WebhookError"]
