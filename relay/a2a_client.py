"""A2A (agent-to-agent) client over JSON-RPC 2.0 on httpx.

Only ``message/send`` is implemented: the delegate tool sends one message and
waits for the remote agent's result. Connection errors and HTTP 429/5xx
responses are retried with exponential backoff until the elapsed-time budget
runs out; anything else propagates unchanged.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

A2A_RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
A2A_REQUEST_TIMEOUT = 600


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff, all intervals in seconds."""

    initial_interval: float = 0.1
    max_interval: float = 10.0
    exponent: float = 2.0
    max_elapsed_time: float = 20.0
    status_codes: Tuple[int, ...] = A2A_RETRY_STATUS_CODES
    retry_connection_errors: bool = True

    def delay(self, attempt: int) -> float:
        return min(self.initial_interval * (self.exponent ** attempt), self.max_interval)


@dataclass
class A2AResponse:
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def build_message(
    text: str,
    context_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    role: str = "agent",
) -> Dict[str, Any]:
    """The A2A message envelope for a single text part."""
    return {
        "role": role,
        "parts": [{"kind": "text", "text": text}],
        "messageId": uuid.uuid4().hex,
        "kind": "message",
        "contextId": context_id,
        "metadata": dict(metadata or {}),
    }


def extract_text(result: Any) -> str:
    """Best-effort plain text of a message or task result."""
    if isinstance(result, str):
        return result
    if not isinstance(result, dict):
        return ""
    parts = list(result.get("parts") or [])
    for artifact in result.get("artifacts") or []:
        parts.extend(artifact.get("parts") or [])
    status_message = (result.get("status") or {}).get("message") or {}
    parts.extend(status_message.get("parts") or [])
    return "\n".join(p.get("text", "") for p in parts if p.get("kind") == "text" and p.get("text"))


class A2AClient:
    """Send A2A messages to one remote agent.

    Args:
        base_url: The agent endpoint (JSON-RPC requests are POSTed here).
        headers: Routing and auth headers sent with every request.
        retry: Backoff policy; ``None`` disables retries.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one
            backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        retry: Optional[RetryConfig] = RetryConfig(),
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = A2A_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url
        self.headers = dict(headers or {})
        self.retry = retry
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
        start = time.monotonic()
        attempt = 0
        while True:
            try:
                resp = await client.post(
                    self.base_url,
                    json=payload,
                    headers={"Content-Type": "application/json", **self.headers},
                    timeout=self.timeout,
                )
                if self.retry is None or resp.status_code not in self.retry.status_codes:
                    return resp
                failure = f"HTTP {resp.status_code}"
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if self.retry is None or not self.retry.retry_connection_errors:
                    raise
                failure = f"connection error: {e}"
                resp = None

            delay = self.retry.delay(attempt)
            if time.monotonic() - start + delay > self.retry.max_elapsed_time:
                if resp is not None:
                    return resp
                raise httpx.ConnectError(f"A2A request to {self.base_url} failed after {attempt + 1} attempts ({failure})")
            logger.warning(
                "A2A request to %s failed (%s), retrying in %.1fs (attempt %d)",
                self.base_url, failure, delay, attempt + 1,
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def send_message(self, message: Dict[str, Any]) -> A2AResponse:
        """POST ``message/send``. A JSON-RPC error comes back in ``A2AResponse.error``.

        Raises:
            httpx.HTTPStatusError: a non-retryable HTTP error status.
            httpx.TransportError: connection failures once retries are exhausted.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": uuid.uuid4().hex,
            "method": "message/send",
            "params": {"message": message},
        }

        if self._client is not None:
            resp = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient() as client:
                resp = await self._post(client, payload)

        resp.raise_for_status()
        body = resp.json()
        error = body.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        logger.debug("A2A response from %s (error=%s)", self.base_url, bool(error))
        return A2AResponse(result=body.get("result"), error=error, raw=body)
