"""Signed outbound callbacks to the external task system."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from courier.errors import TransientDeliveryFailure
from courier.signing import build_headers

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "claude-sonnet-4-20250514"


def build_callback_payload(
    status: str,
    session_code: str | None,
    messages: list[dict] | None = None,
    output_data: Any = None,
    error_message: str | None = None,
    usage: dict | None = None,
) -> dict:
    """Callback body; optional sections appear only when meaningful."""
    payload: dict[str, Any] = {"status": status, "session_code": session_code}

    if messages:
        payload["messages"] = [
            {
                "role": m.get("role"),
                "content": m.get("content"),
                "timestamp": m.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            }
            for m in messages
        ]

    if status == "completed" and output_data is not None:
        payload["output_data"] = output_data

    if status == "failed" and error_message:
        payload["error_message"] = error_message

    if usage:
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        payload["usage"] = {
            "model_id": usage.get("model_id", DEFAULT_MODEL_ID),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "duration_ms": usage.get("duration_ms", 0),
            "api_calls": usage.get("api_calls", 1),
        }

    return payload


@dataclass
class RetryPolicy:
    """Bounded exponential backoff: base, 2*base, 4*base, ..."""

    max_retries: int = 3
    base_delay: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2**attempt)


@dataclass
class DeliveryResult:
    success: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class CallbackClient:
    """POSTs signed callbacks, retrying on non-2xx and network errors."""

    def __init__(
        self,
        agent_id: str,
        secret: str,
        api_url: str,
        policy: RetryPolicy | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.agent_id = agent_id
        self.secret = secret
        self.api_url = api_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def url_for(self, task_id: str, callback_url: str | None = None) -> str:
        return callback_url or f"{self.api_url}/api/agent/callback/{task_id}"

    async def send(self, task_id: str, payload: dict, callback_url: str | None = None) -> DeliveryResult:
        """Deliver one callback; never raises, failures are logged."""
        url = self.url_for(task_id, callback_url)
        last_error = None
        status_code = None
        attempts = 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.policy.max_retries + 1):
                attempts += 1
                body = payload if attempt == 0 else {**payload, "retry_count": attempt}
                headers = build_headers(self.agent_id, body, self.secret)
                try:
                    response = await client.post(url, content=json.dumps(body), headers=headers)
                    status_code = response.status_code
                    if response.is_success:
                        logger.info(f"Callback delivered to {url} ({status_code})")
                        return DeliveryResult(True, attempts, status_code)
                    last_error = f"HTTP {status_code}: {response.text[:200]}"
                except httpx.HTTPError as e:
                    last_error = f"Network error: {e}"

                logger.warning(f"Callback to {url} failed: {last_error}")
                if attempt < self.policy.max_retries:
                    delay = self.policy.delay(attempt)
                    logger.info(
                        f"Retrying callback in {delay:.0f}s (attempt {attempt + 1}/{self.policy.max_retries})"
                    )
                    await self._sleep(delay)

        failure = TransientDeliveryFailure(
            f"Callback for task {task_id} failed after {self.policy.max_retries} retries: {last_error}"
        )
        logger.error(str(failure))
        return DeliveryResult(False, attempts, status_code, str(failure))
