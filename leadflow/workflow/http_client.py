from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from leadflow.workflow.errors import CallError


LOGGER = logging.getLogger(__name__)

DEFAULT_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND"})
RETRYABLE_MESSAGE_MARKERS = ("timeout", "aborted")
USER_AGENT = "leadflow-webhook/1.0"

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES
    retryable_error_codes: frozenset[str] = DEFAULT_RETRYABLE_ERROR_CODES

    def delay_ms(self, attempt: int) -> float:
        return self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None, defaults: RetryPolicy | None = None) -> RetryPolicy:
        base = defaults or cls()
        if not config:
            return base
        statuses = config.get("retryableStatuses", config.get("retryable_statuses"))
        codes = config.get("retryableErrors", config.get("retryable_error_codes"))
        return cls(
            max_retries=max(0, int(config.get("maxRetries", config.get("max_retries", base.max_retries)))),
            initial_delay_ms=max(
                0, int(config.get("initialDelayMs", config.get("initial_delay_ms", base.initial_delay_ms)))
            ),
            backoff_multiplier=float(
                config.get("backoffMultiplier", config.get("backoff_multiplier", base.backoff_multiplier))
            ),
            retryable_statuses=frozenset(int(item) for item in statuses) if statuses is not None else base.retryable_statuses,
            retryable_error_codes=frozenset(str(item) for item in codes) if codes is not None else base.retryable_error_codes,
        )


@dataclass(slots=True)
class CallAttempt:
    attempt: int
    delay_ms: float = 0
    status: int | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"attempt": self.attempt, "delay_ms": self.delay_ms}
        if self.status is not None:
            payload["status"] = self.status
        if self.error_message is not None:
            payload["error"] = self.error_message
        return payload


@dataclass(slots=True)
class CallResponse:
    status: int
    headers: dict[str, str]
    body: object


@dataclass(slots=True)
class CallResult:
    response: CallResponse
    attempts: int
    history: list[CallAttempt] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return 200 <= self.response.status < 300


def error_code_for(exc: Exception) -> str | None:
    """Map httpx transport failures onto the socket error codes retry policies name."""
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if "name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text:
            return "ENOTFOUND"
        return "ECONNREFUSED"
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return "ECONNRESET"
    return None


class RetryingCallClient:
    """Outbound HTTP caller with exponential backoff and a per-attempt timeout."""

    def __init__(
        self,
        *,
        default_policy: RetryPolicy | None = None,
        default_timeout_ms: int = 30000,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._default_policy = default_policy or RetryPolicy()
        self._default_timeout_ms = max(1, int(default_timeout_ms))
        self._transport = transport
        self._sleep = sleep or asyncio.sleep

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    async def call(
        self,
        url: str,
        *,
        method: str = "POST",
        headers: Mapping[str, str] | None = None,
        body: object = None,
        policy: RetryPolicy | None = None,
        timeout_ms: int | None = None,
    ) -> CallResult:
        active_policy = policy or self._default_policy
        timeout_seconds = max(1, int(timeout_ms or self._default_timeout_ms)) / 1000.0
        request_headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        request_headers.update(headers or {})
        send_body = method.upper() not in {"GET", "HEAD"}

        history: list[CallAttempt] = []
        started = time.monotonic()

        async with httpx.AsyncClient(transport=self._transport, timeout=timeout_seconds) as client:
            for attempt in range(1, active_policy.max_retries + 2):
                entry = CallAttempt(attempt=attempt)
                history.append(entry)
                try:
                    response = await client.request(
                        method.upper(),
                        url,
                        headers=request_headers,
                        json=body if send_body else None,
                    )
                except httpx.HTTPError as exc:
                    code = error_code_for(exc)
                    message = f"{code}: {exc}" if code else (str(exc) or exc.__class__.__name__)
                    entry.error_message = message
                    retryable = self._is_retryable_error(active_policy, code, message)
                    if not retryable or attempt > active_policy.max_retries:
                        raise CallError(
                            f"Call to {url} failed after {attempt} attempt{'s' if attempt > 1 else ''}: {message}",
                            retryable=retryable,
                            history=history,
                        ) from exc
                    await self._backoff(active_policy, entry, url)
                    continue

                entry.status = response.status_code
                if 200 <= response.status_code < 300:
                    LOGGER.debug("Call to %s succeeded on attempt %s", url, attempt)
                    return CallResult(
                        response=CallResponse(
                            status=response.status_code,
                            headers=dict(response.headers),
                            body=self._read_body(response),
                        ),
                        attempts=attempt,
                        history=history,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    )

                retryable = response.status_code in active_policy.retryable_statuses
                if not retryable or attempt > active_policy.max_retries:
                    raise CallError(
                        f"Call to {url} failed after {attempt} attempt{'s' if attempt > 1 else ''}: "
                        f"HTTP {response.status_code}",
                        retryable=retryable,
                        status=response.status_code,
                        history=history,
                    )
                await self._backoff(active_policy, entry, url)

        # Unreachable: the final attempt always returns or raises.
        raise CallError(f"Call to {url} exhausted retries", retryable=True, history=history)

    async def _backoff(self, policy: RetryPolicy, entry: CallAttempt, url: str) -> None:
        delay = policy.delay_ms(entry.attempt)
        entry.delay_ms = delay
        LOGGER.info(
            "Retrying call to %s after attempt %s (status=%s, error=%s) in %.0fms",
            url,
            entry.attempt,
            entry.status,
            entry.error_message,
            delay,
        )
        await self._sleep(delay / 1000.0)

    def _is_retryable_error(self, policy: RetryPolicy, code: str | None, message: str) -> bool:
        if code and code in policy.retryable_error_codes:
            return True
        lowered = message.lower()
        if any(marker.lower() in lowered for marker in policy.retryable_error_codes):
            return True
        return any(marker in lowered for marker in RETRYABLE_MESSAGE_MARKERS)

    def _read_body(self, response: httpx.Response) -> object:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text
