"""
KRA eTIMS transport client

Stateless request executor. ``send(operation, payload)`` resolves the
endpoint, attaches the tenant headers and POSTs the JSON body with a
bounded per-attempt timeout. Outcomes come back as ``EtimsResult``
values in three buckets:

1. transport failure (connect/timeout/non-2xx/unreadable body), retried
   with exponential backoff; exhausting the attempts yields
   ``result_code == "NETWORK_ERROR"``
2. business rejection (2xx, ``resultCd != "000"``), returned at once
3. success (2xx, ``resultCd == "000"``), body returned as ``data``

The client has no domain knowledge and never touches the ledger.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from etims.core.config import FiscalConfig
from etims.core.metrics import FiscalMetrics, metrics as default_metrics
from etims.services.etims.codes import NETWORK_ERROR, SUCCESS_CODE
from etims.services.etims.payloads import WirePayload

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class EtimsResult:
    """Outcome of one ``send`` call."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    result_code: Optional[str] = None
    result_message: Optional[str] = None
    attempts: int = 1

    @property
    def is_transport_failure(self) -> bool:
        return not self.success and self.result_code == NETWORK_ERROR

    @property
    def is_business_rejection(self) -> bool:
        return not self.success and self.result_code != NETWORK_ERROR


class TransportError(Exception):
    """A single attempt failed below the authority's business layer."""


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff (``base ** attempt`` seconds)."""

    max_attempts: int = 3
    base: float = 2.0

    def backoff(self, attempt: int) -> float:
        return self.base ** attempt


async def with_retry(
    attempt_fn: Callable[[int], Awaitable[EtimsResult]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    label: str = "eTIMS",
) -> EtimsResult:
    """Run ``attempt_fn`` until it returns a result or the budget is spent.

    Only TransportError is retried. Whatever the attempt returns (success
    or business rejection) is final.
    """
    last_error: Optional[TransportError] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await attempt_fn(attempt)
        except TransportError as exc:
            last_error = exc
            logger.warning(
                "%s transport error (attempt %d/%d): %s",
                label, attempt, policy.max_attempts, exc,
            )
            if attempt < policy.max_attempts:
                await sleep(policy.backoff(attempt))
            continue
        return replace(result, attempts=attempt)

    return EtimsResult(
        success=False,
        error=str(last_error) if last_error else "Network error",
        result_code=NETWORK_ERROR,
        result_message="Max retries exceeded",
        attempts=policy.max_attempts,
    )


class EtimsClient:
    """HTTP client for the authority's OSCU/VSCU API."""

    def __init__(
        self,
        config: FiscalConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        metrics: Optional[FiscalMetrics] = None,
    ):
        self.config = config
        self._transport = transport
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=config.max_attempts)
        self._sleep = sleep
        self._metrics = metrics or default_metrics

    async def send(self, operation: str, payload: Union[WirePayload, Dict[str, Any]]) -> EtimsResult:
        """POST ``payload`` to ``operation``.

        Raises FiscalConfigurationError for an operation missing from the
        endpoint table; every other outcome is returned as a value.
        """
        url = self.config.url_for(operation)
        body = payload.to_wire() if isinstance(payload, WirePayload) else payload

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.config.timeout_seconds,
        ) as client:
            return await with_retry(
                lambda attempt: self._attempt(client, operation, url, body, attempt),
                self.retry_policy,
                sleep=self._sleep,
                label=f"eTIMS {operation}",
            )

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        operation: str,
        url: str,
        body: Dict[str, Any],
        attempt: int,
    ) -> EtimsResult:
        logger.info(
            "eTIMS %s request (attempt %d/%d)",
            operation, attempt, self.retry_policy.max_attempts,
        )
        logger.debug("eTIMS %s payload: %s", operation, body)
        started = time.monotonic()

        try:
            response = await client.post(url, headers=self.config.headers(), json=body)
        except httpx.HTTPError as exc:
            self._metrics.record_attempt(operation, "transport_error", time.monotonic() - started)
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        duration = time.monotonic() - started
        if not response.is_success:
            self._metrics.record_attempt(operation, "transport_error", duration)
            raise TransportError(f"HTTP {response.status_code}: {response.reason_phrase}")

        try:
            data = response.json()
        except ValueError as exc:
            self._metrics.record_attempt(operation, "transport_error", duration)
            raise TransportError("Unreadable response body from authority") from exc
        if not isinstance(data, dict):
            self._metrics.record_attempt(operation, "transport_error", duration)
            raise TransportError("Unexpected response shape from authority")

        result_code = data.get("resultCd")
        result_message = data.get("resultMsg")

        if result_code != SUCCESS_CODE:
            self._metrics.record_attempt(operation, "rejected", duration)
            logger.warning(
                "eTIMS %s rejected: resultCd=%s resultMsg=%s",
                operation, result_code, result_message,
            )
            return EtimsResult(
                success=False,
                data=data,
                error=result_message or "KRA API error",
                result_code=result_code,
                result_message=result_message,
            )

        self._metrics.record_attempt(operation, "ok", duration)
        logger.info("eTIMS %s accepted", operation)
        return EtimsResult(
            success=True,
            data=data,
            result_code=result_code,
            result_message=result_message,
        )
