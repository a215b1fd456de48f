"""
Shared HTTP client for gateway APIs.

Implements:
- Exponential backoff for transient errors (tenacity)
- Circuit breaker per gateway
- Error classification into UpstreamError(retryable=...)
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from storefront.core.exceptions import UpstreamError
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def is_retryable(error: BaseException) -> bool:
    """Only transport faults, 5xx and rate limits are worth another attempt."""
    return isinstance(error, UpstreamError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for one gateway's API.

    Stops calling a gateway that keeps failing so that checkouts fail fast
    with a retryable error instead of piling up on timeouts.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Gateway code (used in logs and metrics)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            UpstreamError: If circuit is open, or whatever func raises
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                metrics.record_gateway_api_error(self.name, "circuit_open")
                raise UpstreamError(
                    f"Circuit breaker is open for {self.name}",
                    retryable=True,
                    gateway_code=self.name,
                )

        try:
            result = await func(*args, **kwargs)
        except UpstreamError as e:
            # 4xx responses say nothing about gateway health
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                gateway=self.name,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)
        logger.info("circuit_breaker_state_changed", gateway=self.name, state=state)


class GatewayHttpClient:
    """
    JSON-over-HTTP client used by the REST gateways.

    Every fault surfaces as UpstreamError: transport errors, 429 and 5xx are
    retryable, other 4xx and unparseable bodies are not.
    """

    def __init__(
        self,
        gateway_code: str,
        base_url: str,
        timeout: float = 15.0,
        max_attempts: int = 3,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.gateway_code = gateway_code
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.default_headers = default_headers or {}
        self.transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker(gateway_code)

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send a request with retry and circuit breaker protection.

        Args:
            operation: Logical operation name for logs and metrics
            method: HTTP method
            path: Path relative to base_url
            json: JSON body
            content: Pre-serialized body (when the exact bytes are signed)
            params: Query parameters
            headers: Extra headers

        Returns:
            Dict[str, Any]: Decoded JSON response

        Raises:
            UpstreamError: If the call ultimately fails
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(
                    self._send, operation, method, path,
                    json=json, content=content, params=params, headers=headers,
                )
        raise UpstreamError(  # pragma: no cover
            f"{self.gateway_code} {operation} exhausted retries",
            gateway_code=self.gateway_code,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Any],
        content: Optional[bytes],
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        start_time = time.time()
        merged_headers = {**self.default_headers, **(headers or {})}

        logger.info(
            "gateway_api_request",
            gateway=self.gateway_code,
            operation=operation,
            method=method,
            path=path,
        )

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method, path, json=json, content=content, params=params,
                    headers=merged_headers,
                )
                response.raise_for_status()
                body = response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            retryable = status_code >= 500 or status_code == 429
            self._record_failure(operation, start_time, retryable)
            logger.error(
                "gateway_api_error",
                gateway=self.gateway_code,
                operation=operation,
                status_code=status_code,
                body=e.response.text[:500],
            )
            raise UpstreamError(
                f"{self.gateway_code} {operation} returned {status_code}",
                retryable=retryable,
                gateway_code=self.gateway_code,
                status_code=status_code,
            ) from e

        except httpx.HTTPError as e:
            self._record_failure(operation, start_time, True)
            logger.error(
                "gateway_api_unreachable",
                gateway=self.gateway_code,
                operation=operation,
                error=str(e),
            )
            raise UpstreamError(
                f"{self.gateway_code} {operation} failed: {e}",
                retryable=True,
                gateway_code=self.gateway_code,
            ) from e

        except ValueError as e:
            self._record_failure(operation, start_time, False)
            raise UpstreamError(
                f"{self.gateway_code} {operation} returned invalid JSON",
                retryable=False,
                gateway_code=self.gateway_code,
            ) from e

        metrics.record_gateway_api_call(
            self.gateway_code, operation, "success", time.time() - start_time
        )
        if not isinstance(body, dict):
            raise UpstreamError(
                f"{self.gateway_code} {operation} returned unexpected body",
                retryable=False,
                gateway_code=self.gateway_code,
            )
        return body

    def _record_failure(self, operation: str, start_time: float, retryable: bool) -> None:
        metrics.record_gateway_api_call(
            self.gateway_code, operation, "error", time.time() - start_time
        )
        metrics.record_gateway_api_error(
            self.gateway_code, "retryable" if retryable else "permanent"
        )
