from __future__ import annotations

from typing import Any

import httpx
import structlog
from circuitbreaker import circuit

logger = structlog.get_logger()


class RetryableHTTPError(Exception):
    """HTTP errors that may succeed on a later attempt."""


class PermanentHTTPError(Exception):
    """HTTP errors that will not succeed on retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(status_code: int) -> bool:
    """Determine if HTTP status code is retryable."""
    return status_code in (408, 429, 500, 502, 503, 504)


class BaseHTTPClient:
    """Base HTTP client with a per-instance circuit breaker.

    Retries are left to the caller so that one retry policy applies end to
    end; see ActionExecutor.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        circuit_failure_threshold: int = 5,
        circuit_recovery_timeout: int = 60,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._request = circuit(
            failure_threshold=circuit_failure_threshold,
            recovery_timeout=circuit_recovery_timeout,
            expected_exception=RetryableHTTPError,
            name=f"{type(self).__name__}:{self._base_url}:{id(self)}",
        )(self._send)

    def _headers(self) -> dict[str, str]:
        """Override to provide custom headers."""
        return {"Content-Type": "application/json"}

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute one HTTP request, classifying failures as retryable or permanent."""
        url = f"{self._base_url}{path}"
        req_headers = self._headers()
        if headers:
            req_headers.update(headers)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=req_headers,
                )

                if is_retryable_status(response.status_code):
                    logger.warning(
                        "http_retryable_error",
                        status=response.status_code,
                        method=method,
                        url=url,
                    )
                    raise RetryableHTTPError(f"HTTP {response.status_code}: {response.text}")

                response.raise_for_status()
                return response.json() if response.content else {}

        except httpx.HTTPStatusError as exc:
            logger.error(
                "http_permanent_error",
                status=exc.response.status_code,
                method=method,
                url=url,
                error=str(exc),
            )
            raise PermanentHTTPError(str(exc), status_code=exc.response.status_code) from exc
        except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as exc:
            logger.warning("http_network_error", method=method, url=url, error=str(exc))
            raise RetryableHTTPError(str(exc)) from exc

    async def post(
        self,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute POST request."""
        return await self._request("POST", path, json=json, headers=headers)
