"""
HTTP client for upstream item shop providers.

Wraps httpx with timeouts, exponential-backoff retries for transient
failures, and per-attempt request telemetry. Both upstream providers wrap
their payload in a JSON body with its own ``status`` field, which is
checked in addition to the HTTP status.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .errors import PermanentRemoteError, RemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

RATE_LIMITED = 429

# Connection resets, timeouts and broken responses are worth retrying
TRANSIENT_HTTPX_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class TelemetrySink(Protocol):
    """Receives one record per HTTP attempt."""

    def record_request(
        self,
        endpoint: str,
        method: str,
        duration_ms: int,
        status_code: int,
        success: bool,
        error_message: str | None,
        request_bytes: int,
        response_bytes: int,
    ) -> None: ...


@dataclass
class RetryPolicy:
    """How many times to retry transient failures and how long to wait."""

    retries: int = 3
    backoff_base: float = 2.0

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.backoff_base**attempt


def is_transient_status(status: int) -> bool:
    """Whether an HTTP (or body-level) status code is worth retrying."""
    return status == RATE_LIMITED or status >= 500


class RemoteClient:
    """
    Client for one upstream JSON API.

    Provides a single ``fetch`` operation; callers own caching.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        telemetry: TelemetrySink | None = None,
        user_agent: str = "shop-tracker",
    ):
        """
        Initialize the client.

        Args:
            base_url: Provider base URL, e.g. "https://fnbr.co/api"
            api_key: Optional API key sent in ``api_key_header``
            api_key_header: Header name for the API key
            timeout_seconds: Per-request timeout
            retry_policy: Default policy when ``fetch`` is given none
            telemetry: Optional sink receiving one record per attempt
            user_agent: User-Agent header value
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.telemetry = telemetry
        self.headers = {"User-Agent": user_agent}
        if api_key:
            self.headers[api_key_header] = api_key

    async def fetch(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        """
        GET ``endpoint`` and return the decoded JSON body.

        Transient failures are retried with exponential backoff. When the
        retry budget runs out the last error is re-raised as a
        PermanentRemoteError; permanent failures are raised immediately.
        """
        policy = retry_policy or self.retry_policy
        max_attempts = policy.retries + 1
        last_error: TransientRemoteError | None = None

        for attempt in range(1, max_attempts + 1):
            logger.debug(f"Making request to {endpoint} (attempt {attempt})")
            try:
                data = await self._attempt(endpoint, params)
                logger.debug(f"Successfully fetched data from {endpoint}")
                return data
            except TransientRemoteError as e:
                last_error = e
                if attempt >= max_attempts:
                    break
                delay = policy.backoff(attempt)
                logger.warning(
                    f"Request to {endpoint} failed (attempt {attempt}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            except PermanentRemoteError as e:
                logger.warning(f"Request to {endpoint} failed permanently: {e}")
                raise

        assert last_error is not None
        raise PermanentRemoteError(
            f"{endpoint} failed after {max_attempts} attempts: {last_error}",
            status_code=last_error.status_code,
            attempts=max_attempts,
        ) from last_error

    async def _attempt(self, endpoint: str, params: dict[str, Any] | None) -> dict[str, Any]:
        """Make exactly one request and report it to telemetry."""
        start = time.monotonic()
        status_code = 0
        response_bytes = 0
        request_bytes = len(str(httpx.QueryParams(params or {})))
        error: Exception | None = None
        succeeded = False

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
            ) as client:
                response = await client.get(endpoint, params=params)
            status_code = response.status_code
            response_bytes = len(response.content)
            data = self._check_response(response)
            succeeded = True
            return data
        except RemoteError as e:
            error = e
            raise
        except TRANSIENT_HTTPX_ERRORS as e:
            error = TransientRemoteError(f"{type(e).__name__}: {e}")
            raise error from e
        except httpx.HTTPError as e:
            error = PermanentRemoteError(f"{type(e).__name__}: {e}")
            raise error from e
        except Exception as e:
            error = e
            raise
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._report(
                endpoint,
                duration_ms,
                status_code,
                succeeded,
                str(error) if error else None,
                request_bytes,
                response_bytes,
            )

    def _check_response(self, response: httpx.Response) -> dict[str, Any]:
        """Classify the HTTP status and the body status field."""
        status = response.status_code
        if is_transient_status(status):
            raise TransientRemoteError(f"HTTP {status}", status_code=status)
        if status >= 400:
            raise PermanentRemoteError(f"HTTP {status}", status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise PermanentRemoteError(f"Malformed JSON response: {e}", status_code=status) from e

        if not isinstance(data, dict):
            raise PermanentRemoteError(
                "Malformed response: expected a JSON object", status_code=status
            )

        body_status = data.get("status", 200)
        if body_status != 200:
            message = f"API returned status {body_status}: {data.get('error') or 'Unknown error'}"
            if isinstance(body_status, int) and is_transient_status(body_status):
                raise TransientRemoteError(message, status_code=body_status)
            raise PermanentRemoteError(
                message,
                status_code=body_status if isinstance(body_status, int) else status,
            )

        return data

    def _report(
        self,
        endpoint: str,
        duration_ms: int,
        status_code: int,
        success: bool,
        error_message: str | None,
        request_bytes: int,
        response_bytes: int,
    ) -> None:
        """Send one attempt to telemetry. Never raises."""
        if self.telemetry is None:
            return
        try:
            self.telemetry.record_request(
                endpoint,
                "GET",
                duration_ms,
                status_code,
                success,
                error_message,
                request_bytes,
                response_bytes,
            )
        except Exception:
            logger.warning(f"Failed to record API request telemetry for {endpoint}", exc_info=True)
