import logging
from typing import Any, Dict, Optional

import requests

from tubesync.domain.errors import (
    ApiError, DataError, InvalidTokenError, NotFoundError, RateLimited, TransientNetworkError
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15
DEFAULT_RETRY_AFTER_MS = 1000

# Google error reasons that mean "slow down" rather than "stop"
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def parse_retry_after(headers: Optional[Dict[str, str]]) -> int:
    """Convert a Retry-After header (seconds) into milliseconds."""
    if not headers:
        return DEFAULT_RETRY_AFTER_MS
    value = headers.get('Retry-After') or headers.get('retry-after')
    if value is None:
        return DEFAULT_RETRY_AFTER_MS
    try:
        return max(0, int(float(value) * 1000))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_MS


def _error_details(response: requests.Response) -> tuple:
    """Extract (message, reasons) from a JSON error body, tolerating any shape."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or '')[:200], set()

    error = body.get('error') if isinstance(body, dict) else None
    if isinstance(error, dict):
        reasons = {e.get('reason') for e in error.get('errors', []) if isinstance(e, dict)}
        return error.get('message', ''), reasons
    if isinstance(error, str):
        return body.get('error_description') or error, {error}
    return str(body)[:200], set()


def check_response(response: requests.Response, operation: str) -> None:
    """Map a non-2xx response to the error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return

    message, reasons = _error_details(response)
    if status == 401:
        raise InvalidTokenError(f"{operation}: access token rejected ({message})")
    if status == 429 or reasons & _RATE_LIMIT_REASONS:
        raise RateLimited(
            retry_after_ms=parse_retry_after(response.headers),
            message=f"{operation}: rate limited ({message})",
        )
    if status >= 500:
        raise TransientNetworkError(f"{operation}: server error {status} ({message})")
    if status == 404:
        raise NotFoundError(f"{operation}: not found ({message})")
    raise ApiError(f"{operation}: HTTP {status} ({message})", status_code=status)


def send(http: requests.Session, method: str, url: str, operation: str,
         timeout: float = DEFAULT_TIMEOUT_SEC, **kwargs) -> Dict[str, Any]:
    """Perform a request and return its decoded JSON body.

    Raises:
        TransientNetworkError: on timeouts, connection failures and 5xx
        InvalidTokenError: on 401
        NotFoundError: on 404
        ApiError: on other non-2xx statuses
        DataError: when the body is not a JSON object
    """
    try:
        response = http.request(method, url, timeout=timeout, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as e:
        raise TransientNetworkError(f"{operation}: {e}") from e

    check_response(response, operation)

    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as e:
        raise DataError(f"{operation}: response is not JSON") from e
    if not isinstance(payload, dict):
        raise DataError(f"{operation}: expected a JSON object, got {type(payload).__name__}")
    return payload
