"""
Core HTTP client for the Atlassian REST APIs.

Handles authentication, request/response classification, throttling retries
and error handling.
"""

import http.client
import json
import logging
import math
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterator
from typing import Any

from atl_cli.core.types import (
    Failure,
    Outcome,
    RawResponse,
    Request,
    Success,
    Throttled,
    TransportFailure,
)

# Configuration
DEFAULT_TIMEOUT = 60
DEFAULT_RETRY_AFTER = 5.0
BODY_EXCERPT_LIMIT = 500

logger = logging.getLogger(__name__)


class CLIError(Exception):
    """Base error class for CLI errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        result: dict[str, Any] = {"error": self.message}
        if self.details:
            result["details"] = self.details
        return result


class HttpError(CLIError):
    """Non-2xx response, with the status code and a truncated body."""

    def __init__(self, status: int, body: str = "", message: str | None = None, limit: int = BODY_EXCERPT_LIMIT):
        self.status = status
        self.body = body[:limit]
        # 409 is authoritative; the message text is a best-effort second signal.
        self.conflict = status == 409 or "already exists" in body.lower()
        super().__init__(message or f"HTTP {status}: {self.body}", _error_details(body))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON output."""
        result = super().to_dict()
        result["status"] = self.status
        return result


class TransportError(CLIError):
    """Network-level failure: connection refused, DNS, TLS, timeout."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ConfigurationError(CLIError):
    """Missing domain or credentials. Raised before any network call."""


class ValidationError(CLIError):
    """Validation error for local input/data issues (not API errors)."""


def _error_details(body: str) -> dict[str, Any]:
    """Pull Atlassian error fields out of a JSON error body, if there is one."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return {}
    if not isinstance(data, dict):
        return {}
    # Confluence uses {"message": ...}; JIRA uses {"errorMessages": [...], "errors": {...}}
    return {k: data[k] for k in ("message", "errorMessages", "errors") if data.get(k)}


def parse_retry_after(value: str | None, default: float = DEFAULT_RETRY_AFTER) -> float:
    """Seconds to wait from a Retry-After header; falls back to ``default``."""
    if value is None:
        return default
    try:
        seconds = float(value.strip())
    except ValueError:
        return default
    if seconds < 0 or not math.isfinite(seconds):
        return default
    return seconds


def parse_payload(text: str) -> Any:
    """Parse a success body as JSON, or return it verbatim when it is not JSON."""
    if not text:
        return {"success": True}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def classify(response: RawResponse) -> Outcome:
    """Map a raw response onto exactly one outcome."""
    if 200 <= response.status < 300:
        return Success(parse_payload(response.text))
    if response.status == 429:
        return Throttled(parse_retry_after(response.header("Retry-After")), response.text)
    return Failure(response.status, response.text)


class APIClient:
    """
    Low-level HTTP client for the Atlassian Cloud REST APIs.

    Handles:
    - Authentication via a precomputed Basic auth token
    - HTTP methods (GET, POST, PUT, DELETE)
    - Retry with server-directed backoff on 429
    - Error handling and response parsing
    - Pagination for JIRA list endpoints
    """

    def __init__(
        self,
        base_url: str,
        auth: str,
        timeout: int = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the API client.

        Args:
            base_url: Site URL, e.g. https://your-org.atlassian.net
            auth: Basic auth token (base64 of email:api_token)
            timeout: Request timeout in seconds
            sleep: Called with the number of seconds to wait on a 429

        """
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.sleep = sleep

    def _ensure_auth(self) -> str:
        """Ensure credentials are configured."""
        if not self.auth:
            raise ConfigurationError("ATLASSIAN_EMAIL and ATLASSIAN_API_TOKEN not set.")
        return self.auth

    def _build_url(self, path: str) -> str:
        """Build full URL from path."""
        if path.startswith("http"):
            return path
        return f"{self.base_url}{path}"

    # =========================================================================
    # Transport
    # =========================================================================

    def send(
        self,
        method: str,
        path: str,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> RawResponse:
        """
        Send one HTTP request and return whatever came back.

        Non-2xx statuses are returned, not raised.

        Raises:
            TransportError: If no HTTP response was received

        """
        auth = self._ensure_auth()
        url = self._build_url(path)
        request_headers = {
            "Authorization": f"Basic {auth}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        logger.debug("%s %s", method, url)
        try:
            req = urllib.request.Request(url, data=body, headers=request_headers, method=method)
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return RawResponse(
                    status=response.status,
                    text=response.read().decode("utf-8", errors="replace"),
                    headers=dict(response.headers.items()),
                )

        except urllib.error.HTTPError as e:
            try:
                error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            except (http.client.HTTPException, OSError):
                error_body = ""
            return RawResponse(
                status=e.code,
                text=error_body,
                headers=dict(e.headers.items()) if e.headers else {},
            )

        except urllib.error.URLError as e:
            raise TransportError(f"Connection error: {e.reason}", cause=e)

        except TimeoutError as e:
            raise TransportError(f"Request timed out after {self.timeout} seconds", cause=e)

        except ConnectionError as e:
            raise TransportError(f"Connection error: {e}", cause=e)

        except (http.client.HTTPException, OSError) as e:
            raise TransportError(f"Connection error: {type(e).__name__}: {e}", cause=e)

    def attempt(self, request: Request) -> Outcome:
        """Make one attempt at a request and classify the result."""
        body = json.dumps(request.body).encode("utf-8") if request.body is not None else None
        try:
            response = self.send(request.method, request.path, body, request.headers)
        except TransportError as e:
            return TransportFailure(e)
        return classify(response)

    def execute(self, request: Request) -> Any:
        """
        Execute a request, waiting out 429s while the retry budget lasts.

        Args:
            request: The logical call; its ``retries`` is the retry budget

        Returns:
            Parsed JSON payload, or the raw body if it was not JSON

        Raises:
            HttpError: On any non-2xx status (429 only once the budget is spent)
            TransportError: On network failure (never retried)

        """
        while True:
            outcome = self.attempt(request)

            if isinstance(outcome, Success):
                return outcome.payload

            if isinstance(outcome, Throttled):
                if request.retries <= 0:
                    raise HttpError(429, outcome.body)
                logger.warning(
                    "Rate limited. Retrying in %ss... (%d retries left)",
                    f"{outcome.retry_after:g}",
                    request.retries,
                )
                self.sleep(outcome.retry_after)
                request = request.retry()
                continue

            if isinstance(outcome, TransportFailure):
                raise outcome.cause

            raise HttpError(outcome.status, outcome.body)

    # =========================================================================
    # HTTP Methods
    # =========================================================================

    def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        params: dict[str, Any] | None = None,
        retries: int | None = None,
    ) -> Any:
        """Build a Request and execute it."""
        return self.execute(self.build_request(method, path, data, params, retries))

    @staticmethod
    def build_request(
        method: str,
        path: str,
        data: Any = None,
        params: dict[str, Any] | None = None,
        retries: int | None = None,
    ) -> Request:
        """Build a Request, URL-encoding query params and dropping None values."""
        if params:
            filtered_params = {k: v for k, v in params.items() if v is not None}
            if filtered_params:
                query_string = urllib.parse.urlencode(filtered_params)
                separator = "&" if "?" in path else "?"
                path = f"{path}{separator}{query_string}"
        if retries is None:
            return Request(method, path, data)
        return Request(method, path, data, retries=retries)

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make a GET request."""
        return self.request("GET", path, params=params)

    def post(self, path: str, data: Any = None) -> Any:
        """Make a POST request."""
        return self.request("POST", path, data)

    def put(self, path: str, data: Any = None) -> Any:
        """Make a PUT request."""
        return self.request("PUT", path, data)

    def delete(self, path: str) -> Any:
        """Make a DELETE request."""
        return self.request("DELETE", path)

    # =========================================================================
    # Pagination
    # =========================================================================

    def paginate(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        items_key: str = "values",
        page_size: int = 50,
    ) -> Iterator[Any]:
        """
        Iterate through all pages of a JIRA-style paginated endpoint.

        Args:
            path: API path
            params: Extra query params
            items_key: Key holding the page's items ("values", "issues", ...)
            page_size: maxResults per page

        Yields:
            Items from all pages

        """
        start_at = 0

        while True:
            result = self.get(path, {**(params or {}), "startAt": start_at, "maxResults": page_size})

            data = result.get(items_key, []) if isinstance(result, dict) else []
            yield from data

            start_at += len(data)
            total = result.get("total") if isinstance(result, dict) else None

            if not data or result.get("isLast") or (total is not None and start_at >= total):
                break
