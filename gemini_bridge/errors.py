import asyncio
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

import httpx
from curl_cffi.requests.exceptions import Timeout as CurlTimeout

from .constants import ERROR_BODY_LIMIT, KnownErrorCode


class ErrorKind(str, Enum):
    OK = "OK"
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    RATE_LIMIT_SELF = "RATE_LIMIT_SELF"
    BLOCKED = "BLOCKED"
    MODEL_INVALID = "MODEL_INVALID"
    ANTIBOT = "ANTIBOT"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    PARSE = "PARSE"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    UPLOAD = "UPLOAD"
    UNKNOWN = "UNKNOWN"


USER_MESSAGES = {
    ErrorKind.AUTH: "Session expired, re-authenticate (refresh your cookies).",
    ErrorKind.RATE_LIMIT: "Usage limit reached for this model. Wait a while or switch models.",
    ErrorKind.RATE_LIMIT_SELF: "Cookie refresh was attempted too recently. Try again in a minute.",
    ErrorKind.BLOCKED: "The response was withheld by the service's content policy.",
    ErrorKind.MODEL_INVALID: "The selected model is not available for this account. Switch models.",
    ErrorKind.ANTIBOT: "The service demanded a challenge that requires a real browser.",
    ErrorKind.TIMEOUT: "The request timed out. This is usually transient; try again.",
    ErrorKind.NETWORK: "Network error talking to the service. This is usually transient; try again.",
    ErrorKind.PARSE: "Could not parse the service response. Capture the response body and report it.",
    ErrorKind.EMPTY_RESPONSE: "The service returned an empty response.",
    ErrorKind.UPLOAD: "File upload failed.",
    ErrorKind.UNKNOWN: "The service returned an unexpected error.",
}


class GeminiError(Exception):
    """
    Every failure surfaced by the library.

    The error is a tagged value: ``kind`` says what happened, the optional
    fields carry what is known about where (``endpoint``), the HTTP
    ``status``, the service's inner ``code`` and a truncated response ``body``.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        endpoint: str = "",
        status: Optional[int] = None,
        code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.kind = ErrorKind(kind)
        self.message = message
        self.endpoint = endpoint
        self.status = status
        self.code = code
        self.body = truncate_body(body)
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.endpoint:
            parts.append(f"{self.endpoint}:")
        parts.append(self.message)
        if self.status is not None:
            parts.append(f"(status={self.status})")
        if self.code is not None:
            parts.append(f"(code={self.code})")
        return " ".join(parts)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.kind, self.message)


def truncate_body(body) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode("utf-8", errors="replace")
    body = str(body)
    if len(body) > ERROR_BODY_LIMIT:
        return body[:ERROR_BODY_LIMIT] + "..."
    return body


def should_refresh(error: BaseException) -> bool:
    """Only an authentication failure is worth a credential refresh and one retry."""
    return isinstance(error, GeminiError) and error.kind == ErrorKind.AUTH


def is_accounts_redirect(location: Optional[str]) -> bool:
    if not location:
        return False
    host = urlparse(location).hostname or ""
    return host == "accounts.google.com" or host.endswith(".accounts.google.com")


def is_blocking_redirect(location: Optional[str]) -> bool:
    if not location:
        return False
    return "/sorry/" in urlparse(location).path


def classify_http_status(
    status: int,
    endpoint: str,
    *,
    body=None,
    location: Optional[str] = None,
) -> Optional[GeminiError]:
    """Map an HTTP status to an error, or None when the status is a success."""
    if 200 <= status < 300:
        return None
    if status == 401:
        return GeminiError(ErrorKind.AUTH, "credentials rejected", endpoint=endpoint, status=status, body=body)
    if 300 <= status < 400:
        if is_blocking_redirect(location):
            return GeminiError(
                ErrorKind.NETWORK,
                "redirected to the blocking page; this IP is temporarily blocked",
                endpoint=endpoint,
                status=status,
                body=body,
            )
        if is_accounts_redirect(location):
            return GeminiError(
                ErrorKind.AUTH, "redirected to the sign-in page", endpoint=endpoint, status=status, body=body
            )
        return GeminiError(
            ErrorKind.UNKNOWN, f"unexpected redirect to {location or '?'}", endpoint=endpoint, status=status, body=body
        )
    if status == 429:
        return GeminiError(ErrorKind.RATE_LIMIT, "too many requests", endpoint=endpoint, status=status, body=body)
    return GeminiError(ErrorKind.UNKNOWN, f"unexpected HTTP status {status}", endpoint=endpoint, status=status, body=body)


def classify_error_code(code, endpoint: str, *, model_name: str = "") -> GeminiError:
    """Map a numeric code found inside a response frame to an error."""
    known = KnownErrorCode.from_code(code)
    try:
        raw = int(code)
    except (TypeError, ValueError):
        raw = None

    if known == KnownErrorCode.USAGE_LIMIT:
        return GeminiError(
            ErrorKind.RATE_LIMIT,
            f"usage limit exceeded for model {model_name or 'default'}",
            endpoint=endpoint,
            code=raw,
        )
    if known == KnownErrorCode.MODEL_INCONSISTENT:
        return GeminiError(
            ErrorKind.MODEL_INVALID,
            "model is inconsistent with the chat history; start a new chat",
            endpoint=endpoint,
            code=raw,
        )
    if known == KnownErrorCode.MODEL_HEADER_INVALID:
        return GeminiError(
            ErrorKind.MODEL_INVALID,
            f"model {model_name or 'default'} is unavailable or its header is invalid",
            endpoint=endpoint,
            code=raw,
        )
    if known == KnownErrorCode.IP_BLOCKED:
        return GeminiError(ErrorKind.NETWORK, "IP temporarily blocked by the service", endpoint=endpoint, code=raw)
    if known == KnownErrorCode.ANTIBOT_CHALLENGE:
        return GeminiError(
            ErrorKind.ANTIBOT, "service requested an anti-bot verification token", endpoint=endpoint, code=raw
        )
    return GeminiError(ErrorKind.UNKNOWN, f"service returned error code {code}", endpoint=endpoint, code=raw)


def classify_exception(exc: BaseException, endpoint: str) -> GeminiError:
    """Wrap a transport failure. Timeouts become TIMEOUT, everything else NETWORK."""
    if isinstance(exc, GeminiError):
        return exc
    if _is_timeout(exc):
        return GeminiError(ErrorKind.TIMEOUT, f"request timed out: {exc or type(exc).__name__}", endpoint=endpoint)
    return GeminiError(ErrorKind.NETWORK, f"{type(exc).__name__}: {exc}", endpoint=endpoint)


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    return isinstance(exc, (httpx.TimeoutException, CurlTimeout))


async def with_deadline(awaitable, seconds: Optional[float], endpoint: str):
    """Await ``awaitable`` but give up with TIMEOUT after ``seconds``."""
    if not seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except asyncio.TimeoutError as e:
        raise GeminiError(ErrorKind.TIMEOUT, f"no answer within {seconds:g}s", endpoint=endpoint) from e
