import json
import re
from dataclasses import dataclass
from typing import Optional

from .constants import ENDPOINT_INIT, PRIMARY_COOKIE, TAG_INIT
from .debug import debug_print, log_http_status
from .errors import ErrorKind, GeminiError, is_blocking_redirect
from .schema import CookieBundle
from .transport import Transport

# Values are JSON string literals embedded in the landing page's WIZ_global_data.
_JSON_STRING = r'"((?:[^"\\]|\\.)*)"'
ACCESS_TOKEN_RE = re.compile(r'"SNlM0e"\s*:\s*' + _JSON_STRING)
BUILD_LABEL_RE = re.compile(r'"cfb2h"\s*:\s*' + _JSON_STRING)
SESSION_ID_RE = re.compile(r'"FdrFJe"\s*:\s*' + _JSON_STRING)

CONSENT_MARKERS = (
    'action="https://consent.google.com',
    "consent.google.com/save",
    "https://consent.google.com/ml",
)


@dataclass
class BootstrapResult:
    access_token: str
    cookies: CookieBundle
    build_label: Optional[str] = None
    session_id: Optional[str] = None


def _extract(pattern: re.Pattern, html: str) -> Optional[str]:
    match = pattern.search(html)
    if not match:
        return None
    raw = match.group(1)
    try:
        value = json.loads(f'"{raw}"')
    except ValueError:
        value = raw
    value = value.strip()
    return value or None


def extract_access_token(html: str) -> Optional[str]:
    return _extract(ACCESS_TOKEN_RE, html)


def extract_build_label(html: str) -> Optional[str]:
    return _extract(BUILD_LABEL_RE, html)


def extract_session_id(html: str) -> Optional[str]:
    return _extract(SESSION_ID_RE, html)


def is_consent_page(html: str) -> bool:
    return any(marker in html for marker in CONSENT_MARKERS)


async def fetch_access_token(
    transport: Transport,
    cookies: CookieBundle,
    *,
    timeout: Optional[float] = None,
) -> BootstrapResult:
    """
    Load the landing page the way a browser navigation would and pull the
    per-session access token out of it.

    Set-Cookie values returned by the page are merged into the bundle; the
    returned bundle supersedes the one passed in.

    Raises:
        GeminiError(AUTH) when the cookies are not accepted (401, sign-in or
        any other redirect, consent interstitial, token missing from the page).
        GeminiError(NETWORK) when redirected to the IP blocking page.
    """
    if not cookies.primary:
        raise GeminiError(ErrorKind.AUTH, f"missing {PRIMARY_COOKIE} cookie", endpoint=TAG_INIT)

    async with transport.stream(
        "GET",
        ENDPOINT_INIT,
        endpoint=TAG_INIT,
        profile="document",
        cookies=cookies,
        timeout=timeout,
    ) as response:
        log_http_status(response.status_code, "Landing page")
        updated = cookies.merged_with(response.cookies)
        status = response.status_code

        if status == 401:
            raise GeminiError(ErrorKind.AUTH, "cookies rejected", endpoint=TAG_INIT, status=status)
        if 300 <= status < 400:
            location = response.location or ""
            if is_blocking_redirect(location):
                raise GeminiError(
                    ErrorKind.NETWORK,
                    "redirected to the blocking page; this IP is temporarily blocked",
                    endpoint=TAG_INIT,
                    status=status,
                )
            raise GeminiError(
                ErrorKind.AUTH,
                f"redirected to {location or 'an unknown location'}; cookies are not signed in",
                endpoint=TAG_INIT,
                status=status,
            )
        if status != 200:
            body = await response.atext()
            raise GeminiError(
                ErrorKind.AUTH, f"unexpected landing page status {status}", endpoint=TAG_INIT, status=status, body=body
            )

        html = await response.atext()

    if is_consent_page(html):
        raise GeminiError(ErrorKind.AUTH, "landing page is a consent interstitial", endpoint=TAG_INIT)

    token = extract_access_token(html)
    if not token:
        raise GeminiError(
            ErrorKind.AUTH,
            "access token not found on the landing page; cookies are probably expired",
            endpoint=TAG_INIT,
            body=html,
        )

    debug_print("🔑 Access token acquired")
    return BootstrapResult(
        access_token=token,
        cookies=updated,
        build_label=extract_build_label(html),
        session_id=extract_session_id(html),
    )
