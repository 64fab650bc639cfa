from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import httpx
from curl_cffi import CurlError, CurlMime
from curl_cffi import requests as curl_requests

from .constants import CURL_IMPERSONATE, HEADER_PROFILES, USER_AGENT
from .debug import debug_print
from .errors import classify_exception
from .schema import CookieBundle


@dataclass
class MultipartFile:
    field_name: str
    file_name: str
    content_type: str
    data: bytes


def get_curl_impersonate(configured: Optional[str] = None, user_agent: str = USER_AGENT) -> str:
    """Choose a curl_cffi impersonation profile aligned with the advertised User-Agent."""
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    ua = (user_agent or "").lower()
    if "edg" in ua:
        return "edge"
    if "firefox" in ua or ("gecko" in ua and "chrome" not in ua and "edg" not in ua):
        return "firefox"
    if "safari" in ua and "chrome" not in ua:
        return "safari"
    return CURL_IMPERSONATE


def cookies_from_jar(cookies) -> Dict[str, str]:
    """Flatten an httpx / curl_cffi cookie container into name -> value."""
    jar = getattr(cookies, "jar", None)
    if jar is None:
        return {}
    return {cookie.name: cookie.value for cookie in jar if cookie.value is not None}


class TransportResponse:
    """The parts of an upstream response the rest of the library looks at."""

    def __init__(self, status_code: int, headers, cookies: Dict[str, str], raw, url: str = ""):
        self.status_code = status_code
        self.headers = headers
        self.cookies = cookies
        self.url = url
        self._raw = raw

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("location")

    @property
    def content_type(self) -> str:
        return (self.headers.get("content-type") or "").lower()

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        if hasattr(self._raw, "aiter_bytes"):
            async for chunk in self._raw.aiter_bytes():
                yield chunk
        else:
            async for chunk in self._raw.aiter_content():
                yield chunk

    async def aread(self) -> bytes:
        if hasattr(self._raw, "aread"):
            return await self._raw.aread()
        if hasattr(self._raw, "acontent"):
            return await self._raw.acontent()
        return b""

    async def atext(self) -> str:
        return (await self.aread()).decode("utf-8", errors="replace")


class Transport:
    """
    Browser-imitating HTTPS client shared by everything an engine sends.

    By default requests go through curl_cffi with a Chrome TLS fingerprint.
    Passing ``client`` (an ``httpx.AsyncClient``) routes them through httpx
    instead, which is how proxies without impersonation and tests plug in.

    Cookies are always sent from the caller's bundle as an explicit ``Cookie``
    header; Set-Cookie values come back on the response and the backend jar is
    emptied so no second copy of the credentials lingers. Redirects are never
    followed and nothing is retried here.
    """

    def __init__(
        self,
        *,
        impersonate: Optional[str] = None,
        proxy: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.impersonate = get_curl_impersonate(impersonate)
        self.proxy = proxy
        self._client = client
        self._session = None
        self._closed = False

    @property
    def backend(self) -> str:
        return "httpx" if self._client is not None else "curl_cffi"

    def _get_session(self):
        if self._session is None:
            self._session = curl_requests.AsyncSession(impersonate=self.impersonate, proxy=self.proxy)
        return self._session

    @staticmethod
    def build_headers(
        profile: str,
        cookies: Optional[CookieBundle] = None,
        extra: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        headers = HEADER_PROFILES[profile]()
        if extra:
            headers.update(extra)
        if cookies is not None:
            cookie_header = cookies.cookie_header()
            if cookie_header:
                headers["Cookie"] = cookie_header
        return headers

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        endpoint: str,
        profile: str = "xhr",
        cookies: Optional[CookieBundle] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[dict] = None,
        data=None,
        multipart: Optional[MultipartFile] = None,
        timeout: Optional[float] = None,
    ):
        if self._closed:
            raise RuntimeError("transport is closed")
        request_headers = self.build_headers(profile, cookies, headers)
        debug_print(f"📡 {method} {endpoint} via {self.backend}")

        if self._client is not None:
            async with self._stream_httpx(
                method, url, endpoint, request_headers, params, data, multipart, timeout
            ) as response:
                yield response
        else:
            async with self._stream_curl(
                method, url, endpoint, request_headers, params, data, multipart, timeout
            ) as response:
                yield response

    @asynccontextmanager
    async def _stream_httpx(self, method, url, endpoint, headers, params, data, multipart, timeout):
        kwargs = {"headers": headers}
        if params:
            kwargs["params"] = params
        if isinstance(data, (str, bytes)):
            kwargs["content"] = data
        elif data is not None:
            kwargs["data"] = data
        if multipart is not None:
            kwargs["files"] = {
                multipart.field_name: (multipart.file_name, multipart.data, multipart.content_type)
            }
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            async with self._client.stream(method, url, **kwargs) as response:
                self._client.cookies.clear()
                yield TransportResponse(
                    response.status_code,
                    response.headers,
                    cookies_from_jar(response.cookies),
                    response,
                    str(response.url),
                )
        except httpx.HTTPError as e:
            raise classify_exception(e, endpoint) from e

    @asynccontextmanager
    async def _stream_curl(self, method, url, endpoint, headers, params, data, multipart, timeout):
        session = self._get_session()
        kwargs = {
            "headers": headers,
            "allow_redirects": False,
            "stream": True,
        }
        if params:
            kwargs["params"] = params
        if data is not None:
            kwargs["data"] = data
        if timeout is not None:
            kwargs["timeout"] = timeout

        mime = None
        if multipart is not None:
            mime = CurlMime()
            mime.addpart(
                name=multipart.field_name,
                content_type=multipart.content_type,
                filename=multipart.file_name,
                data=multipart.data,
            )
            kwargs["multipart"] = mime

        try:
            response = await session.request(method, url, **kwargs)
            try:
                session.cookies.clear()
                yield TransportResponse(
                    response.status_code,
                    response.headers,
                    cookies_from_jar(response.cookies),
                    response,
                    str(response.url),
                )
            finally:
                await response.aclose()
        except CurlError as e:
            raise classify_exception(e, endpoint) from e
        finally:
            if mime is not None:
                mime.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._session is not None:
            await self._session.close()
            self._session = None
        if self._client is not None:
            await self._client.aclose()
