import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from .bootstrap import BootstrapResult, fetch_access_token
from .config import EngineOptions
from .constants import (
    DEFAULT_BUILD_LABEL,
    ENDPOINT_ROTATE_COOKIES,
    EXTERNAL_REFRESH_MIN_GAP_SECONDS,
    MODEL_UNSPECIFIED,
    ROTATE_COOKIES_BODY,
    ROTATION_BACKOFF_CAP_SECONDS,
    ROTATION_MIN_GAP_SECONDS,
    ROTATOR_COOKIE,
    TAG_INIT,
    TAG_ROTATE,
)
from .cookie_store import CookieStore
from .debug import debug_print, log_http_status
from .errors import ErrorKind, GeminiError, classify_http_status, should_refresh, with_deadline
from .rwlock import AsyncRWLock
from .schema import CookieBundle, ModelDescriptor
from .transport import Transport

TAG_EXTERNAL_REFRESH = "external-refresh"

ExternalCookieSource = Callable[[str], Union[CookieBundle, dict, list, Awaitable[Union[CookieBundle, dict, list]]]]

# Errors worth another rotation attempt before the next tick.
_TRANSIENT_ROTATION_ERRORS = (ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT)


def get_rotation_backoff_seconds(attempt: int) -> int:
    return max(1, min(2 ** attempt, ROTATION_BACKOFF_CAP_SECONDS))


@dataclass(frozen=True)
class CredentialSnapshot:
    cookies: CookieBundle
    access_token: str
    model: ModelDescriptor
    build_label: str
    session_id: Optional[str] = None


class CredentialManager:
    """
    Owns the cookie bundle, the access token and the selected model.

    All three sit behind one reader-writer lock. Requests take consistent
    snapshots on the read side; installing a refreshed bundle, a rotated
    cookie or a new model takes the write side. Network I/O never happens
    while the write side is held.
    """

    def __init__(
        self,
        transport: Transport,
        cookies: Optional[CookieBundle] = None,
        *,
        model: ModelDescriptor = MODEL_UNSPECIFIED,
        options: Optional[EngineOptions] = None,
        cookie_source: Optional[ExternalCookieSource] = None,
        cookie_store: Optional[CookieStore] = None,
        on_stale: Optional[Callable[[CookieBundle], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._cookies = cookies.copy() if cookies is not None else CookieBundle()
        self._access_token = ""
        self._model = model
        self._build_label = DEFAULT_BUILD_LABEL
        self._session_id: Optional[str] = None
        self._options = options or EngineOptions()
        self._cookie_source = cookie_source
        self._cookie_store = cookie_store
        self._on_stale = on_stale
        self._clock = clock

        self._lock = AsyncRWLock()
        self._refresh_lock = asyncio.Lock()
        self._rotation_lock = asyncio.Lock()
        self._last_rotation: Optional[float] = None
        self._last_external_refresh: Optional[float] = None
        self._refresh_generation = 0
        self._rotation_task: Optional[asyncio.Task] = None
        self._closed = False

        self.stale = False
        self.rotation_count = 0

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def cookies(self) -> CookieBundle:
        return self._cookies.copy()

    @property
    def access_token(self) -> str:
        return self._access_token

    @property
    def model(self) -> ModelDescriptor:
        return self._model

    @property
    def build_label(self) -> str:
        return self._build_label

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rotation_running(self) -> bool:
        return self._rotation_task is not None and not self._rotation_task.done()

    @property
    def external_refresh_enabled(self) -> bool:
        return bool(self._options.external_refresh and self._cookie_source is not None)

    async def snapshot(self) -> CredentialSnapshot:
        async with self._lock.read():
            return CredentialSnapshot(
                cookies=self._cookies.copy(),
                access_token=self._access_token,
                model=self._model,
                build_label=self._build_label,
                session_id=self._session_id,
            )

    async def set_model(self, model: ModelDescriptor) -> None:
        async with self._lock.write():
            self._model = model
        debug_print(f"🤖 Model set to {model.name}")

    # ------------------------------------------------------------------
    # Bootstrap / token
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        try:
            async with self._lock.read():
                cookies = self._cookies.copy()
            result = await self._bootstrap(cookies)
        except GeminiError as e:
            if not should_refresh(e) or not self.external_refresh_enabled:
                raise
            debug_print(f"⚠️  Bootstrap failed ({e.message}); pulling fresh cookies from the external source")
            await self.refresh_from_external_source(enforce_rate_limit=False)
        else:
            await self._install(result)

        if self._options.auto_refresh_rotation:
            self.start_rotation()

    async def refetch_access_token(self) -> str:
        """
        Re-run bootstrap with the current cookies and install the new token.

        Shares the refresh mutex with external refreshes. A caller that waited
        while another refresh succeeded gets that token without a second
        landing-page fetch.
        """
        generation = self._refresh_generation
        async with self._refresh_lock:
            if self._refresh_generation != generation:
                debug_print("♻️  Reusing the access token from a refresh that just finished")
                async with self._lock.read():
                    return self._access_token

            async with self._lock.read():
                cookies = self._cookies.copy()
            result = await self._bootstrap(cookies)
            await self._install(result)
            self._refresh_generation += 1
            return result.access_token

    async def _bootstrap(self, cookies: CookieBundle) -> BootstrapResult:
        timeout = self._options.timeouts.bootstrap
        return await with_deadline(
            fetch_access_token(self._transport, cookies, timeout=timeout),
            timeout,
            TAG_INIT,
        )

    async def _install(self, result: BootstrapResult) -> None:
        if not result.access_token:
            raise GeminiError(ErrorKind.AUTH, "refusing to install an empty access token", endpoint=TAG_INIT)
        async with self._lock.write():
            self._cookies = result.cookies.copy()
            self._access_token = result.access_token
            if result.build_label:
                self._build_label = result.build_label
            if result.session_id:
                self._session_id = result.session_id
            self.stale = False

    # ------------------------------------------------------------------
    # Cookie rotation
    # ------------------------------------------------------------------

    async def rotate(self) -> bool:
        """
        Ask the accounts host for a fresh rotating cookie.

        Returns True when a new value was installed and False when the call
        was skipped because a rotation was attempted within the minimum gap
        (or the server answered without a new cookie). Failed attempts count
        towards the gap too.
        """
        async with self._rotation_lock:
            now = self._clock()
            if self._last_rotation is not None and now - self._last_rotation < ROTATION_MIN_GAP_SECONDS:
                debug_print("⏭️  Cookie rotation skipped, attempted recently")
                return False

            async with self._lock.read():
                cookies = self._cookies.copy()

            self._last_rotation = now
            async with self._transport.stream(
                "POST",
                ENDPOINT_ROTATE_COOKIES,
                endpoint=TAG_ROTATE,
                cookies=cookies,
                headers={"Content-Type": "application/json"},
                data=ROTATE_COOKIES_BODY,
                timeout=self._options.timeouts.refresh,
            ) as response:
                log_http_status(response.status_code, "RotateCookies")
                status = response.status_code
                set_cookies = dict(response.cookies)
                if status == 401:
                    self._mark_stale(cookies)
                    raise GeminiError(
                        ErrorKind.AUTH, "rotation rejected; cookies are stale", endpoint=TAG_ROTATE, status=status
                    )
                if status >= 500:
                    raise GeminiError(
                        ErrorKind.NETWORK,
                        f"rotation failed with server error {status}",
                        endpoint=TAG_ROTATE,
                        status=status,
                        body=await response.atext(),
                    )
                error = classify_http_status(status, TAG_ROTATE, location=response.location)
                if error is not None:
                    raise error

            new_rotator = set_cookies.get(ROTATOR_COOKIE)
            if not new_rotator:
                debug_print("⚠️  RotateCookies answered without a new cookie")
                return False

            async with self._lock.write():
                self._cookies = self._cookies.merged_with(set_cookies)
            self.rotation_count += 1
            debug_print("🔄 Rotated session cookie")
            return True

    def _mark_stale(self, cookies: CookieBundle) -> None:
        self.stale = True
        debug_print("🔒 Cookie bundle marked stale")
        if self._on_stale is not None:
            try:
                self._on_stale(cookies)
            except Exception as e:
                debug_print(f"⚠️  Stale-cookie callback failed: {e}")

    def _rotation_gate_remaining(self) -> float:
        if self._last_rotation is None:
            return 0.0
        return max(0.0, ROTATION_MIN_GAP_SECONDS - (self._clock() - self._last_rotation))

    def start_rotation(self) -> None:
        if self._closed or self.rotation_running:
            return
        self._rotation_task = asyncio.create_task(self._rotation_loop(), name="gemini-cookie-rotation")

    async def _rotation_loop(self) -> None:
        interval = self._options.rotation_interval
        next_tick = self._clock() + interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - self._clock()))
            # Schedule from the tick start so retries don't drift the cadence.
            next_tick = self._clock() + interval
            await self.rotation_tick(deadline=next_tick)

    async def rotation_tick(self, deadline: Optional[float] = None) -> bool:
        attempt = 0
        while True:
            try:
                return await self.rotate()
            except GeminiError as e:
                if e.kind not in _TRANSIENT_ROTATION_ERRORS:
                    debug_print(f"❌ Cookie rotation failed: {e}")
                    return False
                # Retries never land inside the rotation gap.
                delay = max(get_rotation_backoff_seconds(attempt), self._rotation_gate_remaining())
                attempt += 1
                if deadline is not None and self._clock() + delay >= deadline:
                    debug_print(f"⚠️  Cookie rotation failed ({e.kind.value}); giving up until the next tick")
                    return False
                debug_print(f"⏱️  Cookie rotation failed ({e.kind.value}); retrying in {delay:.0f}s")
                await asyncio.sleep(delay)
            except Exception as e:
                debug_print(f"❌ Cookie rotation failed unexpectedly: {type(e).__name__}: {e}")
                return False

    # ------------------------------------------------------------------
    # External refresh
    # ------------------------------------------------------------------

    async def refresh_from_external_source(self, *, enforce_rate_limit: bool = True) -> None:
        """
        Replace the cookie bundle with one pulled from the external source.

        Refreshes are serialised. A caller that waited while another refresh
        succeeded reuses that result instead of starting a new one.

        Raises:
            GeminiError(RATE_LIMIT_SELF) if the previous attempt was under a minute ago.
            GeminiError(AUTH) if the source fails or yields cookies the service rejects.
        """
        if self._cookie_source is None:
            raise GeminiError(ErrorKind.AUTH, "no external cookie source configured", endpoint=TAG_EXTERNAL_REFRESH)

        generation = self._refresh_generation
        async with self._refresh_lock:
            if self._refresh_generation != generation:
                debug_print("♻️  Reusing cookies from a refresh that just finished")
                return

            now = self._clock()
            if (
                enforce_rate_limit
                and self._last_external_refresh is not None
                and now - self._last_external_refresh < EXTERNAL_REFRESH_MIN_GAP_SECONDS
            ):
                wait = EXTERNAL_REFRESH_MIN_GAP_SECONDS - (now - self._last_external_refresh)
                raise GeminiError(
                    ErrorKind.RATE_LIMIT_SELF,
                    f"external refresh attempted too recently; retry in {wait:.0f}s",
                    endpoint=TAG_EXTERNAL_REFRESH,
                )
            self._last_external_refresh = now

            debug_print(f"🔄 Refreshing cookies from external source (hint={self._options.external_source_hint})")
            bundle = await with_deadline(
                self._call_cookie_source(),
                self._options.timeouts.refresh,
                TAG_EXTERNAL_REFRESH,
            )
            if not bundle.primary:
                raise GeminiError(
                    ErrorKind.AUTH, "external cookie source returned no primary cookie", endpoint=TAG_EXTERNAL_REFRESH
                )

            result = await self._bootstrap(bundle)
            await self._install(result)
            self._refresh_generation += 1
            self._persist(result.cookies)
            debug_print("✅ Cookies refreshed from external source")

    async def _call_cookie_source(self) -> CookieBundle:
        try:
            result = self._cookie_source(self._options.external_source_hint)
            if inspect.isawaitable(result):
                result = await result
        except GeminiError:
            raise
        except Exception as e:
            raise GeminiError(
                ErrorKind.AUTH, f"external cookie source failed: {e}", endpoint=TAG_EXTERNAL_REFRESH
            ) from e

        if isinstance(result, CookieBundle):
            return result
        if isinstance(result, (dict, list)):
            return CookieBundle.from_dict(result)
        raise GeminiError(
            ErrorKind.AUTH,
            f"external cookie source returned {type(result).__name__}",
            endpoint=TAG_EXTERNAL_REFRESH,
        )

    def _persist(self, bundle: CookieBundle) -> None:
        if self._cookie_store is None:
            return
        try:
            self._cookie_store.save(bundle)
        except Exception as e:
            debug_print(f"⚠️  Failed to persist refreshed cookies: {e}")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._rotation_task = self._rotation_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        debug_print("🛑 Credential manager closed")
