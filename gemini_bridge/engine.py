import inspect
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from .batch import BATCH_AUTH_EXPIRED_CODE, BatchResult, batch_execute, raise_for_batch_error
from .chat import ChatSession
from .config import EngineOptions
from .constants import TAG_BATCH, TAG_DOWNLOAD, TAG_GENERATE, TAG_UPLOAD, detect_extension, model_from_name
from .cookie_store import CookieStore, JsonCookieStore
from .credentials import CredentialManager, ExternalCookieSource
from .debug import debug_print, log_http_status, set_debug
from .download import download_image, download_images
from .errors import ErrorKind, GeminiError, classify_http_status, should_refresh, with_deadline
from .payloads import RPCCall, build_chat_request
from .personas import (
    create_persona_call,
    created_persona_id,
    delete_persona_call,
    list_persona_calls,
    personas_from_results,
    update_persona_call,
)
from .schema import (
    ConversationMetadata,
    CookieBundle,
    ModelDescriptor,
    ModelOutput,
    Persona,
    PersonaJar,
    UploadedResource,
    WebImage,
)
from .stream_parser import StreamParser
from .transport import Transport
from .upload import Uploader

AntiBotTokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]
Attachment = Union[UploadedResource, str, Path]


class GeminiEngine:
    """
    One signed-in browser session against the Gemini web app.

    The engine can be shared by many concurrent callers. Every top-level call
    that is rejected as unauthenticated gets exactly one credential refresh
    and one retry; every other failure is surfaced as a :class:`GeminiError`.

    Usage::

        async with GeminiEngine(CookieBundle(primary="...", rotator="...")) as engine:
            chat = engine.start_chat()
            reply = await chat.send_message("hello")
            print(reply.text)
    """

    def __init__(
        self,
        cookies: Optional[CookieBundle] = None,
        *,
        options: Optional[EngineOptions] = None,
        transport: Optional[Transport] = None,
        cookie_source: Optional[ExternalCookieSource] = None,
        cookie_store: Optional[CookieStore] = None,
        antibot_token_provider: Optional[AntiBotTokenProvider] = None,
        on_stale: Optional[Callable[[CookieBundle], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or EngineOptions()
        if self.options.debug:
            set_debug(True)

        self.transport = transport or Transport(impersonate=self.options.impersonate, proxy=self.options.proxy)
        if cookie_store is None and self.options.cookie_file:
            cookie_store = JsonCookieStore(self.options.cookie_file)
        if (cookies is None or not cookies.primary) and cookie_store is not None:
            stored = cookie_store.load()
            if stored is not None:
                debug_print("🍪 Loaded cookies from the cookie store")
                cookies = stored

        self.credentials = CredentialManager(
            self.transport,
            cookies,
            model=model_from_name(self.options.model),
            options=self.options,
            cookie_source=cookie_source,
            cookie_store=cookie_store,
            on_stale=on_stale,
            clock=clock,
        )
        self._uploader = Uploader(self.transport, timeout=self.options.timeouts.upload)
        self._antibot_token_provider = antibot_token_provider
        self._personas: Optional[PersonaJar] = None
        self._initialized = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        if self._closed:
            raise RuntimeError("engine is closed")
        if self._initialized:
            return
        await self.credentials.initialize()
        self._initialized = True
        debug_print(f"✅ Engine ready (model={self.credentials.model.name}, transport={self.transport.backend})")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.credentials.close()
        await self.transport.close()
        debug_print("🛑 Engine closed")

    async def __aenter__(self) -> "GeminiEngine":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_ready(self) -> None:
        if self._closed:
            raise RuntimeError("engine is closed")
        if not self._initialized:
            raise RuntimeError("engine is not initialised; call init() first")

    @property
    def running(self) -> bool:
        return self._initialized and not self._closed

    @property
    def access_token(self) -> str:
        return self.credentials.access_token

    @property
    def cookies(self) -> CookieBundle:
        return self.credentials.cookies

    @property
    def model(self) -> ModelDescriptor:
        return self.credentials.model

    async def set_model(self, model: Union[str, ModelDescriptor]) -> None:
        if isinstance(model, str):
            model = model_from_name(model)
        await self.credentials.set_model(model)

    async def refresh_from_external_source(self) -> None:
        await self.credentials.refresh_from_external_source()

    # ------------------------------------------------------------------
    # Auth retry
    # ------------------------------------------------------------------

    async def _with_auth_retry(self, operation: str, call: Callable[[], Awaitable]):
        try:
            return await call()
        except GeminiError as e:
            if not should_refresh(e):
                raise
            debug_print(f"🔒 {operation} rejected ({e.message}); refreshing credentials and retrying once")
            await self._recover_auth()
        return await call()

    async def _recover_auth(self) -> None:
        if self.credentials.external_refresh_enabled:
            await self.credentials.refresh_from_external_source()
        else:
            await self.credentials.refetch_access_token()

    async def _antibot_token(self) -> Optional[str]:
        if self._antibot_token_provider is None:
            return None
        token = self._antibot_token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token or None

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def generate_content(
        self,
        prompt: str,
        *,
        metadata: Optional[ConversationMetadata] = None,
        attachments: Optional[Sequence[Attachment]] = None,
        persona_id: Optional[str] = None,
        model: Optional[Union[str, ModelDescriptor]] = None,
        timeout: Optional[float] = None,
    ) -> ModelOutput:
        self._ensure_ready()
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        if isinstance(model, str):
            model = model_from_name(model)

        resources = [await self._as_resource(item) for item in (attachments or [])]
        timeout = timeout or self.options.timeouts.chat
        extension_reply = detect_extension(prompt) is not None

        async def attempt() -> ModelOutput:
            return await with_deadline(
                self._generate_once(prompt, metadata, resources, persona_id, model, extension_reply, timeout),
                timeout,
                TAG_GENERATE,
            )

        return await self._with_auth_retry("generate", attempt)

    async def _generate_once(
        self,
        prompt: str,
        metadata: Optional[ConversationMetadata],
        attachments: List[UploadedResource],
        persona_id: Optional[str],
        model: Optional[ModelDescriptor],
        extension_reply: bool,
        timeout: Optional[float],
    ) -> ModelOutput:
        snapshot = await self.credentials.snapshot()
        model = model or snapshot.model
        request = build_chat_request(
            prompt,
            access_token=snapshot.access_token,
            model=model,
            metadata=metadata,
            attachments=attachments,
            persona_id=persona_id,
            antibot_token=await self._antibot_token(),
            build_label=snapshot.build_label,
            session_id=snapshot.session_id,
            language=self.options.language,
        )
        parser = StreamParser(endpoint=request.endpoint, model_name=model.name, extension_reply=extension_reply)

        async with self.transport.stream(
            request.method,
            request.url,
            endpoint=request.endpoint,
            cookies=snapshot.cookies,
            headers=request.headers,
            params=request.params,
            data=request.data,
            timeout=timeout,
        ) as response:
            log_http_status(response.status_code, "StreamGenerate")
            if response.status_code != 200:
                body = await response.aread()
                raise classify_http_status(
                    response.status_code, request.endpoint, body=body, location=response.location
                ) or GeminiError(
                    ErrorKind.UNKNOWN, "unexpected response", endpoint=request.endpoint, status=response.status_code
                )
            async for chunk in response.aiter_bytes():
                parser.feed(chunk)
                if parser.finished:
                    break

        output = parser.finish()
        debug_print(
            f"💬 Reply with {len(output.candidates)} candidate(s) "
            f"(cid={output.metadata.conversation_id}, chunks={parser.chunk_count})"
        )
        return output

    def start_chat(
        self,
        *,
        persona_id: Optional[str] = None,
        model: Optional[Union[str, ModelDescriptor]] = None,
        metadata: Optional[ConversationMetadata] = None,
    ) -> ChatSession:
        return ChatSession(self, persona_id=persona_id, model=model, metadata=metadata)

    # ------------------------------------------------------------------
    # Uploads / downloads
    # ------------------------------------------------------------------

    async def _as_resource(self, item: Attachment) -> UploadedResource:
        if isinstance(item, UploadedResource):
            return item
        return await self.upload_file(item)

    async def upload_bytes(self, data: bytes, file_name: str, mime_type: Optional[str] = None) -> UploadedResource:
        self._ensure_ready()
        snapshot = await self.credentials.snapshot()
        return await with_deadline(
            self._uploader.upload_bytes(snapshot.cookies, data, file_name, mime_type),
            self.options.timeouts.upload,
            TAG_UPLOAD,
        )

    async def upload_file(self, path: Union[str, Path], mime_type: Optional[str] = None) -> UploadedResource:
        self._ensure_ready()
        snapshot = await self.credentials.snapshot()
        return await with_deadline(
            self._uploader.upload_file(snapshot.cookies, path, mime_type),
            self.options.timeouts.upload,
            TAG_UPLOAD,
        )

    async def download_image(
        self,
        image: WebImage,
        directory: Union[str, Path],
        *,
        full_size: bool = True,
        filename: Optional[str] = None,
    ) -> Path:
        self._ensure_ready()
        snapshot = await self.credentials.snapshot()
        timeout = self.options.timeouts.upload
        return await with_deadline(
            download_image(
                self.transport,
                snapshot.cookies,
                image,
                directory,
                full_size=full_size,
                filename=filename,
                timeout=timeout,
            ),
            timeout,
            TAG_DOWNLOAD,
        )

    async def download_images(
        self,
        output: ModelOutput,
        directory: Union[str, Path],
        *,
        indices: Optional[Sequence[int]] = None,
        full_size: bool = True,
    ) -> List[Path]:
        """
        Save the chosen candidate's images, web images first, then generated ones.

        ``indices`` picks positions in that combined list; positions out of
        range are ignored. Images that fail are skipped unless all of them fail.
        """
        self._ensure_ready()
        images = output.images
        if indices is not None:
            images = [images[i] for i in indices if 0 <= i < len(images)]
        if not images:
            return []
        snapshot = await self.credentials.snapshot()
        return await download_images(
            self.transport,
            snapshot.cookies,
            images,
            directory,
            full_size=full_size,
            timeout=self.options.timeouts.upload,
        )

    # ------------------------------------------------------------------
    # Batch RPC / personas
    # ------------------------------------------------------------------

    async def batch_execute(self, calls: Sequence[RPCCall], *, timeout: Optional[float] = None) -> List[BatchResult]:
        self._ensure_ready()
        timeout = timeout or self.options.timeouts.chat

        async def attempt() -> List[BatchResult]:
            snapshot = await self.credentials.snapshot()
            results = await with_deadline(
                batch_execute(self.transport, snapshot, calls, language=self.options.language, timeout=timeout),
                timeout,
                TAG_BATCH,
            )
            # An expired session must surface as AUTH so the retry applies.
            for result in results:
                if result.error_code == BATCH_AUTH_EXPIRED_CODE:
                    raise_for_batch_error(result)
            return results

        return await self._with_auth_retry("batchexecute", attempt)

    @property
    def personas(self) -> PersonaJar:
        return self._personas if self._personas is not None else PersonaJar()

    def get_persona(self, id: Optional[str] = None, name: Optional[str] = None) -> Optional[Persona]:
        return self.personas.find(id=id, name=name)

    async def fetch_personas(self, include_hidden: bool = False) -> PersonaJar:
        results = await self.batch_execute(list_persona_calls(include_hidden))
        self._personas = personas_from_results(results)
        debug_print(f"💎 Loaded {len(self._personas)} persona(s)")
        return self._personas

    async def create_persona(self, name: str, system_prompt: str, description: str = "") -> Persona:
        (result,) = await self.batch_execute([create_persona_call(name, system_prompt, description)])
        raise_for_batch_error(result)
        persona = Persona(
            id=created_persona_id(result),
            name=name,
            description=description or None,
            system_prompt=system_prompt or None,
            predefined=False,
        )
        if self._personas is not None:
            self._personas[persona.id] = persona
        return persona

    async def update_persona(self, persona_id: str, name: str, system_prompt: str, description: str = "") -> Persona:
        (result,) = await self.batch_execute([update_persona_call(persona_id, name, system_prompt, description)])
        raise_for_batch_error(result)
        persona = Persona(
            id=persona_id,
            name=name,
            description=description or None,
            system_prompt=system_prompt or None,
            predefined=False,
        )
        if self._personas is not None:
            self._personas[persona_id] = persona
        return persona

    async def delete_persona(self, persona_id: str) -> None:
        (result,) = await self.batch_execute([delete_persona_call(persona_id)])
        raise_for_batch_error(result)
        if self._personas is not None:
            self._personas.pop(persona_id, None)
