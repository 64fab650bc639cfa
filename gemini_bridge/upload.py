from pathlib import Path
from typing import Optional, Union

from .constants import TAG_UPLOAD
from .debug import debug_print, log_http_status
from .errors import ErrorKind, GeminiError
from .payloads import build_upload_request
from .schema import CookieBundle, UploadedResource
from .transport import Transport


class Uploader:
    """Pushes files to the content-push host. Needs cookies, not the access token."""

    def __init__(self, transport: Transport, *, timeout: Optional[float] = None):
        self._transport = transport
        self._timeout = timeout

    async def upload_bytes(
        self,
        cookies: CookieBundle,
        data: bytes,
        file_name: str,
        mime_type: Optional[str] = None,
    ) -> UploadedResource:
        request = build_upload_request(file_name, data, mime_type)
        multipart = request.multipart

        debug_print(f"📤 Uploading {file_name} ({len(data)} bytes, {multipart.content_type})")
        async with self._transport.stream(
            request.method,
            request.url,
            endpoint=request.endpoint,
            cookies=cookies,
            headers=request.headers,
            multipart=multipart,
            timeout=self._timeout,
        ) as response:
            log_http_status(response.status_code, "Upload")
            body = await response.atext()
            if not 200 <= response.status_code < 300:
                raise GeminiError(
                    ErrorKind.UPLOAD,
                    f"upload of {file_name} failed",
                    endpoint=TAG_UPLOAD,
                    status=response.status_code,
                    body=body,
                )

        resource_id = body.strip()
        if not resource_id:
            raise GeminiError(ErrorKind.UPLOAD, f"upload of {file_name} returned no resource id", endpoint=TAG_UPLOAD)

        return UploadedResource(
            resource_id=resource_id,
            file_name=file_name,
            mime_type=multipart.content_type,
            size_bytes=len(data),
        )

    async def upload_file(
        self,
        cookies: CookieBundle,
        path: Union[str, Path],
        mime_type: Optional[str] = None,
    ) -> UploadedResource:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise GeminiError(ErrorKind.UPLOAD, f"cannot read {path}: {e}", endpoint=TAG_UPLOAD) from e
        return await self.upload_bytes(cookies, data, path.name, mime_type)
