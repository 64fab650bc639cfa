import asyncio
import mimetypes
import re
from pathlib import Path
from typing import List, Optional, Sequence, Union
from urllib.parse import urlparse

from .constants import IMAGE_DOWNLOAD_GAP_SECONDS, TAG_DOWNLOAD
from .debug import debug_print, log_http_status
from .errors import ErrorKind, GeminiError
from .schema import CookieBundle, GeneratedImage, WebImage
from .transport import Transport

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def image_download_url(image: WebImage, full_size: bool = True) -> str:
    if full_size and isinstance(image, GeneratedImage):
        return image.full_size_url()
    return image.url


def suggest_filename(image: WebImage, content_type: str = "") -> str:
    stem = Path(urlparse(image.url).path).name or image.title or "image"
    stem = stem.split("=")[0]
    stem = _UNSAFE_CHARS_RE.sub("_", stem).strip("._") or "image"
    if Path(stem).suffix:
        return stem
    extension = mimetypes.guess_extension(content_type.split(";")[0].strip()) if content_type else None
    return stem + (extension or ".png")


async def download_image(
    transport: Transport,
    cookies: CookieBundle,
    image: WebImage,
    directory: Union[str, Path],
    *,
    full_size: bool = True,
    filename: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Path:
    """Save an image from a reply into ``directory`` and return the file path."""
    url = image_download_url(image, full_size)
    # Generated images live behind the signed-in session; web images are public.
    send_cookies = cookies if isinstance(image, GeneratedImage) else None

    async with transport.stream(
        "GET",
        url,
        endpoint=TAG_DOWNLOAD,
        profile="document",
        cookies=send_cookies,
        timeout=timeout,
    ) as response:
        log_http_status(response.status_code, "Image download")
        if response.status_code != 200:
            raise GeminiError(
                ErrorKind.UNKNOWN,
                f"image download failed for {url}",
                endpoint=TAG_DOWNLOAD,
                status=response.status_code,
            )
        content_type = response.content_type
        if content_type and not content_type.startswith("image/"):
            raise GeminiError(
                ErrorKind.PARSE, f"expected an image, got {content_type}", endpoint=TAG_DOWNLOAD
            )
        data = await response.aread()

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / (filename or suggest_filename(image, content_type))
    target.write_bytes(data)
    debug_print(f"🖼️  Saved {len(data)} bytes to {target}")
    return target


async def download_images(
    transport: Transport,
    cookies: CookieBundle,
    images: Sequence[WebImage],
    directory: Union[str, Path],
    *,
    full_size: bool = True,
    timeout: Optional[float] = None,
) -> List[Path]:
    """
    Save several images, skipping the ones that fail.

    Raises the last failure only when nothing could be saved.
    """
    paths: List[Path] = []
    last_error: Optional[GeminiError] = None
    for index, image in enumerate(images):
        if index:
            await asyncio.sleep(IMAGE_DOWNLOAD_GAP_SECONDS)
        try:
            paths.append(
                await download_image(transport, cookies, image, directory, full_size=full_size, timeout=timeout)
            )
        except GeminiError as e:
            debug_print(f"⚠️  Skipping image {image.url}: {e}")
            last_error = e
    if not paths and last_error is not None:
        raise last_error
    return paths
