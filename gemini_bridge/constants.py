import re
from enum import IntEnum
from typing import Dict, Optional

from .schema import PRIMARY_COOKIE_NAME, ROTATOR_COOKIE_NAME, ModelDescriptor

# ============================================================
# ENDPOINTS
# ============================================================
ENDPOINT_INIT = "https://gemini.google.com/app"
ENDPOINT_GENERATE = (
    "https://gemini.google.com/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
)
ENDPOINT_BATCH_EXEC = "https://gemini.google.com/_/BardChatUi/data/batchexecute"
ENDPOINT_UPLOAD = "https://content-push.googleapis.com/upload"
ENDPOINT_ROTATE_COOKIES = "https://accounts.google.com/RotateCookies"

# Short tags attached to errors and log lines.
TAG_INIT = "bootstrap"
TAG_GENERATE = "generate"
TAG_BATCH = "batchexecute"
TAG_UPLOAD = "upload"
TAG_ROTATE = "rotate-cookies"
TAG_DOWNLOAD = "download"

# ============================================================
# COOKIES / TOKENS
# ============================================================
PRIMARY_COOKIE = PRIMARY_COOKIE_NAME
ROTATOR_COOKIE = ROTATOR_COOKIE_NAME

ROTATE_COOKIES_BODY = '[000,"-0000000000000000000"]'
UPLOAD_PUSH_ID = "feeds/mcudyrk2a4khkz"

# Fallback for the "bl" query parameter when the landing page does not expose one.
DEFAULT_BUILD_LABEL = "boq_assistant-bard-web-server_20250514.06_p0"
DEFAULT_LANGUAGE = "en"

# ============================================================
# BROWSER PROFILE
# ============================================================
# Must stay in sync with the curl_cffi impersonation target so the TLS
# fingerprint and the advertised browser agree.
CURL_IMPERSONATE = "chrome136"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)
SEC_CH_UA = '"Chromium";v="136", "Google Chrome";v="136", "Not.A/Brand";v="99"'
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=utf-8"


def _common_headers() -> Dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-CH-UA": SEC_CH_UA,
        "Sec-CH-UA-Mobile": "?0",
        "Sec-CH-UA-Platform": '"Windows"',
    }


def document_headers() -> Dict[str, str]:
    """Headers a browser sends for a top-level page navigation."""
    headers = _common_headers()
    headers.update(
        {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Sec-Fetch-User": "?1",
            "Upgrade-Insecure-Requests": "1",
        }
    )
    return headers


def xhr_headers() -> Dict[str, str]:
    """Headers the web app sends on its own XHR calls."""
    headers = _common_headers()
    headers.update(
        {
            "Accept": "*/*",
            "Origin": "https://gemini.google.com",
            "Referer": "https://gemini.google.com/",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
            "X-Same-Domain": "1",
        }
    )
    return headers


HEADER_PROFILES = {
    "document": document_headers,
    "xhr": xhr_headers,
}

# ============================================================
# MODELS
# ============================================================
MODEL_HEADER_NAME = "x-goog-ext-525001261-jspb"

MODEL_UNSPECIFIED = ModelDescriptor("unspecified", None)
MODELS: Dict[str, ModelDescriptor] = {
    model.name: model
    for model in (
        MODEL_UNSPECIFIED,
        ModelDescriptor("gemini-2.5-flash", '[1,null,null,null,"9ec249fc9ad08861",null,null,0,[4]]'),
        ModelDescriptor("gemini-2.5-pro", '[1,null,null,null,"4af6c7f5da75d65d",null,null,0,[4]]'),
        ModelDescriptor("gemini-3.0-pro", '[1,null,null,null,"9d8ca3786ebdfbea",null,null,0,[4]]'),
    )
}


def model_from_name(name: Optional[str]) -> ModelDescriptor:
    if not name:
        return MODEL_UNSPECIFIED
    return MODELS.get(str(name).strip().lower(), MODEL_UNSPECIFIED)


# ============================================================
# ERROR CODES
# ============================================================
class KnownErrorCode(IntEnum):
    UNKNOWN = 0
    ANTIBOT_CHALLENGE = 2
    USAGE_LIMIT = 1037
    MODEL_INCONSISTENT = 1050
    MODEL_HEADER_INVALID = 1052
    IP_BLOCKED = 1060

    @classmethod
    def from_code(cls, code) -> "KnownErrorCode":
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            return cls.UNKNOWN


# ============================================================
# BATCH RPC IDS
# ============================================================
RPC_LIST_PERSONAS = "CNgdBe"
RPC_CREATE_PERSONA = "oMH3Zd"
RPC_UPDATE_PERSONA = "kHv0Vd"
RPC_DELETE_PERSONA = "UXcSJb"

LIST_PERSONAS_NORMAL = 3
LIST_PERSONAS_INCLUDE_HIDDEN = 4
LIST_PERSONAS_CUSTOM = 2

# ============================================================
# LIMITS / TIMING
# ============================================================
MAX_IMAGE_UPLOAD_BYTES = 20 * 1024 * 1024
MAX_FILE_UPLOAD_BYTES = 50 * 1024 * 1024

ROTATION_INTERVAL_SECONDS = 600
ROTATION_MIN_GAP_SECONDS = 300
ROTATION_BACKOFF_CAP_SECONDS = 30
EXTERNAL_REFRESH_MIN_GAP_SECONDS = 60

# Pause between images when saving several from one reply.
IMAGE_DOWNLOAD_GAP_SECONDS = 0.1

ERROR_BODY_LIMIT = 1000

# ============================================================
# RESPONSE MARKERS
# ============================================================
SAFETY_REFUSAL_TEXT = "I'm a text-based AI, and that is outside of my capabilities."
SEARCH_REDIRECT_RE = re.compile(r"^\s*https?://(www\.)?google\.com/search\?q=\S+\s*$")
CARD_CONTENT_RE = re.compile(r"^http://googleusercontent\.com/card_content/\d+")

EXTENSIONS = (
    "@Gmail",
    "@YouTube",
    "@GoogleMaps",
    "@GoogleFlights",
    "@GoogleHotels",
    "@GoogleWorkspace",
)


def detect_extension(prompt: str) -> Optional[str]:
    """Return the extension a prompt invokes (e.g. "@YouTube"), if any."""
    if not prompt:
        return None
    lowered = prompt.lower()
    for extension in EXTENSIONS:
        needle = extension.lower()
        idx = lowered.find(needle)
        if idx == -1:
            continue
        end = idx + len(needle)
        if end == len(lowered) or not lowered[end].isalnum():
            return extension
    return None
