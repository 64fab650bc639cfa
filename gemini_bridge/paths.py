"""
Positions of every field read out of the service's nested-array responses.

Each path is a tuple of list indices. Response layouts shift between service
releases, so this module is the only place they are spelled out; everything
else goes through :func:`get_path`.
"""
from typing import Any, Sequence

Path = Sequence[int]

# ============================================================
# STREAM FRAMES: ["wrb.fr", null, "<inner json>", null, null, [code], ...]
# ============================================================
FRAME_TAG = (0,)
FRAME_BODY = (2,)
FRAME_ERROR_CODE = (5, 0)
FRAME_DETAILED_ERROR_CODE = (5, 2, 0, 1, 0)

# End frame: ["e", status, null, null, byte_count]
END_FRAME_STATUS = (1,)

# ============================================================
# INNER BODY (the JSON string at FRAME_BODY)
# ============================================================
BODY_CONVERSATION_ID = (1, 0)
BODY_REPLY_ID = (1, 1)
BODY_CANDIDATES = (4,)

# ============================================================
# CANDIDATE
# ============================================================
CAND_ID = (0,)
CAND_TEXT = (1, 0)
CAND_ALT_TEXT = (22, 0, 0)
CAND_ALT_TEXT_FLAT = (22, 0)
CAND_THOUGHTS = (37, 0, 0)
CAND_WEB_IMAGES = (4,)
CAND_GENERATED_IMAGES = (12, 7, 0)

WEB_IMAGE_URL = (0, 0, 0)
WEB_IMAGE_TITLE = (7, 0)
WEB_IMAGE_ALT = (0, 4)

GEN_IMAGE_URL = (0, 3, 3)
GEN_IMAGE_NUMBER = (3, 6)
GEN_IMAGE_ALTS = (3, 5)

# ============================================================
# BATCH FRAMES: ["wrb.fr", rpc_id, "<payload json>", null, null, [code], identifier]
# ============================================================
BATCH_RPC_ID = (1,)
BATCH_PAYLOAD = (2,)
BATCH_ERROR_CODE = (5, 0)
BATCH_IDENTIFIER = (6,)

PERSONA_LIST = (2,)
PERSONA_ID = (0,)
PERSONA_NAME = (1, 0)
PERSONA_DESCRIPTION = (1, 1)
PERSONA_PROMPT = (2, 0)
CREATED_PERSONA_ID = (0,)


def get_path(data: Any, path: Path, default: Any = None) -> Any:
    """Walk ``data`` along ``path``; any missing or mistyped step yields ``default``."""
    current = data
    for index in path:
        if not isinstance(current, list):
            return default
        if index < 0 or index >= len(current):
            return default
        current = current[index]
    if current is None:
        return default
    return current


def get_str(data: Any, path: Path, default: str = "") -> str:
    value = get_path(data, path)
    return value if isinstance(value, str) else default


def get_list(data: Any, path: Path) -> list:
    value = get_path(data, path)
    return value if isinstance(value, list) else []


def get_int(data: Any, path: Path):
    value = get_path(data, path)
    if isinstance(value, bool):
        return None
    return value if isinstance(value, int) else None
