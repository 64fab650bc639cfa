import itertools
import json
import mimetypes
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .constants import (
    DEFAULT_BUILD_LABEL,
    DEFAULT_LANGUAGE,
    ENDPOINT_BATCH_EXEC,
    ENDPOINT_GENERATE,
    ENDPOINT_UPLOAD,
    FORM_CONTENT_TYPE,
    MAX_FILE_UPLOAD_BYTES,
    MAX_IMAGE_UPLOAD_BYTES,
    TAG_BATCH,
    TAG_GENERATE,
    TAG_UPLOAD,
    UPLOAD_PUSH_ID,
)
from .errors import ErrorKind, GeminiError
from .schema import ConversationMetadata, ModelDescriptor, UploadedResource
from .transport import MultipartFile

# ============================================================
# CHAT ENVELOPE LAYOUT
# ============================================================
ENVELOPE_SLOT_COUNT = 100
SLOT_MESSAGE = 0
SLOT_LANGUAGE = 1
SLOT_ATTACHMENT_METADATA = 2
SLOT_ANTIBOT_TOKEN = 3
SLOT_PAYLOAD_HASH = 4
SLOT_PERSONA = 19

MESSAGE_SLOT_FILES = 4
ATTACHMENT_METADATA_LENGTH = 10

# Google steps _reqid by 100000 per request from a random 4-digit seed.
_REQ_ID_COUNTER = itertools.count(random.randint(1000, 9999), 100000)


def next_req_id() -> int:
    return next(_REQ_ID_COUNTER)


@dataclass
class PreparedRequest:
    method: str
    url: str
    endpoint: str
    params: Dict[str, str] = field(default_factory=dict)
    data: Optional[Dict[str, str]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    multipart: Optional[MultipartFile] = None


def _base_params(build_label: Optional[str], language: str, session_id: Optional[str]) -> Dict[str, str]:
    params = {
        "bl": build_label or DEFAULT_BUILD_LABEL,
        "_reqid": str(next_req_id()),
        "rt": "c",
        "hl": language,
    }
    if session_id:
        params["f.sid"] = session_id
    return params


# ============================================================
# CHAT
# ============================================================

def build_message_block(prompt: str, attachments: Sequence[UploadedResource] = ()) -> list:
    files = [[[resource.resource_id], resource.file_name] for resource in attachments] or None
    block = [prompt, 0, None, None, None, None, 0]
    block[MESSAGE_SLOT_FILES] = files
    return block


def build_chat_inner(
    prompt: str,
    *,
    metadata: Optional[ConversationMetadata] = None,
    attachments: Sequence[UploadedResource] = (),
    persona_id: Optional[str] = None,
    antibot_token: Optional[str] = None,
    language: str = DEFAULT_LANGUAGE,
) -> list:
    """
    The positional array carried (as a JSON string) inside ``f.req``.

    Slot meanings that are not known are left as null flag slots. Non-empty
    conversation metadata is appended after the last slot.
    """
    inner: List[Any] = [None] * ENVELOPE_SLOT_COUNT
    inner[SLOT_MESSAGE] = build_message_block(prompt, attachments)
    inner[SLOT_LANGUAGE] = [language]
    inner[SLOT_ATTACHMENT_METADATA] = ["", "", "", None, None, None, None, None, None, ""]
    inner[SLOT_ANTIBOT_TOKEN] = antibot_token or None
    inner[SLOT_PAYLOAD_HASH] = None
    if persona_id:
        inner[SLOT_PERSONA] = persona_id
    if metadata is not None and not metadata.is_empty:
        inner.append(metadata.as_list())
    return inner


def build_chat_request(
    prompt: str,
    *,
    access_token: str,
    model: ModelDescriptor,
    metadata: Optional[ConversationMetadata] = None,
    attachments: Sequence[UploadedResource] = (),
    persona_id: Optional[str] = None,
    antibot_token: Optional[str] = None,
    build_label: Optional[str] = None,
    session_id: Optional[str] = None,
    language: str = DEFAULT_LANGUAGE,
) -> PreparedRequest:
    inner = build_chat_inner(
        prompt,
        metadata=metadata,
        attachments=attachments,
        persona_id=persona_id,
        antibot_token=antibot_token,
        language=language,
    )
    headers = {"Content-Type": FORM_CONTENT_TYPE}
    headers.update(model.headers())
    return PreparedRequest(
        method="POST",
        url=ENDPOINT_GENERATE,
        endpoint=TAG_GENERATE,
        params=_base_params(build_label, language, session_id),
        data={
            "f.req": json.dumps([None, json.dumps(inner)]),
            "at": access_token,
        },
        headers=headers,
    )


# ============================================================
# UPLOAD
# ============================================================

def detect_mime_type(file_name: str) -> str:
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def upload_size_limit(mime_type: str) -> int:
    if mime_type.startswith("image/"):
        return MAX_IMAGE_UPLOAD_BYTES
    return MAX_FILE_UPLOAD_BYTES


def build_upload_request(file_name: str, data: bytes, mime_type: Optional[str] = None) -> PreparedRequest:
    mime_type = mime_type or detect_mime_type(file_name)
    limit = upload_size_limit(mime_type)
    if len(data) > limit:
        raise GeminiError(
            ErrorKind.UPLOAD,
            f"{file_name} is {len(data)} bytes; {mime_type} uploads are limited to {limit // (1024 * 1024)} MB",
            endpoint=TAG_UPLOAD,
        )
    return PreparedRequest(
        method="POST",
        url=ENDPOINT_UPLOAD,
        endpoint=TAG_UPLOAD,
        headers={"Push-ID": UPLOAD_PUSH_ID},
        multipart=MultipartFile(field_name="file", file_name=file_name, content_type=mime_type, data=data),
    )


# ============================================================
# BATCH RPC
# ============================================================

@dataclass
class RPCCall:
    rpc_id: str
    payload: Any
    identifier: str = "generic"

    def serialize(self) -> list:
        payload = self.payload if isinstance(self.payload, str) else json.dumps(self.payload)
        return [self.rpc_id, payload, None, self.identifier]


def build_batch_request(
    calls: Sequence[RPCCall],
    *,
    access_token: str,
    build_label: Optional[str] = None,
    session_id: Optional[str] = None,
    language: str = DEFAULT_LANGUAGE,
) -> PreparedRequest:
    if not calls:
        raise ValueError("batch_execute needs at least one call")
    params = _base_params(build_label, language, session_id)
    params["rpcids"] = ",".join(call.rpc_id for call in calls)
    return PreparedRequest(
        method="POST",
        url=ENDPOINT_BATCH_EXEC,
        endpoint=TAG_BATCH,
        params=params,
        data={
            "f.req": json.dumps([[call.serialize() for call in calls]]),
            "at": access_token,
        },
        headers={"Content-Type": FORM_CONTENT_TYPE},
    )
