import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .constants import DEFAULT_LANGUAGE, TAG_BATCH
from .credentials import CredentialSnapshot
from .debug import debug_print, log_http_status
from .errors import ErrorKind, GeminiError, classify_error_code, classify_http_status
from .paths import BATCH_ERROR_CODE, BATCH_IDENTIFIER, BATCH_PAYLOAD, BATCH_RPC_ID, FRAME_TAG, get_int, get_str
from .payloads import RPCCall, build_batch_request
from .stream_parser import ANTI_HIJACK_PREFIX, DATA_FRAME_TAG, ChunkReader, decode_chunk
from .transport import Transport

# batchexecute reports an expired session with this per-frame status.
BATCH_AUTH_EXPIRED_CODE = 16


@dataclass
class BatchResult:
    rpc_id: str
    identifier: str
    data: Any = None
    error_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


def _frames_from_chunks(body: bytes) -> List[list]:
    reader = ChunkReader()
    frames: List[list] = []
    for payload in reader.feed(body):
        frames.extend(decode_chunk(payload))
    if reader.mid_chunk:
        raise ValueError("batch body ended inside a chunk")
    return frames


def _frames_from_lines(body: bytes) -> List[list]:
    # Chunk lengths do not always count bytes, so fall back to one JSON array per line.
    text = body.decode("utf-8", errors="replace")
    if text.startswith(ANTI_HIJACK_PREFIX.decode()):
        text = text[len(ANTI_HIJACK_PREFIX):]
    frames: List[list] = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("["):
            continue
        try:
            decoded = json.loads(line)
        except ValueError:
            continue
        if isinstance(decoded, list):
            frames.extend(decoded)
    return frames


def iter_batch_frames(body: bytes) -> List[list]:
    try:
        frames = _frames_from_chunks(body)
    except ValueError:
        frames = _frames_from_lines(body)
    return [frame for frame in frames if isinstance(frame, list) and get_str(frame, FRAME_TAG) == DATA_FRAME_TAG]


def parse_batch_response(body: bytes, calls: Sequence[RPCCall], endpoint: str = TAG_BATCH) -> List[BatchResult]:
    """
    Match each call to its ``wrb.fr`` frame, by identifier when the server
    echoes one back and otherwise in order of rpc id.
    """
    frames = iter_batch_frames(body)
    if not frames:
        raise GeminiError(ErrorKind.PARSE, "batch response contained no frames", endpoint=endpoint, body=body)

    used = set()
    results = []
    for call in calls:
        match_idx = None
        for idx, frame in enumerate(frames):
            if idx in used or get_str(frame, BATCH_RPC_ID) != call.rpc_id:
                continue
            if get_str(frame, BATCH_IDENTIFIER) == call.identifier:
                match_idx = idx
                break
        if match_idx is None:
            for idx, frame in enumerate(frames):
                if idx not in used and get_str(frame, BATCH_RPC_ID) == call.rpc_id:
                    match_idx = idx
                    break
        if match_idx is None:
            raise GeminiError(ErrorKind.PARSE, f"no response for rpc {call.rpc_id}", endpoint=endpoint, body=body)
        used.add(match_idx)

        frame = frames[match_idx]
        raw = get_str(frame, BATCH_PAYLOAD)
        data = None
        if raw:
            try:
                data = json.loads(raw)
            except ValueError as e:
                raise GeminiError(
                    ErrorKind.PARSE, f"rpc {call.rpc_id} payload is not valid JSON", endpoint=endpoint, body=raw
                ) from e
        error_code = None if raw else get_int(frame, BATCH_ERROR_CODE)
        results.append(BatchResult(rpc_id=call.rpc_id, identifier=call.identifier, data=data, error_code=error_code))
    return results


def raise_for_batch_error(result: BatchResult, endpoint: str = TAG_BATCH) -> None:
    if result.error_code is None:
        return
    if result.error_code == BATCH_AUTH_EXPIRED_CODE:
        raise GeminiError(
            ErrorKind.AUTH, f"rpc {result.rpc_id} rejected: session expired", endpoint=endpoint, code=result.error_code
        )
    raise classify_error_code(result.error_code, endpoint)


async def batch_execute(
    transport: Transport,
    credentials: CredentialSnapshot,
    calls: Sequence[RPCCall],
    *,
    language: str = DEFAULT_LANGUAGE,
    timeout: Optional[float] = None,
) -> List[BatchResult]:
    request = build_batch_request(
        calls,
        access_token=credentials.access_token,
        build_label=credentials.build_label,
        session_id=credentials.session_id,
        language=language,
    )
    debug_print(f"📦 batchexecute rpcids={request.params['rpcids']}")
    async with transport.stream(
        request.method,
        request.url,
        endpoint=request.endpoint,
        cookies=credentials.cookies,
        headers=request.headers,
        params=request.params,
        data=request.data,
        timeout=timeout,
    ) as response:
        log_http_status(response.status_code, "batchexecute")
        body = await response.aread()
        error = classify_http_status(response.status_code, request.endpoint, body=body, location=response.location)
        if error is not None:
            raise error

    return parse_batch_response(body, calls, request.endpoint)
