import json
from typing import List, Optional

from .constants import CARD_CONTENT_RE, SAFETY_REFUSAL_TEXT, SEARCH_REDIRECT_RE, TAG_GENERATE
from .debug import debug_print
from .errors import ErrorKind, GeminiError, classify_error_code
from .paths import (
    BODY_CANDIDATES,
    BODY_CONVERSATION_ID,
    BODY_REPLY_ID,
    CAND_ALT_TEXT,
    CAND_ALT_TEXT_FLAT,
    CAND_GENERATED_IMAGES,
    CAND_ID,
    CAND_TEXT,
    CAND_THOUGHTS,
    CAND_WEB_IMAGES,
    END_FRAME_STATUS,
    FRAME_BODY,
    FRAME_DETAILED_ERROR_CODE,
    FRAME_ERROR_CODE,
    FRAME_TAG,
    GEN_IMAGE_ALTS,
    GEN_IMAGE_NUMBER,
    GEN_IMAGE_URL,
    WEB_IMAGE_ALT,
    WEB_IMAGE_TITLE,
    WEB_IMAGE_URL,
    get_int,
    get_list,
    get_path,
    get_str,
)
from .schema import Candidate, ConversationMetadata, GeneratedImage, ModelOutput, WebImage

ANTI_HIJACK_PREFIX = b")]}'"
END_SENTINEL = b'[["e",'
DATA_FRAME_TAG = "wrb.fr"
END_FRAME_TAG = "e"
DIAGNOSTIC_LIMIT = 1000

_WHITESPACE = b" \t\r\n"


class ChunkReader:
    """
    Incremental reader for the ``)]}'`` + ``<length>\\n<payload>`` framing.

    ``feed`` accepts bytes split at arbitrary points and returns every payload
    completed so far. Lengths are decimal byte counts.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._prefix_done = False
        self._expected: Optional[int] = None

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    @property
    def mid_chunk(self) -> bool:
        return self._expected is not None or bool(bytes(self._buffer).strip())

    def feed(self, data: bytes) -> List[bytes]:
        self._buffer.extend(data)
        payloads: List[bytes] = []

        if not self._prefix_done:
            if len(self._buffer) < len(ANTI_HIJACK_PREFIX) and ANTI_HIJACK_PREFIX.startswith(bytes(self._buffer)):
                return payloads
            if self._buffer.startswith(ANTI_HIJACK_PREFIX):
                del self._buffer[: len(ANTI_HIJACK_PREFIX)]
            self._prefix_done = True

        while True:
            if self._expected is None:
                skip = 0
                while skip < len(self._buffer) and self._buffer[skip] in _WHITESPACE:
                    skip += 1
                if skip:
                    del self._buffer[:skip]

                newline = self._buffer.find(b"\n")
                if newline == -1:
                    if self._buffer and not bytes(self._buffer).strip().isdigit():
                        raise ValueError(f"invalid chunk length {bytes(self._buffer[:40])!r}")
                    return payloads

                line = bytes(self._buffer[:newline]).strip()
                if not line.isdigit():
                    raise ValueError(f"invalid chunk length {line[:40]!r}")
                self._expected = int(line)
                del self._buffer[: newline + 1]

            if len(self._buffer) < self._expected:
                return payloads

            payloads.append(bytes(self._buffer[: self._expected]))
            del self._buffer[: self._expected]
            self._expected = None


def decode_chunk(payload: bytes) -> list:
    decoded = json.loads(payload.decode("utf-8"))
    if not isinstance(decoded, list):
        raise ValueError(f"chunk is a {type(decoded).__name__}, expected a list")
    return decoded


class StreamParser:
    """
    Turns the streamed chat response into a :class:`ModelOutput`.

    Feed raw bytes as they arrive; ``finished`` flips once the end frame has
    been read. ``finish()`` returns the output or raises the classified error.
    Only the most recent content-bearing frame is kept, never the whole body.
    """

    def __init__(self, *, endpoint: str = TAG_GENERATE, model_name: str = "", extension_reply: bool = False):
        self.endpoint = endpoint
        self.model_name = model_name
        self.extension_reply = extension_reply
        self.finished = False
        self.chunk_count = 0

        self._reader = ChunkReader()
        self._diagnostic = bytearray()
        self._output: Optional[ModelOutput] = None
        self._error_code: Optional[int] = None
        self._end_status: Optional[int] = None
        self._saw_empty_candidates = False
        self._saw_data_frames = False

    @property
    def diagnostic_body(self) -> str:
        return bytes(self._diagnostic).decode("utf-8", errors="replace")

    def feed(self, data: bytes) -> None:
        if self.finished or not data:
            return
        if len(self._diagnostic) < DIAGNOSTIC_LIMIT:
            self._diagnostic.extend(data[: DIAGNOSTIC_LIMIT - len(self._diagnostic)])

        try:
            payloads = self._reader.feed(data)
        except ValueError as e:
            raise self._parse_error(str(e)) from e

        for payload in payloads:
            self._handle_chunk(payload)
            if self.finished:
                break

    def finish(self) -> ModelOutput:
        if self._output is not None:
            output = self._output
            self._check_blocked(output)
            metadata = output.metadata
            if not metadata.conversation_id or not metadata.reply_id:
                raise self._parse_error("reply is missing its conversation identifiers")
            return output

        if self._error_code is not None:
            raise classify_error_code(self._error_code, self.endpoint, model_name=self.model_name)

        if not self.finished and self._reader.mid_chunk:
            raise self._parse_error("stream ended in the middle of a chunk")

        if self._saw_empty_candidates:
            raise GeminiError(
                ErrorKind.EMPTY_RESPONSE, "reply contained no candidates", endpoint=self.endpoint, body=self.diagnostic_body
            )

        if self._saw_data_frames and self._end_status:
            raise GeminiError(
                ErrorKind.UNKNOWN,
                f"stream ended with status {self._end_status} and no candidates",
                endpoint=self.endpoint,
                code=self._end_status,
                body=self.diagnostic_body,
            )

        raise GeminiError(ErrorKind.EMPTY_RESPONSE, "empty response", endpoint=self.endpoint, body=self.diagnostic_body)

    # ------------------------------------------------------------------

    def _parse_error(self, message: str) -> GeminiError:
        return GeminiError(ErrorKind.PARSE, message, endpoint=self.endpoint, body=self.diagnostic_body)

    def _handle_chunk(self, payload: bytes) -> None:
        self.chunk_count += 1
        if END_SENTINEL in payload:
            self.finished = True

        try:
            frames = decode_chunk(payload)
        except ValueError as e:
            raise self._parse_error(f"chunk {self.chunk_count} is not valid JSON: {e}") from e

        for frame in frames:
            if isinstance(frame, list):
                self._handle_frame(frame)

    def _handle_frame(self, frame: list) -> None:
        tag = get_str(frame, FRAME_TAG)
        if tag == END_FRAME_TAG:
            self.finished = True
            self._end_status = get_int(frame, END_FRAME_STATUS)
            return
        if tag != DATA_FRAME_TAG:
            return

        self._saw_data_frames = True
        code = get_int(frame, FRAME_DETAILED_ERROR_CODE)
        if code is None:
            code = get_int(frame, FRAME_ERROR_CODE)
        if code is not None:
            debug_print(f"⚠️  Frame carries error code {code}")
            self._error_code = code
            return

        raw_body = get_str(frame, FRAME_BODY)
        if not raw_body:
            return
        try:
            body = json.loads(raw_body)
        except ValueError as e:
            raise self._parse_error(f"frame body is not valid JSON: {e}") from e

        output = self._project(body)
        if output is None:
            return
        if any(candidate.has_content for candidate in output.candidates):
            self._output = output
        else:
            self._saw_empty_candidates = True

    def _project(self, body) -> Optional[ModelOutput]:
        raw_candidates = get_path(body, BODY_CANDIDATES)
        if not isinstance(raw_candidates, list):
            return None

        candidates = [
            self._project_candidate(raw) for raw in raw_candidates if isinstance(raw, list)
        ]
        if not candidates:
            self._saw_empty_candidates = True
            return None

        metadata = ConversationMetadata(
            conversation_id=get_str(body, BODY_CONVERSATION_ID),
            reply_id=get_str(body, BODY_REPLY_ID),
            reply_candidate_id=candidates[0].candidate_id,
        )
        return ModelOutput(metadata=metadata, candidates=candidates, is_extension_reply=self.extension_reply)

    @staticmethod
    def _project_candidate(raw: list) -> Candidate:
        text = get_str(raw, CAND_TEXT)
        if not text or CARD_CONTENT_RE.match(text):
            alt_text = get_str(raw, CAND_ALT_TEXT) or get_str(raw, CAND_ALT_TEXT_FLAT)
            if alt_text:
                text = alt_text

        web_images = []
        for image in get_list(raw, CAND_WEB_IMAGES):
            url = get_str(image, WEB_IMAGE_URL)
            if url:
                web_images.append(
                    WebImage(url=url, title=get_str(image, WEB_IMAGE_TITLE), alt=get_str(image, WEB_IMAGE_ALT))
                )

        generated_images = []
        for idx, image in enumerate(get_list(raw, CAND_GENERATED_IMAGES)):
            url = get_str(image, GEN_IMAGE_URL)
            if not url:
                continue
            number = get_path(image, GEN_IMAGE_NUMBER)
            title = f"[Generated Image {number}]" if number is not None else "[Generated Image]"
            alts = get_list(image, GEN_IMAGE_ALTS)
            alt = ""
            if idx < len(alts) and isinstance(alts[idx], str):
                alt = alts[idx]
            elif alts and isinstance(alts[0], str):
                alt = alts[0]
            generated_images.append(GeneratedImage(url=url, title=title, alt=alt))

        return Candidate(
            candidate_id=get_str(raw, CAND_ID),
            text=text,
            thoughts=get_str(raw, CAND_THOUGHTS) or None,
            web_images=web_images,
            generated_images=generated_images,
        )

    def _check_blocked(self, output: ModelOutput) -> None:
        text = output.text.strip()
        if text == SAFETY_REFUSAL_TEXT or SEARCH_REDIRECT_RE.match(text):
            raise GeminiError(
                ErrorKind.BLOCKED,
                "reply was replaced by a refusal",
                endpoint=self.endpoint,
                body=output.text,
            )
