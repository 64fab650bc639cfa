import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence, Union

from .constants import TAG_GENERATE
from .errors import ErrorKind, GeminiError
from .schema import Candidate, ConversationMetadata, ModelDescriptor, ModelOutput

if TYPE_CHECKING:
    from .engine import Attachment, GeminiEngine


class SessionState(str, Enum):
    FRESH = "FRESH"
    THREADED = "THREADED"


class ChatSession:
    """
    A multi-turn conversation.

    Each successful reply replaces the conversation/reply/candidate ids sent
    with the next message. Messages on one session are sent one at a time;
    a failed or cancelled send leaves the session exactly as it was.
    """

    def __init__(
        self,
        engine: "GeminiEngine",
        *,
        persona_id: Optional[str] = None,
        model: Optional[Union[str, ModelDescriptor]] = None,
        metadata: Optional[ConversationMetadata] = None,
    ):
        self._engine = engine
        self._persona_id = persona_id
        self.model = model
        self._metadata = metadata or ConversationMetadata()
        self._last_output: Optional[ModelOutput] = None
        self._lock = asyncio.Lock()

    @property
    def metadata(self) -> ConversationMetadata:
        return self._metadata

    @property
    def state(self) -> SessionState:
        return SessionState.FRESH if self._metadata.is_empty else SessionState.THREADED

    @property
    def persona_id(self) -> Optional[str]:
        return self._persona_id

    @property
    def last_output(self) -> Optional[ModelOutput]:
        return self._last_output

    async def send_message(self, prompt: str, attachments: Optional[Sequence["Attachment"]] = None) -> ModelOutput:
        async with self._lock:
            output = await self._engine.generate_content(
                prompt,
                metadata=self._metadata,
                attachments=attachments,
                persona_id=self._persona_id,
                model=self.model,
            )
            if not output.metadata.is_complete:
                raise GeminiError(
                    ErrorKind.PARSE,
                    f"reply carried incomplete conversation ids {output.metadata.as_list()}",
                    endpoint=TAG_GENERATE,
                )
            self._metadata = output.metadata
            self._last_output = output
            return output

    def choose_candidate(self, index: int) -> Candidate:
        """Continue the conversation from another candidate of the last reply."""
        if self._last_output is None:
            raise IndexError("no reply to choose a candidate from")
        candidate = self._last_output.choose(index)
        self._metadata = self._last_output.metadata
        return candidate

    def reset(self) -> None:
        self._metadata = ConversationMetadata()
        self._last_output = None

    def set_persona(self, persona_id: Optional[str]) -> None:
        self._persona_id = persona_id or None

    def set_metadata(self, conversation_id: str, reply_id: str, reply_candidate_id: str) -> None:
        """Resume a conversation stored elsewhere."""
        self._metadata = ConversationMetadata(conversation_id, reply_id, reply_candidate_id)
        self._last_output = None

    def __repr__(self) -> str:
        return (
            f"ChatSession(state={self.state.value}, cid={self._metadata.conversation_id!r}, "
            f"persona={self._persona_id!r})"
        )
