import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional


PRIMARY_COOKIE_NAME = "__Secure-1PSID"
ROTATOR_COOKIE_NAME = "__Secure-1PSIDTS"


@dataclass
class CookieBundle:
    """The cookies a signed-in browser carries for the service."""

    primary: str = ""
    rotator: str = ""
    extras: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, str]:
        cookies = dict(self.extras)
        if self.primary:
            cookies[PRIMARY_COOKIE_NAME] = self.primary
        if self.rotator:
            cookies[ROTATOR_COOKIE_NAME] = self.rotator
        return cookies

    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.as_dict().items() if value is not None)

    def merged_with(self, set_cookies: Optional[Dict[str, str]]) -> "CookieBundle":
        if not set_cookies:
            return self.copy()
        merged = self.copy()
        for name, value in set_cookies.items():
            if name == PRIMARY_COOKIE_NAME:
                if value:
                    merged.primary = value
            elif name == ROTATOR_COOKIE_NAME:
                if value:
                    merged.rotator = value
            else:
                merged.extras[name] = value
        return merged

    def copy(self) -> "CookieBundle":
        return CookieBundle(primary=self.primary, rotator=self.rotator, extras=dict(self.extras))

    def to_dict(self) -> dict:
        return {"primary": self.primary, "rotator": self.rotator, "extras": dict(self.extras)}

    @classmethod
    def from_dict(cls, data) -> "CookieBundle":
        """
        Build a bundle from any of the shapes users keep cookies in:

        - ``{"primary": ..., "rotator": ..., "extras": {...}}`` (our own format)
        - ``[{"name": ..., "value": ...}, ...]`` (browser extension exports)
        - ``{"__Secure-1PSID": ..., ...}`` (flat name/value map)
        """
        if isinstance(data, list):
            flat = {}
            for entry in data:
                if not isinstance(entry, dict):
                    continue
                name = entry.get("name")
                value = entry.get("value")
                if isinstance(name, str) and isinstance(value, str):
                    flat[name] = value
            return cls().merged_with(flat)

        if not isinstance(data, dict):
            return cls()

        if "primary" in data or "rotator" in data:
            extras = data.get("extras") or {}
            if not isinstance(extras, dict):
                extras = {}
            return cls(
                primary=str(data.get("primary") or ""),
                rotator=str(data.get("rotator") or ""),
                extras={str(k): str(v) for k, v in extras.items()},
            )

        return cls().merged_with({str(k): str(v) for k, v in data.items() if isinstance(v, str)})


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    header_value: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        # Imported lazily: constants imports this module.
        from .constants import MODEL_HEADER_NAME

        if not self.header_value:
            return {}
        return {MODEL_HEADER_NAME: self.header_value}


@dataclass(frozen=True)
class ConversationMetadata:
    conversation_id: str = ""
    reply_id: str = ""
    reply_candidate_id: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.conversation_id or self.reply_id or self.reply_candidate_id)

    @property
    def is_complete(self) -> bool:
        return bool(self.conversation_id and self.reply_id and self.reply_candidate_id)

    def as_list(self) -> List[str]:
        return [self.conversation_id, self.reply_id, self.reply_candidate_id]


@dataclass
class WebImage:
    url: str
    title: str = ""
    alt: str = ""


_SIZE_SUFFIX_RE = re.compile(r"=s\d+")


@dataclass
class GeneratedImage(WebImage):
    upscalable: bool = True

    def full_size_url(self, size: int = 2048) -> str:
        if not self.upscalable or _SIZE_SUFFIX_RE.search(self.url):
            return self.url
        return f"{self.url}=s{size}"


@dataclass
class Candidate:
    candidate_id: str
    text: str = ""
    thoughts: Optional[str] = None
    web_images: List[WebImage] = field(default_factory=list)
    generated_images: List[GeneratedImage] = field(default_factory=list)

    @property
    def images(self) -> List[WebImage]:
        return [*self.web_images, *self.generated_images]

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.thoughts or self.web_images or self.generated_images)


@dataclass
class ModelOutput:
    metadata: ConversationMetadata
    candidates: List[Candidate] = field(default_factory=list)
    chosen_index: int = 0
    is_extension_reply: bool = False

    # Accessors fall back to the first candidate instead of raising.
    @property
    def chosen(self) -> Optional[Candidate]:
        if not self.candidates:
            return None
        if 0 <= self.chosen_index < len(self.candidates):
            return self.candidates[self.chosen_index]
        return self.candidates[0]

    @property
    def text(self) -> str:
        chosen = self.chosen
        return chosen.text if chosen else ""

    @property
    def thoughts(self) -> Optional[str]:
        chosen = self.chosen
        return chosen.thoughts if chosen else None

    @property
    def candidate_id(self) -> str:
        chosen = self.chosen
        return chosen.candidate_id if chosen else ""

    @property
    def images(self) -> List[WebImage]:
        chosen = self.chosen
        return chosen.images if chosen else []

    def choose(self, index: int) -> Candidate:
        if not 0 <= index < len(self.candidates):
            raise IndexError(f"candidate index {index} out of range (0..{len(self.candidates) - 1})")
        self.chosen_index = index
        candidate = self.candidates[index]
        self.metadata = replace(self.metadata, reply_candidate_id=candidate.candidate_id)
        return candidate

    def __str__(self) -> str:
        return self.text


@dataclass
class UploadedResource:
    resource_id: str
    file_name: str
    mime_type: str
    size_bytes: int


@dataclass
class Persona:
    id: str
    name: str
    description: Optional[str] = None
    system_prompt: Optional[str] = None
    predefined: bool = False


class PersonaJar(dict):
    """Personas keyed by id."""

    @classmethod
    def from_personas(cls, personas: Iterable[Persona]) -> "PersonaJar":
        return cls((persona.id, persona) for persona in personas)

    def custom(self) -> "PersonaJar":
        return PersonaJar((k, v) for k, v in self.items() if not v.predefined)

    def system(self) -> "PersonaJar":
        return PersonaJar((k, v) for k, v in self.items() if v.predefined)

    def search(self, query: str) -> "PersonaJar":
        needle = (query or "").lower()
        return PersonaJar((k, v) for k, v in self.items() if needle in v.name.lower())

    def find(self, id: Optional[str] = None, name: Optional[str] = None) -> Optional[Persona]:
        if id:
            persona = self.get(id)
            if persona is not None:
                return persona
        if name:
            for persona in self.values():
                if persona.name == name:
                    return persona
            lowered = name.lower()
            for persona in self.values():
                if persona.name.lower() == lowered:
                    return persona
        return None
