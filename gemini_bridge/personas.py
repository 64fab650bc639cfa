from typing import Any, List, Optional, Sequence

from .batch import BatchResult
from .constants import (
    LIST_PERSONAS_CUSTOM,
    LIST_PERSONAS_INCLUDE_HIDDEN,
    LIST_PERSONAS_NORMAL,
    RPC_CREATE_PERSONA,
    RPC_DELETE_PERSONA,
    RPC_LIST_PERSONAS,
    RPC_UPDATE_PERSONA,
    TAG_BATCH,
)
from .debug import debug_print
from .errors import ErrorKind, GeminiError
from .paths import (
    CREATED_PERSONA_ID,
    PERSONA_DESCRIPTION,
    PERSONA_ID,
    PERSONA_LIST,
    PERSONA_NAME,
    PERSONA_PROMPT,
    get_list,
    get_str,
)
from .payloads import RPCCall
from .schema import Persona, PersonaJar

SYSTEM_IDENTIFIER = "system"
CUSTOM_IDENTIFIER = "custom"


def list_persona_calls(include_hidden: bool = False) -> List[RPCCall]:
    system_mode = LIST_PERSONAS_INCLUDE_HIDDEN if include_hidden else LIST_PERSONAS_NORMAL
    return [
        RPCCall(RPC_LIST_PERSONAS, [system_mode], SYSTEM_IDENTIFIER),
        RPCCall(RPC_LIST_PERSONAS, [LIST_PERSONAS_CUSTOM], CUSTOM_IDENTIFIER),
    ]


def parse_persona(raw: Any, predefined: bool) -> Optional[Persona]:
    persona_id = get_str(raw, PERSONA_ID)
    if not persona_id:
        return None
    return Persona(
        id=persona_id,
        name=get_str(raw, PERSONA_NAME),
        description=get_str(raw, PERSONA_DESCRIPTION) or None,
        system_prompt=get_str(raw, PERSONA_PROMPT) or None,
        predefined=predefined,
    )


def parse_persona_list(data: Any, predefined: bool) -> List[Persona]:
    personas = []
    for raw in get_list(data, PERSONA_LIST):
        persona = parse_persona(raw, predefined)
        if persona is not None:
            personas.append(persona)
    return personas


def personas_from_results(results: Sequence[BatchResult]) -> PersonaJar:
    # A failed half of the listing still leaves the other half usable.
    jar = PersonaJar()
    for result in results:
        if not result.ok or result.data is None:
            debug_print(f"⚠️  Persona listing '{result.identifier}' returned nothing (code={result.error_code})")
            continue
        predefined = result.identifier == SYSTEM_IDENTIFIER
        for persona in parse_persona_list(result.data, predefined):
            jar[persona.id] = persona
    return jar


def _persona_fields(name: str, system_prompt: str, description: str) -> list:
    return [name, description, system_prompt, None, None, None, None, None, 0, None, 1, None, None, None, []]


def create_persona_call(name: str, system_prompt: str, description: str = "") -> RPCCall:
    return RPCCall(RPC_CREATE_PERSONA, [_persona_fields(name, system_prompt, description)])


def update_persona_call(persona_id: str, name: str, system_prompt: str, description: str = "") -> RPCCall:
    return RPCCall(RPC_UPDATE_PERSONA, [persona_id, _persona_fields(name, system_prompt, description) + [0]])


def delete_persona_call(persona_id: str) -> RPCCall:
    return RPCCall(RPC_DELETE_PERSONA, [persona_id])


def created_persona_id(result: BatchResult) -> str:
    persona_id = get_str(result.data, CREATED_PERSONA_ID)
    if not persona_id:
        raise GeminiError(ErrorKind.PARSE, "create persona response has no id", endpoint=TAG_BATCH, body=str(result.data))
    return persona_id
