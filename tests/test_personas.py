import json
import unittest

from tests._stream_test_utils import FakeUpstream, encode_stream, form_of, respond

from gemini_bridge.batch import BatchResult, iter_batch_frames, parse_batch_response
from gemini_bridge.config import EngineOptions
from gemini_bridge.constants import RPC_CREATE_PERSONA, RPC_DELETE_PERSONA, RPC_LIST_PERSONAS, RPC_UPDATE_PERSONA
from gemini_bridge.engine import GeminiEngine
from gemini_bridge.errors import ErrorKind, GeminiError
from gemini_bridge.payloads import RPCCall
from gemini_bridge.personas import list_persona_calls, parse_persona_list, personas_from_results
from gemini_bridge.schema import CookieBundle, Persona, PersonaJar

BATCH = "batchexecute"


def rpc_frame(rpc_id: str, payload=None, identifier: str = "generic", code=None) -> list:
    frame = ["wrb.fr", rpc_id, json.dumps(payload) if payload is not None else None, None, None, None, identifier]
    if code is not None:
        frame[5] = [code]
    return frame


def raw_persona(persona_id: str, name: str, description: str = "", prompt: str = "") -> list:
    return [persona_id, [name, description], [prompt]]


SYSTEM_LIST = [None, None, [raw_persona("coder", "Coding partner", "Helps with code")]]
CUSTOM_LIST = [
    None,
    None,
    [raw_persona("gem-1", "Poet", "Writes verse", "Answer in rhyme."), raw_persona("gem-2", "Chef")],
]


def listing_body(system=SYSTEM_LIST, custom=CUSTOM_LIST) -> bytes:
    return encode_stream(
        [
            rpc_frame(RPC_LIST_PERSONAS, system, "system"),
            rpc_frame(RPC_LIST_PERSONAS, custom, "custom"),
            ["di", 42],
        ]
    )


class TestBatchParsing(unittest.TestCase):
    def test_results_follow_call_order(self) -> None:
        calls = [RPCCall("AAA", [], "one"), RPCCall("BBB", [], "two")]
        body = encode_stream([rpc_frame("BBB", {"b": 1}, "two"), rpc_frame("AAA", [1], "one")])

        results = parse_batch_response(body, calls)

        self.assertEqual([(r.rpc_id, r.data) for r in results], [("AAA", [1]), ("BBB", {"b": 1})])
        self.assertTrue(all(r.ok for r in results))

    def test_identifier_missing_falls_back_to_rpc_order(self) -> None:
        calls = [RPCCall("AAA", [], "x"), RPCCall("AAA", [], "y")]
        body = encode_stream([rpc_frame("AAA", ["first"], None), rpc_frame("AAA", ["second"], None)])

        results = parse_batch_response(body, calls)

        self.assertEqual([r.data for r in results], [["first"], ["second"]])

    def test_miscounted_lengths_fall_back_to_lines(self) -> None:
        line = json.dumps([rpc_frame("AAA", ["ok"], "generic")])
        body = f")]}}'\n\n{len(line) + 40}\n{line}\n".encode("utf-8")

        frames = iter_batch_frames(body)

        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0][1], "AAA")

    def test_error_code_is_reported(self) -> None:
        body = encode_stream([rpc_frame("AAA", code=7)])

        (result,) = parse_batch_response(body, [RPCCall("AAA", [])])

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, 7)

    def test_missing_rpc_is_parse_error(self) -> None:
        with self.assertRaises(GeminiError) as ctx:
            parse_batch_response(encode_stream([rpc_frame("AAA", [])]), [RPCCall("ZZZ", [])])

        self.assertEqual(ctx.exception.kind, ErrorKind.PARSE)


class TestPersonaParsing(unittest.TestCase):
    def test_list_is_parsed(self) -> None:
        personas = parse_persona_list(CUSTOM_LIST, predefined=False)

        self.assertEqual(
            personas[0],
            Persona("gem-1", "Poet", "Writes verse", "Answer in rhyme.", predefined=False),
        )
        self.assertIsNone(personas[1].description)
        self.assertIsNone(personas[1].system_prompt)

    def test_failed_half_still_yields_the_other(self) -> None:
        results = [
            BatchResult(RPC_LIST_PERSONAS, "system", error_code=7),
            BatchResult(RPC_LIST_PERSONAS, "custom", data=CUSTOM_LIST),
        ]

        jar = personas_from_results(results)

        self.assertEqual(sorted(jar), ["gem-1", "gem-2"])

    def test_jar_filters(self) -> None:
        jar = PersonaJar.from_personas(
            [
                Persona("coder", "Coding partner", predefined=True),
                Persona("gem-1", "Poet"),
                Persona("gem-2", "Chef"),
            ]
        )

        self.assertEqual(list(jar.system()), ["coder"])
        self.assertEqual(sorted(jar.custom()), ["gem-1", "gem-2"])
        self.assertEqual(list(jar.search("poe")), ["gem-1"])
        self.assertEqual(jar.find(name="chef").id, "gem-2")
        self.assertEqual(jar.find(id="coder").name, "Coding partner")
        self.assertIsNone(jar.find(id="nope"))

    def test_hidden_listing_uses_its_own_mode(self) -> None:
        normal, custom = list_persona_calls()
        hidden, _ = list_persona_calls(include_hidden=True)

        self.assertEqual((normal.payload, custom.payload, hidden.payload), ([3], [2], [4]))


class TestEnginePersonas(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.upstream = FakeUpstream().with_landing_page("tok-1", "tok-2")
        self.engine = GeminiEngine(
            CookieBundle(primary="psid"),
            options=EngineOptions(auto_refresh_rotation=False),
            transport=self.upstream.transport(),
        )
        await self.engine.init()

    async def asyncTearDown(self) -> None:
        await self.engine.close()

    async def test_fetch_personas_fills_the_cache(self) -> None:
        self.upstream.on(BATCH, respond(200, listing_body()))

        jar = await self.engine.fetch_personas()

        self.assertEqual(sorted(jar), ["coder", "gem-1", "gem-2"])
        self.assertTrue(jar["coder"].predefined)
        self.assertFalse(jar["gem-1"].predefined)
        self.assertIs(self.engine.get_persona(name="Poet"), jar["gem-1"])

        request = self.upstream.requests_to(BATCH)[0]
        self.assertEqual(request.url.params["rpcids"], f"{RPC_LIST_PERSONAS},{RPC_LIST_PERSONAS}")
        self.assertEqual(form_of(request)["at"], "tok-1")

    async def test_create_update_delete_keep_the_cache_current(self) -> None:
        self.upstream.on(
            BATCH,
            respond(200, listing_body()),
            respond(200, encode_stream([rpc_frame(RPC_CREATE_PERSONA, ["gem-new"])])),
            respond(200, encode_stream([rpc_frame(RPC_UPDATE_PERSONA, [])])),
            respond(200, encode_stream([rpc_frame(RPC_DELETE_PERSONA, [])])),
        )
        await self.engine.fetch_personas()

        created = await self.engine.create_persona("Critic", "Be harsh.", "Reviews drafts")
        self.assertEqual(created.id, "gem-new")
        self.assertIn("gem-new", self.engine.personas)

        updated = await self.engine.update_persona("gem-new", "Critic", "Be kind.")
        self.assertEqual(self.engine.personas["gem-new"].system_prompt, "Be kind.")
        self.assertIsNone(updated.description)

        await self.engine.delete_persona("gem-new")
        self.assertNotIn("gem-new", self.engine.personas)

        create_request = self.upstream.requests_to(BATCH)[1]
        (call,) = json.loads(form_of(create_request)["f.req"])[0]
        self.assertEqual(call[0], RPC_CREATE_PERSONA)
        fields = json.loads(call[1])[0]
        self.assertEqual(fields[:3], ["Critic", "Reviews drafts", "Be harsh."])

    async def test_failed_create_raises(self) -> None:
        self.upstream.on(BATCH, respond(200, encode_stream([rpc_frame(RPC_CREATE_PERSONA, code=1037)])))

        with self.assertRaises(GeminiError) as ctx:
            await self.engine.create_persona("Critic", "Be harsh.")

        self.assertEqual(ctx.exception.kind, ErrorKind.RATE_LIMIT)

    async def test_expired_session_refreshes_and_retries(self) -> None:
        self.upstream.on(
            BATCH,
            respond(200, encode_stream([rpc_frame(RPC_DELETE_PERSONA, code=16)])),
            respond(200, encode_stream([rpc_frame(RPC_DELETE_PERSONA, [])])),
        )

        await self.engine.delete_persona("gem-1")

        requests = self.upstream.requests_to(BATCH)
        self.assertEqual(len(requests), 2)
        self.assertEqual(form_of(requests[1])["at"], "tok-2")


if __name__ == "__main__":
    unittest.main()
