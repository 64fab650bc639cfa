import unittest

from tests._stream_test_utils import (
    candidate,
    data_frame,
    encode_chunk,
    encode_model_output,
    encode_stream,
    end_frame,
    error_frame,
    generated_image,
    inner_body,
    simple_reply,
    web_image,
)

from gemini_bridge.constants import SAFETY_REFUSAL_TEXT
from gemini_bridge.errors import ErrorKind, GeminiError
from gemini_bridge.schema import Candidate, ConversationMetadata, GeneratedImage, ModelOutput, WebImage
from gemini_bridge.stream_parser import ChunkReader, StreamParser


def parse(body: bytes, **kwargs) -> ModelOutput:
    parser = StreamParser(**kwargs)
    parser.feed(body)
    return parser.finish()


def parse_error(body: bytes) -> GeminiError:
    parser = StreamParser()
    try:
        parser.feed(body)
        parser.finish()
    except GeminiError as e:
        return e
    raise AssertionError("expected GeminiError")


def snapshot(output: ModelOutput):
    return (
        output.metadata,
        [
            (c.candidate_id, c.text, c.thoughts, c.web_images, c.generated_images)
            for c in output.candidates
        ],
        output.chosen_index,
    )


class TestChunkReader(unittest.TestCase):
    def test_prefix_split_across_feeds(self) -> None:
        reader = ChunkReader()
        self.assertEqual(reader.feed(b")]"), [])
        self.assertEqual(reader.feed(b"}'\n\n5\nab"), [])
        self.assertEqual(reader.feed(b"cde\n3\n[1]"), [b"abcde", b"[1]"])

    def test_missing_prefix_is_tolerated(self) -> None:
        reader = ChunkReader()
        self.assertEqual(reader.feed(b"3\n[1]\n"), [b"[1]"])

    def test_garbage_length_raises(self) -> None:
        reader = ChunkReader()
        with self.assertRaises(ValueError):
            reader.feed(b")]}'\n\nxyz\n[]")


class TestStreamParser(unittest.TestCase):
    def test_single_reply(self) -> None:
        output = parse(simple_reply("hello there"))

        self.assertEqual(output.text, "hello there")
        self.assertEqual(output.metadata, ConversationMetadata("c-1", "r-1", "k-1"))
        self.assertEqual(output.candidate_id, "k-1")
        self.assertIsNone(output.thoughts)
        self.assertEqual(output.images, [])

    def test_reasoning_text_replaces_empty_primary_text(self) -> None:
        body = inner_body("c-1", "r-1", [candidate("k-1", "", alt_text="answer", thoughts="because…")])

        output = parse(encode_stream([data_frame(body)]))

        self.assertEqual(output.text, "answer")
        self.assertEqual(output.thoughts, "because…")

    def test_card_content_placeholder_is_replaced(self) -> None:
        body = inner_body(
            "c-1",
            "r-1",
            [candidate("k-1", "http://googleusercontent.com/card_content/3", alt_text="rendered card")],
        )

        output = parse(encode_stream([data_frame(body)]))

        self.assertEqual(output.text, "rendered card")

    def test_thoughts_and_images_are_projected(self) -> None:
        body = inner_body(
            "c-1",
            "r-1",
            [
                candidate(
                    "k-1",
                    "look",
                    thoughts="thinking...",
                    web_images=[web_image("https://img.example/a.jpg", "A cat", "cat")],
                    generated_images=[generated_image("https://lh3.googleusercontent.com/gen", 1, ["a dog"])],
                )
            ],
        )

        output = parse(encode_stream([data_frame(body)]))

        self.assertEqual(output.thoughts, "thinking...")
        self.assertEqual(output.chosen.web_images, [WebImage("https://img.example/a.jpg", "A cat", "cat")])
        generated = output.chosen.generated_images[0]
        self.assertEqual(generated.url, "https://lh3.googleusercontent.com/gen")
        self.assertEqual(generated.title, "[Generated Image 1]")
        self.assertEqual(generated.alt, "a dog")
        self.assertEqual(generated.full_size_url(), "https://lh3.googleusercontent.com/gen=s2048")
        self.assertEqual(len(output.images), 2)

    def test_split_at_every_byte_boundary_matches_single_feed(self) -> None:
        body = encode_stream(
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "partial")]))],
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "partial and complete ✓", thoughts="t")]))],
        )
        expected = snapshot(parse(body))

        for split in range(len(body) + 1):
            parser = StreamParser()
            parser.feed(body[:split])
            parser.feed(body[split:])
            self.assertEqual(snapshot(parser.finish()), expected, f"split at {split}")

        parser = StreamParser()
        for i in range(len(body)):
            parser.feed(body[i : i + 1])
        self.assertEqual(snapshot(parser.finish()), expected)

    def test_encoded_outputs_parse_back_to_themselves(self) -> None:
        outputs = [
            ModelOutput(
                metadata=ConversationMetadata("c-9", "r-9", "rc-a"),
                candidates=[Candidate("rc-a", "first draft"), Candidate("rc-b", "second draft", thoughts="why")],
            ),
            ModelOutput(
                metadata=ConversationMetadata("c-10", "r-10", "rc-x"),
                candidates=[
                    Candidate(
                        "rc-x",
                        "pictures",
                        web_images=[WebImage("https://img.example/1.png", "One", "first")],
                        generated_images=[
                            GeneratedImage("https://lh3.googleusercontent.com/g1", "[Generated Image 1]", "alpha"),
                            GeneratedImage("https://lh3.googleusercontent.com/g2", "[Generated Image 2]", "beta"),
                        ],
                    )
                ],
            ),
        ]

        for output in outputs:
            self.assertEqual(snapshot(parse(encode_model_output(output))), snapshot(output))

    def test_latest_frame_with_content_wins(self) -> None:
        body = encode_stream(
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "draft")]))],
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "final")]))],
        )

        self.assertEqual(parse(body).text, "final")

    def test_empty_candidate_frames_keep_scanning(self) -> None:
        body = encode_stream(
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "")]))],
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "eventually")]))],
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "")]))],
        )

        self.assertEqual(parse(body).text, "eventually")

    def test_multiple_candidates_keep_their_order(self) -> None:
        body = encode_stream(
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "one"), candidate("k-2", "two")]))]
        )

        output = parse(body)

        self.assertEqual([c.candidate_id for c in output.candidates], ["k-1", "k-2"])
        self.assertEqual(output.metadata.reply_candidate_id, "k-1")

    def test_extension_flag_is_carried(self) -> None:
        self.assertTrue(parse(simple_reply("maps"), extension_reply=True).is_extension_reply)
        self.assertFalse(parse(simple_reply("maps")).is_extension_reply)

    def test_prefix_and_end_frame_only_is_empty_response(self) -> None:
        error = parse_error(encode_stream())

        self.assertEqual(error.kind, ErrorKind.EMPTY_RESPONSE)

    def test_only_empty_candidates_is_empty_response(self) -> None:
        error = parse_error(encode_stream([data_frame(inner_body("c-1", "r-1", [candidate("k-1", "")]))]))

        self.assertEqual(error.kind, ErrorKind.EMPTY_RESPONSE)

    def test_antibot_code_is_classified(self) -> None:
        error = parse_error(encode_stream([error_frame(2)]))

        self.assertEqual(error.kind, ErrorKind.ANTIBOT)
        self.assertEqual(error.code, 2)

    def test_known_inner_codes(self) -> None:
        cases = {
            1037: ErrorKind.RATE_LIMIT,
            1050: ErrorKind.MODEL_INVALID,
            1052: ErrorKind.MODEL_INVALID,
            1060: ErrorKind.NETWORK,
            7: ErrorKind.UNKNOWN,
        }
        for code, kind in cases.items():
            with self.subTest(code=code):
                error = parse_error(encode_stream([error_frame(code)]))
                self.assertEqual(error.kind, kind)
                self.assertEqual(error.code, code)

    def test_detailed_error_slot_is_read(self) -> None:
        frame = ["wrb.fr", None, None, None, None, [None, None, [[None, [1037]]]]]

        error = parse_error(encode_stream([frame]))

        self.assertEqual(error.kind, ErrorKind.RATE_LIMIT)

    def test_data_frames_without_candidates_and_failed_status_is_unknown(self) -> None:
        body = encode_stream([data_frame([None, ["c-1", "r-1"]])])

        error = parse_error(body)

        self.assertEqual(error.kind, ErrorKind.UNKNOWN)

    def test_invalid_json_chunk_is_parse_error(self) -> None:
        payload = b"[not json"
        body = b")]}'\n\n" + f"{len(payload)}\n".encode() + payload

        error = parse_error(body)

        self.assertEqual(error.kind, ErrorKind.PARSE)
        self.assertIn("not json", error.body)

    def test_truncated_stream_is_parse_error(self) -> None:
        body = encode_stream(end=False) + b"500\n[[\"wrb.fr\""

        error = parse_error(body)

        self.assertEqual(error.kind, ErrorKind.PARSE)

    def test_bytes_after_end_frame_are_ignored(self) -> None:
        parser = StreamParser()
        parser.feed(simple_reply("done"))
        self.assertTrue(parser.finished)

        parser.feed(b"garbage that would not parse")

        self.assertEqual(parser.finish().text, "done")

    def test_end_frame_found_inside_mixed_chunk(self) -> None:
        body = b")]}'\n\n" + encode_chunk(
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "x")])), end_frame()]
        )
        parser = StreamParser()
        parser.feed(body)

        self.assertTrue(parser.finished)
        self.assertEqual(parser.finish().text, "x")

    def test_safety_refusal_is_blocked(self) -> None:
        error = parse_error(simple_reply(SAFETY_REFUSAL_TEXT))

        self.assertEqual(error.kind, ErrorKind.BLOCKED)

    def test_search_redirect_is_blocked(self) -> None:
        error = parse_error(simple_reply("https://www.google.com/search?q=forbidden+thing"))

        self.assertEqual(error.kind, ErrorKind.BLOCKED)

    def test_missing_conversation_ids_is_parse_error(self) -> None:
        body = encode_stream([data_frame([None, None, None, None, [candidate("k-1", "orphan")]])])

        error = parse_error(body)

        self.assertEqual(error.kind, ErrorKind.PARSE)

    def test_unrelated_frames_are_skipped(self) -> None:
        body = encode_stream(
            [["di", 123], ["af.httprm", 45, "-1", 2]],
            [data_frame(inner_body("c-1", "r-1", [candidate("k-1", "ok")]))],
        )

        self.assertEqual(parse(body).text, "ok")

    def test_diagnostic_body_is_bounded(self) -> None:
        body = encode_stream([data_frame(inner_body("c-1", "r-1", [candidate("k-1", "y" * 5000)]))])
        parser = StreamParser()
        parser.feed(body)

        self.assertLessEqual(len(parser.diagnostic_body), 1000)
        self.assertEqual(parser.finish().text, "y" * 5000)


if __name__ == "__main__":
    unittest.main()
