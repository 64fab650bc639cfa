import asyncio
import unittest

import httpx

from gemini_bridge.errors import (
    ErrorKind,
    GeminiError,
    USER_MESSAGES,
    classify_error_code,
    classify_exception,
    classify_http_status,
    should_refresh,
    with_deadline,
)


class TestClassifyHttpStatus(unittest.TestCase):
    def test_success_is_not_an_error(self) -> None:
        self.assertIsNone(classify_http_status(200, "generate"))
        self.assertIsNone(classify_http_status(204, "generate"))

    def test_status_table(self) -> None:
        cases = [
            (401, None, ErrorKind.AUTH),
            (302, "https://accounts.google.com/ServiceLogin", ErrorKind.AUTH),
            (302, "https://www.google.com/sorry/index?continue=x", ErrorKind.NETWORK),
            (302, "https://gemini.google.com/elsewhere", ErrorKind.UNKNOWN),
            (429, None, ErrorKind.RATE_LIMIT),
            (400, None, ErrorKind.UNKNOWN),
            (500, None, ErrorKind.UNKNOWN),
        ]
        for status, location, kind in cases:
            with self.subTest(status=status, location=location):
                error = classify_http_status(status, "generate", location=location)
                self.assertEqual(error.kind, kind)
                self.assertEqual(error.status, status)
                self.assertEqual(error.endpoint, "generate")

    def test_body_is_truncated(self) -> None:
        error = classify_http_status(500, "generate", body=b"x" * 5000)

        self.assertLessEqual(len(error.body), 1003)
        self.assertTrue(error.body.endswith("..."))


class TestClassifyErrorCode(unittest.TestCase):
    def test_code_table(self) -> None:
        cases = {
            2: ErrorKind.ANTIBOT,
            1037: ErrorKind.RATE_LIMIT,
            1050: ErrorKind.MODEL_INVALID,
            1052: ErrorKind.MODEL_INVALID,
            1060: ErrorKind.NETWORK,
            3: ErrorKind.UNKNOWN,
            "garbage": ErrorKind.UNKNOWN,
        }
        for code, kind in cases.items():
            with self.subTest(code=code):
                self.assertEqual(classify_error_code(code, "generate").kind, kind)

    def test_model_name_is_mentioned(self) -> None:
        error = classify_error_code(1037, "generate", model_name="gemini-2.5-pro")

        self.assertIn("gemini-2.5-pro", str(error))
        self.assertEqual(error.code, 1037)


class TestClassifyException(unittest.TestCase):
    def test_timeouts(self) -> None:
        request = httpx.Request("GET", "https://gemini.google.com/app")

        self.assertEqual(classify_exception(httpx.ReadTimeout("slow", request=request), "x").kind, ErrorKind.TIMEOUT)
        self.assertEqual(classify_exception(asyncio.TimeoutError(), "x").kind, ErrorKind.TIMEOUT)

    def test_everything_else_is_network(self) -> None:
        request = httpx.Request("GET", "https://gemini.google.com/app")

        self.assertEqual(classify_exception(httpx.ConnectError("refused", request=request), "x").kind, ErrorKind.NETWORK)
        self.assertEqual(classify_exception(OSError("reset"), "x").kind, ErrorKind.NETWORK)

    def test_gemini_errors_pass_through(self) -> None:
        original = GeminiError(ErrorKind.PARSE, "bad")

        self.assertIs(classify_exception(original, "x"), original)


class TestGeminiError(unittest.TestCase):
    def test_every_kind_has_a_user_message(self) -> None:
        for kind in ErrorKind:
            if kind == ErrorKind.OK:
                continue
            self.assertIn(kind, USER_MESSAGES)
            self.assertEqual(GeminiError(kind, "detail").user_message, USER_MESSAGES[kind])

    def test_only_auth_is_worth_a_refresh(self) -> None:
        self.assertTrue(should_refresh(GeminiError(ErrorKind.AUTH, "expired")))
        for kind in (ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.ANTIBOT):
            self.assertFalse(should_refresh(GeminiError(kind, "no")))
        self.assertFalse(should_refresh(ValueError("not ours")))

    def test_str_carries_context(self) -> None:
        error = GeminiError(ErrorKind.RATE_LIMIT, "too many requests", endpoint="generate", status=429)

        self.assertEqual(str(error), "[RATE_LIMIT] generate: too many requests (status=429)")


class TestWithDeadline(unittest.IsolatedAsyncioTestCase):
    async def test_expiry_is_timeout(self) -> None:
        with self.assertRaises(GeminiError) as ctx:
            await with_deadline(asyncio.sleep(5), 0.01, "generate")

        self.assertEqual(ctx.exception.kind, ErrorKind.TIMEOUT)
        self.assertEqual(ctx.exception.endpoint, "generate")

    async def test_result_passes_through(self) -> None:
        async def answer() -> int:
            return 42

        self.assertEqual(await with_deadline(answer(), 1, "generate"), 42)
        self.assertEqual(await with_deadline(answer(), None, "generate"), 42)


if __name__ == "__main__":
    unittest.main()
