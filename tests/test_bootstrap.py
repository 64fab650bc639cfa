import unittest

from tests._stream_test_utils import FakeUpstream, landing_page, respond

from gemini_bridge.bootstrap import extract_access_token, extract_build_label, fetch_access_token
from gemini_bridge.errors import ErrorKind, GeminiError
from gemini_bridge.schema import CookieBundle


class TestTokenExtraction(unittest.TestCase):
    def test_whitespace_and_escapes_are_tolerated(self) -> None:
        html = 'x = {"SNlM0e"  :\n  "AB\\u003dcd\\/ef", "cfb2h": "boq_bl"}'

        self.assertEqual(extract_access_token(html), "AB=cd/ef")
        self.assertEqual(extract_build_label(html), "boq_bl")

    def test_missing_field(self) -> None:
        self.assertIsNone(extract_access_token("<html>nothing here</html>"))
        self.assertIsNone(extract_access_token('{"SNlM0e":""}'))


class TestFetchAccessToken(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.upstream = FakeUpstream()
        self.transport = self.upstream.transport()
        self.cookies = CookieBundle(primary="psid", rotator="psidts")

    async def asyncTearDown(self) -> None:
        await self.transport.close()

    async def _expect_error(self) -> GeminiError:
        with self.assertRaises(GeminiError) as ctx:
            await fetch_access_token(self.transport, self.cookies)
        return ctx.exception

    async def test_token_and_cookies_are_returned(self) -> None:
        self.upstream.on(
            "gemini.google.com/app",
            respond(
                200,
                landing_page("tok-xyz"),
                headers=[("set-cookie", "NID=511; Path=/"), ("set-cookie", "__Secure-1PSIDTS=fresh; Path=/; Secure")],
            ),
        )

        result = await fetch_access_token(self.transport, self.cookies)

        self.assertEqual(result.access_token, "tok-xyz")
        self.assertEqual(result.build_label, "boq_test_bl")
        self.assertEqual(result.session_id, "-4242")
        self.assertEqual(result.cookies.primary, "psid")
        self.assertEqual(result.cookies.rotator, "fresh")
        self.assertEqual(result.cookies.extras["NID"], "511")

        request = self.upstream.requests[0]
        self.assertIn("__Secure-1PSID=psid", request.headers["cookie"])
        self.assertEqual(request.headers["sec-fetch-mode"], "navigate")

    async def test_unauthorized_is_auth(self) -> None:
        self.upstream.on("gemini.google.com/app", respond(401, "nope"))

        self.assertEqual((await self._expect_error()).kind, ErrorKind.AUTH)

    async def test_accounts_redirect_is_auth(self) -> None:
        self.upstream.on(
            "gemini.google.com/app",
            respond(302, "", headers={"location": "https://accounts.google.com/ServiceLogin?continue=x"}),
        )

        error = await self._expect_error()

        self.assertEqual(error.kind, ErrorKind.AUTH)
        self.assertEqual(error.status, 302)

    async def test_blocking_redirect_is_network(self) -> None:
        self.upstream.on(
            "gemini.google.com/app",
            respond(302, "", headers={"location": "https://www.google.com/sorry/index?continue=x"}),
        )

        self.assertEqual((await self._expect_error()).kind, ErrorKind.NETWORK)

    async def test_consent_interstitial_is_auth(self) -> None:
        self.upstream.on(
            "gemini.google.com/app",
            respond(200, '<form action="https://consent.google.com/save" method="POST"></form>'),
        )

        self.assertEqual((await self._expect_error()).kind, ErrorKind.AUTH)

    async def test_missing_token_is_auth(self) -> None:
        self.upstream.on("gemini.google.com/app", respond(200, "<html>signed out</html>"))

        error = await self._expect_error()

        self.assertEqual(error.kind, ErrorKind.AUTH)
        self.assertIn("signed out", error.body)

    async def test_missing_primary_cookie_skips_network(self) -> None:
        self.cookies = CookieBundle()

        self.assertEqual((await self._expect_error()).kind, ErrorKind.AUTH)
        self.assertEqual(self.upstream.requests, [])


if __name__ == "__main__":
    unittest.main()
