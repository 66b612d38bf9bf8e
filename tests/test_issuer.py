"""Tests for signed realtime token issuance."""

from __future__ import annotations

import base64
import re
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from speechsession.auth.issuer import TOKEN_PATH, RealtimeTokenIssuer, explain_status, speech_api_host
from speechsession.auth.signer import RequestSigner, SigningRequest
from speechsession.config import OCISigningConfig
from speechsession.errors import AuthError

TENANCY = "ocid1.tenancy.oc1..tenancy"


class RealtimeTokenIssuerTests(unittest.IsolatedAsyncioTestCase):
    """The issuer signs a POST and returns the upstream payload."""

    @classmethod
    def setUpClass(cls) -> None:
        cls.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cls.pem = cls.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

    async def asyncSetUp(self) -> None:
        self.requests = []
        self.response_status = 200
        self.response_body = {"token": "tok-abc", "sessionId": "sess-1", "compartmentId": TENANCY}

        async def issue(request: web.Request) -> web.StreamResponse:
            self.requests.append(
                {"headers": dict(request.headers), "body": await request.json(), "path": request.path}
            )
            return web.json_response(self.response_body, status=self.response_status)

        app = web.Application()
        app.router.add_post(TOKEN_PATH, issue)
        self.server = TestServer(app)
        await self.server.start_server()

        config = OCISigningConfig(
            user="ocid1.user.oc1..user",
            tenancy=TENANCY,
            fingerprint="aa:bb",
            region="eu-amsterdam-1",
            private_key_path="key.pem",
            private_key=self.pem,
        )
        base_url = str(self.server.make_url("/")).rstrip("/")
        self.issuer = RealtimeTokenIssuer(config, base_url=base_url)

    async def asyncTearDown(self) -> None:
        await self.issuer.close()
        await self.server.close()

    async def test_issue_posts_signed_request(self) -> None:
        payload = await self.issuer.issue()
        self.assertEqual(payload["token"], "tok-abc")

        sent = self.requests[0]
        self.assertEqual(sent["body"], {"compartmentId": TENANCY})
        authorization = sent["headers"]["Authorization"]
        self.assertIn('headers="(request-target) date host"', authorization)

        signing = SigningRequest(
            host=speech_api_host("eu-amsterdam-1"),
            path=TOKEN_PATH,
            method="POST",
            date=sent["headers"]["Date"],
        )
        _, text = RequestSigner.signing_string(signing)
        signature = re.search(r'signature="([^"]+)"', authorization).group(1)
        self.key.public_key().verify(
            base64.b64decode(signature), text.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
        )

    async def test_not_found_carries_hint(self) -> None:
        self.response_status = 404
        self.response_body = {"code": "NotAuthorizedOrNotFound"}
        with self.assertRaises(AuthError) as ctx:
            await self.issuer.issue()
        self.assertEqual(ctx.exception.status, 404)
        self.assertIn("region", str(ctx.exception))

    async def test_missing_token_rejected(self) -> None:
        self.response_body = {"sessionId": "sess-1"}
        with self.assertRaisesRegex(AuthError, "missing token"):
            await self.issuer.issue()


class ExplainStatusTests(unittest.TestCase):
    def test_hints(self) -> None:
        self.assertIn("private key", explain_status(401))
        self.assertIn("IAM", explain_status(403))
        self.assertIn("region", explain_status(404))
        self.assertIn("Unexpected", explain_status(500))


if __name__ == "__main__":
    unittest.main()
