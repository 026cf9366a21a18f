"""Tests for token verification and the Identity Gate."""
from datetime import timedelta

import jwt
import pytest

from chatrelay.auth.gate import IdentityGate, extract_bearer
from chatrelay.auth.service import JWTTokenVerifier
from chatrelay.errors import AuthErrorKind, Unauthenticated

SECRET = "chatrelay-test-secret-0123456789abcdef"


@pytest.fixture
def verifier():
    return JWTTokenVerifier(SECRET)


class TestExtractBearer:

    def test_valid_header(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer token") == "token"

    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing(self, header):
        with pytest.raises(Unauthenticated) as exc_info:
            extract_bearer(header)
        assert exc_info.value.kind == AuthErrorKind.MISSING

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "token-only"])
    def test_malformed(self, header):
        with pytest.raises(Unauthenticated) as exc_info:
            extract_bearer(header)
        assert exc_info.value.kind == AuthErrorKind.MALFORMED


class TestJWTTokenVerifier:

    def test_issue_and_verify(self, verifier):
        claims = verifier.verify(verifier.issue("alice"))
        assert claims.sub == "alice"
        assert claims.exp is not None

    def test_expired(self, verifier):
        token = verifier.issue("alice", expires_in=timedelta(seconds=-30))
        with pytest.raises(Unauthenticated) as exc_info:
            verifier.verify(token)
        assert exc_info.value.kind == AuthErrorKind.EXPIRED

    def test_wrong_signature(self, verifier):
        token = JWTTokenVerifier("chatrelay-other-secret-0123456789abcdef").issue("alice")
        with pytest.raises(Unauthenticated) as exc_info:
            verifier.verify(token)
        assert exc_info.value.kind == AuthErrorKind.MALFORMED

    def test_garbage(self, verifier):
        with pytest.raises(Unauthenticated) as exc_info:
            verifier.verify("not-a-jwt")
        assert exc_info.value.kind == AuthErrorKind.MALFORMED

    def test_missing_subject(self, verifier):
        token = jwt.encode({"name": "alice"}, SECRET, algorithm="HS256")
        with pytest.raises(Unauthenticated) as exc_info:
            verifier.verify(token)
        assert exc_info.value.kind == AuthErrorKind.MALFORMED

    def test_error_payload_includes_kind(self, verifier):
        with pytest.raises(Unauthenticated) as exc_info:
            verifier.verify("nope")
        assert exc_info.value.to_dict() == {
            "error": "unauthenticated",
            "kind": "malformed",
            "detail": "Token is invalid",
        }
        assert exc_info.value.status_code == 401


class TestIdentityGate:

    @pytest.mark.asyncio
    async def test_known_user(self, services):
        identity = await services.gate.authenticate(services.verifier.issue("bob"))
        assert identity.user_id == "bob"
        assert identity.username == "Bob"

    @pytest.mark.asyncio
    async def test_unknown_user(self, services):
        with pytest.raises(Unauthenticated) as exc_info:
            await services.gate.authenticate(services.verifier.issue("ghost"))
        assert exc_info.value.kind == AuthErrorKind.UNKNOWN_IDENTITY

    @pytest.mark.asyncio
    async def test_no_token(self, services):
        with pytest.raises(Unauthenticated) as exc_info:
            await services.gate.authenticate(None)
        assert exc_info.value.kind == AuthErrorKind.MISSING

    @pytest.mark.asyncio
    async def test_header_path(self, services):
        gate = IdentityGate(services.verifier, services.store)
        identity = await gate.authenticate_header(f"Bearer {services.verifier.issue('carol')}")
        assert identity.user_id == "carol"
