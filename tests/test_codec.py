"""
Unit tests for the JWT codec and key provider.
"""

import time

import jwt
import pytest

from oauth_server.codec import TokenCodec, scopes_from_claims
from oauth_server.errors import ExpiredToken, MalformedToken, NotYetValid
from oauth_server.keys import KeyProvider
from oauth_server.models import Token


def make_token(**overrides):
    now = int(time.time())
    values = {
        "value": "a" * 80,
        "client_id": "ac-client",
        "user_id": "user-1",
        "grant_type": "authorization_code",
        "scopes": ["auth_code_only", "both_grants"],
        "issued_at": now,
        "expires_at": now + 300,
    }
    values.update(overrides)
    return Token(**values)


class TestEncodeDecode:
    """Round trips under symmetric and asymmetric keys."""

    @pytest.mark.parametrize("keys_fixture", ["hs_keys", "rs_keys"])
    def test_round_trip(self, request, keys_fixture):
        codec = TokenCodec(request.getfixturevalue(keys_fixture))
        token = make_token()

        claims = codec.decode(codec.encode(token))

        assert claims["iss"] == "https://auth.example.com/"
        assert claims["aud"] == "ac-client"
        assert claims["sub"] == "user-1"
        assert claims["jti"] == token.value
        assert claims["exp"] == token.expires_at
        assert claims["iat"] == claims["nbf"]
        assert claims["scope"] == ["auth_code_only", "both_grants"]

    def test_jti_in_header(self, codec):
        token = make_token()

        header = jwt.get_unverified_header(codec.encode(token))

        assert header["jti"] == token.value
        assert header["alg"] == "HS256"
        assert header["typ"] == "JWT"

    def test_no_sub_without_user(self, codec):
        claims, _ = codec.build_claims(make_token(user_id=None))

        assert "sub" not in claims


class TestPrivateClaims:
    """Private claims callbacks."""

    def test_callbacks_run_in_order(self, codec):
        codec.add_private_claims_callback(lambda claims, token: claims.update(tenant="one"))
        codec.add_private_claims_callback(lambda claims, token: claims.update(tenant="two", level=3))

        claims, _ = codec.build_claims(make_token())

        assert claims["tenant"] == "two"
        assert claims["level"] == 3

    def test_registered_claim_collisions_dropped(self, codec):
        token = make_token()
        codec.add_private_claims_callback(
            lambda claims, t: claims.update(jti="forged", exp=1, aud="other", nbf=0, iat=0)
        )

        claims, _ = codec.build_claims(token)

        assert claims["jti"] == token.value
        assert claims["exp"] == token.expires_at
        assert claims["aud"] == "ac-client"

    def test_iss_and_sub_overridable(self, codec):
        codec.add_private_claims_callback(
            lambda claims, t: claims.update(iss="https://other.example.com/", sub="service")
        )

        claims = codec.decode(codec.encode(make_token()))

        assert claims["iss"] == "https://other.example.com/"
        assert claims["sub"] == "service"

    def test_unserializable_claim_skipped(self, codec):
        codec.add_private_claims_callback(lambda claims, t: claims.update(bad=object(), good="yes"))

        claims = codec.decode(codec.encode(make_token()))

        assert "bad" not in claims
        assert claims["good"] == "yes"


class TestDecodeFailures:
    """Decoding errors map to the token error taxonomy."""

    def test_expired(self, codec):
        token = make_token(expires_at=int(time.time()) - 60)

        with pytest.raises(ExpiredToken) as exc_info:
            codec.decode(codec.encode(token))

        assert exc_info.value.error_type == "access_denied"

    def test_not_yet_valid(self, hs_keys):
        future = time.time() + 3600
        codec = TokenCodec(hs_keys, clock=lambda: future)
        token = make_token(expires_at=int(future) + 300)

        with pytest.raises(NotYetValid):
            TokenCodec(hs_keys).decode(codec.encode(token))

    def test_wrong_key(self, codec):
        other = TokenCodec(KeyProvider(algorithm="HS256", secret="another-secret-of-at-least-32-bytes!"))

        with pytest.raises(MalformedToken):
            codec.decode(other.encode(make_token()))

    def test_garbage(self, codec):
        with pytest.raises(MalformedToken):
            codec.decode("not-a-jwt")

    def test_empty(self, codec):
        with pytest.raises(MalformedToken):
            codec.decode("")

    def test_unsigned_token_rejected(self, codec):
        unsigned = jwt.encode({"jti": "x", "exp": int(time.time()) + 60}, None, algorithm="none")

        with pytest.raises(MalformedToken):
            codec.decode(unsigned)

    def test_algorithm_pinned(self, rs_keys, hs_keys):
        hs_token = TokenCodec(hs_keys).encode(make_token())

        with pytest.raises(MalformedToken):
            TokenCodec(rs_keys).decode(hs_token)

    def test_header_jti_mismatch(self, hs_keys, codec):
        forged = jwt.encode(
            {"jti": "claim-jti", "exp": int(time.time()) + 60},
            hs_keys.signing_key,
            algorithm="HS256",
            headers={"jti": "header-jti"},
        )

        with pytest.raises(MalformedToken):
            codec.decode(forged)


class TestKeyProvider:
    """Key material loading."""

    def test_symmetric_requires_secret(self):
        with pytest.raises(ValueError):
            KeyProvider(algorithm="HS256")

    def test_asymmetric_requires_keys(self):
        with pytest.raises(ValueError):
            KeyProvider(algorithm="RS256")

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError):
            KeyProvider(algorithm="none", secret="x" * 32)

    def test_keys_from_files(self, rsa_pem_pair, tmp_path):
        private_pem, public_pem = rsa_pem_pair
        (tmp_path / "private.key").write_text(private_pem)
        (tmp_path / "public.key").write_text(public_pem)

        keys = KeyProvider(
            algorithm="RS256",
            private_key_path=str(tmp_path / "private.key"),
            public_key_path=str(tmp_path / "public.key"),
        )

        assert keys.signing_key == private_pem
        assert keys.verification_key == public_pem

    def test_public_jwk(self, rs_keys, hs_keys):
        jwk = rs_keys.public_jwk()

        assert jwk["kty"] == "RSA"
        assert jwk["alg"] == "RS256"
        assert "d" not in jwk
        assert hs_keys.public_jwk() is None


def test_scopes_from_claims():
    assert scopes_from_claims({"scope": ["a", "b"]}) == ["a", "b"]
    assert scopes_from_claims({"scope": "a b"}) == ["a", "b"]
    assert scopes_from_claims({}) == []
