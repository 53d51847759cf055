"""Tests for access-token minting and refresh-token generation."""

import base64
import hashlib
import json
from datetime import timedelta

import pytest

from backoffice.service.errors import InvalidTokenError
from backoffice.service.tokens import PERMISSION_CLAIM, TokenIssuer, hash_refresh_token
from backoffice.storage.models import User


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def user():
    return User(id="user-1", username="alice", email="alice@example.com")


class TestIssue:
    def test_claims(self, issuer, user, clock, settings):
        now = clock.now()
        tokens = issuer.issue(user, ["clients.read", "users.read"], now)
        payload = _payload(tokens.access_token)
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["sub"] == "user-1"
        assert payload["unique_name"] == "alice"
        assert payload["email"] == "alice@example.com"
        assert payload["jti"]
        assert payload[PERMISSION_CLAIM] == ["clients.read", "users.read"]
        assert payload["exp"] == int((now + timedelta(minutes=30)).timestamp())
        assert tokens.access_token_expires_at == now + timedelta(minutes=30)

    def test_advertised_expiry_matches_exp_claim(self, issuer, user, clock):
        now = clock.now() + timedelta(microseconds=900_000)
        tokens = issuer.issue(user, [], now)
        claims = issuer.decode_access_token(tokens.access_token, now)
        assert tokens.access_token_expires_at == claims.expires_at
        assert tokens.access_token_expires_at.microsecond == 0

    def test_single_permission_is_still_a_list(self, issuer, user, clock):
        payload = _payload(issuer.issue(user, ["users.read"], clock.now()).access_token)
        assert payload[PERMISSION_CLAIM] == ["users.read"]

    def test_token_ids_are_unique(self, issuer, user, clock):
        first = _payload(issuer.issue(user, [], clock.now()).access_token)
        second = _payload(issuer.issue(user, [], clock.now()).access_token)
        assert first["jti"] != second["jti"]

    def test_refresh_token_is_64_random_bytes(self, issuer):
        raw = issuer.generate_refresh_token()
        assert len(base64.b64decode(raw)) == 64
        assert raw != issuer.generate_refresh_token()

    def test_refresh_hash_is_base64_sha256(self):
        raw = "abc"
        expected = base64.b64encode(hashlib.sha256(b"abc").digest()).decode()
        assert hash_refresh_token(raw) == expected
        assert hash_refresh_token(raw) == hash_refresh_token(raw)

    def test_refresh_record_expires_after_seven_days(self, issuer, clock):
        now = clock.now()
        record = issuer.refresh_record("user-1", "raw-token", now)
        assert record.token_hash == hash_refresh_token("raw-token")
        assert record.expires_at == now + timedelta(days=7)
        assert record.revoked_at is None
        assert record.replaced_by_token_hash is None


class TestDecode:
    def test_round_trip(self, issuer, user, clock):
        tokens = issuer.issue(user, ["users.read"], clock.now())
        claims = issuer.decode_access_token(tokens.access_token, clock.now())
        assert claims.subject == "user-1"
        assert claims.username == "alice"
        assert claims.permissions == frozenset({"users.read"})

    def test_expired_token_rejected(self, issuer, user, clock):
        tokens = issuer.issue(user, [], clock.now())
        with pytest.raises(InvalidTokenError) as exc:
            issuer.decode_access_token(tokens.access_token, clock.advance(timedelta(minutes=30)))
        assert exc.value.message == "Access token expired"

    def test_tampered_payload_rejected(self, issuer, user, clock):
        header, _, signature = issuer.issue(user, [], clock.now()).access_token.split(".")
        forged = issuer._encode_segment(
            json.dumps({"sub": "admin", "iss": "backoffice", "aud": "backoffice-clients"}).encode()
        )
        with pytest.raises(InvalidTokenError):
            issuer.decode_access_token(f"{header}.{forged}.{signature}", clock.now())

    def test_other_secret_rejected(self, settings, user, clock):
        token = TokenIssuer(settings).issue(user, [], clock.now()).access_token
        other = TokenIssuer(settings.model_copy(update={"jwt_secret": "x" * 40}))
        with pytest.raises(InvalidTokenError):
            other.decode_access_token(token, clock.now())

    def test_wrong_audience_rejected(self, settings, user, clock):
        token = TokenIssuer(
            settings.model_copy(update={"jwt_audience": "someone-else"})
        ).issue(user, [], clock.now()).access_token
        with pytest.raises(InvalidTokenError):
            TokenIssuer(settings).decode_access_token(token, clock.now())

    def test_none_algorithm_rejected(self, issuer, clock):
        header = issuer._encode_segment(b'{"alg":"none","typ":"JWT"}')
        payload = issuer._encode_segment(b'{"sub":"u"}')
        with pytest.raises(InvalidTokenError):
            issuer.decode_access_token(f"{header}.{payload}.", clock.now())

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "é.é.é"])
    def test_malformed_tokens_rejected(self, issuer, clock, garbage):
        with pytest.raises(InvalidTokenError):
            issuer.decode_access_token(garbage, clock.now())

    def test_single_string_permission_claim_accepted(self, issuer, clock, settings):
        now = clock.now()
        token = issuer._encode_jwt(
            {
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "sub": "user-1",
                PERMISSION_CLAIM: "users.read",
                "exp": int((now + timedelta(minutes=5)).timestamp()),
            }
        )
        claims = issuer.decode_access_token(token, now)
        assert claims.permissions == frozenset({"users.read"})
