"""
Unit tests for bearer-token identity resolution.
"""
from typing import Callable

import jwt
import pytest

from otw_orders.config import Settings
from otw_orders.core.identity import (
    Authenticated,
    Guest,
    IdentityResolver,
    Invalid,
    token_roles,
)
from otw_orders.domain import AuthenticationRequiredError, PermissionDeniedError


@pytest.fixture
def resolver(test_settings: Settings) -> IdentityResolver:
    return IdentityResolver.from_settings(test_settings)


class TestIdentityResolver:
    """Test suite for IdentityResolver."""

    @pytest.mark.unit
    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token_is_guest(self, resolver: IdentityResolver, token: str) -> None:
        assert resolver.authenticate(token) == Guest()
        assert resolver.resolve(token) is None

    @pytest.mark.unit
    def test_valid_token(self, resolver: IdentityResolver, make_token: Callable[..., str]) -> None:
        token = make_token("user-42", email="u42@example.com")

        assert resolver.authenticate(token) == Authenticated("user-42", "u42@example.com")
        assert resolver.resolve(token) == "user-42"

    @pytest.mark.unit
    def test_alternate_identity_claims(
        self, resolver: IdentityResolver, test_settings: Settings
    ) -> None:
        token = jwt.encode({"uid": "firebase-uid"}, test_settings.jwt_secret_key, algorithm="HS256")
        assert resolver.resolve(token) == "firebase-uid"

    @pytest.mark.unit
    def test_expired_token_is_invalid(
        self, resolver: IdentityResolver, make_token: Callable[..., str]
    ) -> None:
        result = resolver.authenticate(make_token(expires_in=-60))
        assert isinstance(result, Invalid)
        assert "expired" in result.reason

    @pytest.mark.unit
    def test_wrong_signature_is_invalid(self, resolver: IdentityResolver) -> None:
        forged = jwt.encode(
            {"sub": "attacker"}, "another-secret-key-with-at-least-32-bytes", algorithm="HS256"
        )
        assert isinstance(resolver.authenticate(forged), Invalid)

    @pytest.mark.unit
    def test_token_without_identity_is_invalid(
        self, resolver: IdentityResolver, test_settings: Settings
    ) -> None:
        token = jwt.encode({"role": "user"}, test_settings.jwt_secret_key, algorithm="HS256")
        assert isinstance(resolver.authenticate(token), Invalid)

    @pytest.mark.unit
    def test_invalid_token_downgrades_to_guest_by_default(
        self, resolver: IdentityResolver
    ) -> None:
        assert resolver.resolve("not-a-jwt") is None

    @pytest.mark.unit
    def test_invalid_token_rejected_when_configured(self, test_settings: Settings) -> None:
        strict = IdentityResolver.from_settings(
            test_settings.model_copy(update={"reject_invalid_tokens": True})
        )

        with pytest.raises(AuthenticationRequiredError):
            strict.resolve("not-a-jwt")
        # No token is still a guest
        assert strict.resolve(None) is None

    @pytest.mark.unit
    def test_unconfigured_secret_treats_tokens_as_invalid(
        self, make_token: Callable[..., str]
    ) -> None:
        unconfigured = IdentityResolver(secret_key=None)
        assert isinstance(unconfigured.authenticate(make_token()), Invalid)
        assert unconfigured.resolve(make_token()) is None

    @pytest.mark.unit
    def test_require(self, resolver: IdentityResolver, make_token: Callable[..., str]) -> None:
        assert resolver.require(make_token("user-7")) == "user-7"
        with pytest.raises(AuthenticationRequiredError):
            resolver.require(None)
        with pytest.raises(AuthenticationRequiredError):
            resolver.require("garbage")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer   abc", "abc"),
            ("Basic dXNlcjpwYXNz", None),
            ("Bearer", None),
            ("Bearer   ", None),
            (None, None),
        ],
    )
    def test_parse_authorization_header(self, header: str, expected: str) -> None:
        assert IdentityResolver.parse_authorization_header(header) == expected


class TestRoles:
    """Test suite for role claims and IdentityResolver.require_role."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({}, set()),
            ({"roles": ["otw:admin", "support"]}, {"otw:admin", "support"}),
            ({"roles": "otw:admin"}, {"otw:admin"}),
            ({"scope": "orders:read otw:admin"}, {"orders:read", "otw:admin"}),
            ({"roles": ["support"], "scope": "otw:admin"}, {"support", "otw:admin"}),
        ],
    )
    def test_token_roles(self, payload: dict, expected: set) -> None:
        assert token_roles(payload) == expected

    @pytest.mark.unit
    def test_require_role_granted(
        self, resolver: IdentityResolver, make_token: Callable[..., str]
    ) -> None:
        token = make_token("ops-1", roles=["otw:admin"])

        assert resolver.require_role(token, "otw:admin") == "ops-1"

    @pytest.mark.unit
    def test_require_role_denied(
        self, resolver: IdentityResolver, make_token: Callable[..., str]
    ) -> None:
        with pytest.raises(PermissionDeniedError) as exc_info:
            resolver.require_role(make_token("user-123", scope="orders:read"), "otw:admin")

        assert exc_info.value.status_code == 403

    @pytest.mark.unit
    @pytest.mark.parametrize("token", [None, "not-a-jwt"])
    def test_require_role_without_identity(
        self, resolver: IdentityResolver, token: str
    ) -> None:
        with pytest.raises(AuthenticationRequiredError):
            resolver.require_role(token, "otw:admin")
