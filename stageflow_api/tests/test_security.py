"""Tests for token validation, the credential vault and application startup."""

from __future__ import annotations

import time

import pytest
from conftest import ORG_ID
from pydantic import SecretStr

from stageflow_api import dependencies
from stageflow_api.config import DEV_AUTH_TOKEN_SECRET, APISettings
from stageflow_api.main import create_app, lifespan
from stageflow_api.security import CredentialVault, TokenManager

_SECRET = SecretStr("test-secret-key-for-stageflow-tests")


class TestTokenManager:
    def test_valid_token(self, make_token) -> None:
        claims = TokenManager(_SECRET).validate_token(make_token(role="admin"))
        assert claims.tenant_id == ORG_ID
        assert claims.role == "admin"
        assert claims.identity_kind == "user"

    def test_expired_token(self, make_token) -> None:
        with pytest.raises(PermissionError, match="expired"):
            TokenManager(_SECRET).validate_token(make_token(expires_in=-1))

    def test_clock_passed_explicitly(self, make_token) -> None:
        token = make_token(expires_in=60)
        with pytest.raises(PermissionError, match="expired"):
            TokenManager(_SECRET).validate_token(token, now=time.time() + 120)

    def test_wrong_key(self, make_token) -> None:
        with pytest.raises(PermissionError, match="Signature"):
            TokenManager(SecretStr("another-key")).validate_token(make_token())

    def test_non_ascii_signature_rejected(self, make_token) -> None:
        payload_segment = make_token().split(".")[1]
        with pytest.raises(PermissionError, match="Signature"):
            TokenManager(_SECRET).validate_token(f"sf1.{payload_segment}.{'é' * 64}")

    def test_missing_tenant_claim(self, make_token) -> None:
        with pytest.raises(PermissionError, match="Malformed"):
            TokenManager(_SECRET).validate_token(make_token(tenant_id=""))

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            TokenManager(SecretStr(""))


class TestCredentialVault:
    def test_encrypts_and_decrypts(self) -> None:
        vault = CredentialVault("k1")
        ciphertext = vault.encrypt("whsec_abc")

        assert ciphertext != "whsec_abc"
        assert vault.decrypt(ciphertext) == "whsec_abc"

    def test_ciphertext_is_randomised(self) -> None:
        vault = CredentialVault("k1")
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_wrong_key_cannot_decrypt(self) -> None:
        ciphertext = CredentialVault("k1").encrypt("whsec_abc")
        with pytest.raises(ValueError):
            CredentialVault("k2").decrypt(ciphertext)

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            CredentialVault("")


class TestSettings:
    def test_wildcard_cors_with_credentials_rejected(self) -> None:
        with pytest.raises(ValueError):
            APISettings(cors_origins=["*"], cors_allow_credentials=True)

    def test_dev_secret_detected(self) -> None:
        assert APISettings(auth_token_secret=SecretStr(DEV_AUTH_TOKEN_SECRET)).uses_dev_auth_secret
        assert not APISettings().uses_dev_auth_secret


class TestLifespan:
    @pytest.mark.asyncio
    async def test_production_refuses_dev_secret(self, monkeypatch) -> None:
        monkeypatch.setenv("API_PLATFORM_ENV", "production")
        monkeypatch.setenv("API_AUTH_TOKEN_SECRET", DEV_AUTH_TOKEN_SECRET)

        with pytest.raises(RuntimeError, match="API_AUTH_TOKEN_SECRET"):
            async with lifespan(create_app()):
                pass

    @pytest.mark.asyncio
    async def test_builds_and_disposes_services(self, monkeypatch) -> None:
        monkeypatch.setenv("API_STRIPE_WEBHOOK_SECRET", "whsec_test_stageflow")

        async with lifespan(create_app()):
            assert dependencies.get_dispatcher() is not None
            assert dependencies.get_processor() is not None
            assert dependencies.get_retry_queue() is not None

        with pytest.raises(RuntimeError):
            dependencies.get_dispatcher()
        with pytest.raises(RuntimeError):
            dependencies.get_session_factory()
