"""Tests for signed OAuth state tokens and callback URL helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from src.app.config import Environment, Settings
from src.app.integrations import oauth
from src.app.integrations.exceptions import (
    ConfigurationError,
    OAuthStateExpiredError,
    OAuthStateMalformedError,
    OAuthStateSignatureError,
)
from src.app.integrations.oauth import (
    generate_oauth_state,
    get_redirect_uri,
    get_webhook_url,
    verify_oauth_state,
)
from src.app.integrations.schemas import CRMProvider

SECRET = "state-secret-for-tests"


# ── Round Trip ───────────────────────────────────────────────────────────────


class TestStateRoundTrip:
    def test_claims_survive_round_trip(self):
        """verify(generate(o, p)) yields the same organization and provider."""
        token = generate_oauth_state("org-1", CRMProvider.SALESFORCE, secret=SECRET)
        state = verify_oauth_state(token, secret=SECRET)
        assert state.organization_id == "org-1"
        assert state.provider == CRMProvider.SALESFORCE
        assert len(state.nonce) == 32

    def test_each_state_has_a_fresh_nonce(self):
        """Two states for the same org and provider differ."""
        first = generate_oauth_state("org-1", CRMProvider.HUBSPOT, secret=SECRET)
        second = generate_oauth_state("org-1", CRMProvider.HUBSPOT, secret=SECRET)
        assert first != second

    def test_state_just_inside_window_is_accepted(self):
        """A state 9 minutes old still verifies."""
        issued = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        token = generate_oauth_state("org-1", CRMProvider.ATTIO, secret=SECRET, now=issued)
        state = verify_oauth_state(token, secret=SECRET, now=issued + timedelta(minutes=9))
        assert state.provider == CRMProvider.ATTIO


# ── Rejections ───────────────────────────────────────────────────────────────


class TestStateRejections:
    def test_expired_state(self):
        """A state older than 10 minutes is OAuthStateExpiredError."""
        issued = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        token = generate_oauth_state("org-1", CRMProvider.HUBSPOT, secret=SECRET, now=issued)
        with pytest.raises(OAuthStateExpiredError):
            verify_oauth_state(token, secret=SECRET, now=issued + timedelta(minutes=11))

    def test_wrong_secret_is_signature_error(self):
        """Verifying under a different secret fails the signature check."""
        token = generate_oauth_state("org-1", CRMProvider.HUBSPOT, secret=SECRET)
        with pytest.raises(OAuthStateSignatureError):
            verify_oauth_state(token, secret="another-secret")

    def test_altered_payload_is_signature_error(self):
        """Swapping the payload segment (new organization) breaks the signature."""
        token = generate_oauth_state("org-1", CRMProvider.HUBSPOT, secret=SECRET)
        forged = jwt.encode(
            {**jwt.get_unverified_claims(token), "organization_id": "org-evil"},
            "attacker-secret",
            algorithm="HS256",
        )
        header, _, signature = token.split(".")
        tampered = f"{header}.{forged.split('.')[1]}.{signature}"
        with pytest.raises(OAuthStateSignatureError):
            verify_oauth_state(tampered, secret=SECRET)

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b"])
    def test_malformed_state(self, token):
        """Empty and non-JWT strings are OAuthStateMalformedError."""
        with pytest.raises(OAuthStateMalformedError):
            verify_oauth_state(token, secret=SECRET)

    def test_missing_claims_is_malformed(self):
        """A correctly signed token without the expected claims is malformed."""
        token = jwt.encode({"organization_id": "org-1"}, SECRET, algorithm="HS256")
        with pytest.raises(OAuthStateMalformedError):
            verify_oauth_state(token, secret=SECRET)

    def test_unknown_provider_claim_is_malformed(self):
        """A provider outside the supported set is malformed."""
        token = jwt.encode(
            {"organization_id": "org-1", "provider": "pipedrive", "timestamp": 0, "nonce": "n"},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(OAuthStateMalformedError):
            verify_oauth_state(token, secret=SECRET)


# ── Configuration ────────────────────────────────────────────────────────────


class TestStateSecret:
    def test_missing_secret_in_production(self, monkeypatch):
        """Production requires OAUTH_STATE_SECRET."""
        settings = Settings(ENVIRONMENT=Environment.production, OAUTH_STATE_SECRET="")
        monkeypatch.setattr(oauth, "get_settings", lambda: settings)
        with pytest.raises(ConfigurationError):
            generate_oauth_state("org-1", CRMProvider.HUBSPOT)

    def test_development_falls_back_to_dev_secret(self, monkeypatch):
        """Outside production an empty secret still signs and verifies."""
        settings = Settings(ENVIRONMENT=Environment.development, OAUTH_STATE_SECRET="")
        monkeypatch.setattr(oauth, "get_settings", lambda: settings)
        token = generate_oauth_state("org-1", CRMProvider.HUBSPOT)
        assert verify_oauth_state(token).organization_id == "org-1"


class TestCallbackUrls:
    def test_redirect_and_webhook_urls(self):
        """URLs hang off APP_BASE_URL with the provider slug."""
        settings = Settings(APP_BASE_URL="https://crm.example.com/api/v1/")
        assert (
            get_redirect_uri(CRMProvider.HUBSPOT, settings)
            == "https://crm.example.com/api/v1/integrations/hubspot/callback"
        )
        assert (
            get_webhook_url(CRMProvider.ATTIO, settings)
            == "https://crm.example.com/api/v1/webhooks/attio"
        )
