"""Tests for gate_api/config.py

Covers:
- Defaults for metering limits
- Environment overrides via the API_ prefix
- Validation: negative limits, zero timeout, CORS wildcard, session secret
  outside dev, billing without Stripe secrets
- Conversion to GatePolicy
"""

from __future__ import annotations

import pytest
from gate_api.config import APISettings, PlatformEnv
from gate_core.subscriptions import PaymentFailurePolicy
from pydantic import ValidationError


class TestDefaults:
    """Settings constructed without overrides."""

    def test_metering_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("API_FREE_READS_PER_DAY", "API_ANONYMOUS_READS_PER_DAY", "API_GATE_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        settings = APISettings(_env_file=None)
        assert settings.free_reads_per_day == 3
        assert settings.anonymous_reads_per_day == 20
        assert settings.gate_timeout_seconds == 0.25
        assert settings.payment_failure_policy is PaymentFailurePolicy.ALWAYS_DOWNGRADE
        assert settings.billing_enabled is False

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("API_FREE_READS_PER_DAY", "5")
        monkeypatch.setenv("API_PAYMENT_FAILURE_POLICY", "ordered")
        settings = APISettings(_env_file=None)
        assert settings.free_reads_per_day == 5
        assert settings.payment_failure_policy is PaymentFailurePolicy.ORDERED


class TestValidation:
    """Misconfiguration fails at construction."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"free_reads_per_day": -1},
            {"anonymous_reads_per_day": -1},
            {"gate_timeout_seconds": 0},
        ],
    )
    def test_rejects_bad_limits(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            APISettings(_env_file=None, **overrides)

    def test_rejects_wildcard_with_credentials(self) -> None:
        with pytest.raises(ValidationError, match="wildcard"):
            APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)

    def test_wildcard_without_credentials_is_allowed(self) -> None:
        settings = APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=False)
        assert settings.cors_origins == ["*"]

    @pytest.mark.parametrize("env", [PlatformEnv.STAGING, PlatformEnv.PRODUCTION])
    def test_session_secret_required_outside_dev(self, env: PlatformEnv) -> None:
        with pytest.raises(ValidationError, match="API_SESSION_SECRET"):
            APISettings(_env_file=None, platform_env=env, session_secret="")

    def test_session_secret_optional_in_dev(self) -> None:
        settings = APISettings(_env_file=None, platform_env=PlatformEnv.DEV, session_secret="")
        assert settings.session_secret.get_secret_value() == ""

    def test_billing_requires_stripe_secrets(self) -> None:
        with pytest.raises(ValidationError, match="billing_enabled"):
            APISettings(_env_file=None, billing_enabled=True, stripe_secret_key="sk_test", stripe_webhook_secret="")


class TestGatePolicy:
    """Settings map onto the gate's policy."""

    def test_policy_fields(self) -> None:
        settings = APISettings(
            _env_file=None,
            free_reads_per_day=7,
            anonymous_reads_per_day=0,
            gate_timeout_seconds=1.5,
        )
        policy = settings.gate_policy()
        assert policy.daily_limit == 7
        assert policy.anonymous_allowance == 0
        assert policy.timeout_seconds == 1.5
