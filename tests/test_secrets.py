"""Tests for Key Vault secret management."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from azure_mock import MockAzureContext

from deployer.models import SecretConfig
from deployer.secrets import (
    MASKED_VALUE,
    PASSWORD_SYMBOLS,
    KeyVaultSecrets,
    SecretError,
    SecretInfo,
    compute_expiry,
    generate_password,
    is_complex_password,
)

from conftest import SECRET_NAME, VAULT_NAME, VAULT_URL

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _secret_config(**overrides: object) -> SecretConfig:
    data: dict[str, object] = {"name": SECRET_NAME, "contentType": "password", "expiryDays": 90}
    data.update(overrides)
    return SecretConfig.model_validate(data)


class TestComputeExpiry:
    def test_adds_days(self) -> None:
        assert compute_expiry(90, NOW) == NOW + timedelta(days=90)

    def test_naive_time_treated_as_utc(self) -> None:
        expiry = compute_expiry(1, datetime(2026, 3, 1))
        assert expiry == datetime(2026, 3, 2, tzinfo=UTC)

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError, match="positive"):
            compute_expiry(0, NOW)


class TestPasswordRules:
    @pytest.mark.parametrize(
        ("password", "expected"),
        [
            ("Abcdefgh1234", True),
            ("abcdefgh1234!", True),
            ("Abc1!", False),  # too short
            ("abcdefghijklmn", False),  # one class
            ("abcdefgh12345", False),  # two classes
            ("A" * 124 + "a1!", False),  # too long
        ],
    )
    def test_complexity(self, password: str, expected: bool) -> None:
        assert is_complex_password(password) is expected

    def test_username_not_allowed(self) -> None:
        assert is_complex_password("Xsqladmin-2026!", username="sqladmin") is False
        assert is_complex_password("Xsqladmin-2026!", username="other") is True

    def test_generated_password_has_all_classes(self) -> None:
        for _ in range(20):
            password = generate_password(username="sqladmin")
            assert len(password) == 24
            assert any(c.islower() for c in password)
            assert any(c.isupper() for c in password)
            assert any(c.isdigit() for c in password)
            assert any(c in PASSWORD_SYMBOLS for c in password)
            assert "sqladmin" not in password.lower()

    def test_generated_passwords_differ(self) -> None:
        assert generate_password() != generate_password()

    @pytest.mark.parametrize("length", [11, 124])
    def test_invalid_length(self, length: int) -> None:
        with pytest.raises(ValueError):
            generate_password(length)


class TestSecretInfo:
    def test_expires_within(self) -> None:
        info = SecretInfo(
            name="pw", version="1", enabled=True, content_type=None,
            created_on=NOW, expires_on=NOW + timedelta(days=10),
        )
        assert info.expires_within(14, NOW) is True
        assert info.expires_within(7, NOW) is False

    def test_no_expiry_never_expires(self) -> None:
        info = SecretInfo(
            name="pw", version="1", enabled=True, content_type=None,
            created_on=None, expires_on=None,
        )
        assert info.expires_within(3650, NOW) is False
        assert info.to_dict()["value"] == MASKED_VALUE


class TestKeyVaultSecrets:
    def test_set_secret_with_expiry(self) -> None:
        with MockAzureContext() as ctx:
            secrets = KeyVaultSecrets(VAULT_NAME, ctx.credential)
            info = secrets.set_secret(SECRET_NAME, "S3cret-Value!", 90, "password", now=NOW)
            stored = ctx.secrets.current(VAULT_URL, SECRET_NAME)

        assert secrets.vault_url == VAULT_URL
        assert stored is not None
        assert stored.value == "S3cret-Value!"
        assert stored.properties.expires_on == NOW + timedelta(days=90)
        assert stored.properties.content_type == "password"
        # Values are never returned from a write
        assert info.value == MASKED_VALUE
        assert info.expires_on == NOW + timedelta(days=90)

    def test_show_missing_secret(self) -> None:
        with MockAzureContext() as ctx:
            assert KeyVaultSecrets(VAULT_NAME, ctx.credential).show_secret("missing") is None

    def test_show_secret_masks_value(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "plain")
            secrets = KeyVaultSecrets(VAULT_NAME, ctx.credential)

            masked = secrets.show_secret(SECRET_NAME)
            revealed = secrets.show_secret(SECRET_NAME, include_value=True)

        assert masked is not None and masked.value == MASKED_VALUE
        assert revealed is not None and revealed.value == "plain"

    def test_show_disabled_secret_reads_metadata(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "plain", enabled=False)
            secrets = KeyVaultSecrets(VAULT_NAME, ctx.credential)

            info = secrets.show_secret(SECRET_NAME, include_value=True)

        assert info is not None
        assert info.enabled is False
        assert info.value == MASKED_VALUE

    def test_show_reports_newest_version(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "old", enabled=False)
            newest = ctx.secrets.put(VAULT_URL, SECRET_NAME, "new", content_type="password")
            info = KeyVaultSecrets(VAULT_NAME, ctx.credential).show_secret(
                SECRET_NAME, include_value=True
            )

        assert info is not None
        assert info.version == newest.properties.version
        assert info.enabled is True
        assert info.value == "new"

    def test_request_failure_wrapped(self) -> None:
        with MockAzureContext(fail_secrets=True) as ctx:
            secrets = KeyVaultSecrets(VAULT_NAME, ctx.credential)
            with pytest.raises(SecretError, match="Forbidden"):
                secrets.show_secret(SECRET_NAME)
            with pytest.raises(SecretError, match="Failed to set secret"):
                secrets.set_secret(SECRET_NAME, "x" * 16, 30)


class TestEnsureSecret:
    """Tests for create / keep / rotate decisions."""

    def test_creates_missing_secret(self) -> None:
        with MockAzureContext() as ctx:
            result = KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                _secret_config(), username="sqladmin", now=NOW
            )
            stored = ctx.secrets.current(VAULT_URL, SECRET_NAME)

        assert result.action == "created"
        assert result.reason == "missing"
        assert stored is not None
        assert is_complex_password(stored.value or "", "sqladmin")
        assert stored.properties.expires_on == NOW + timedelta(days=90)

    def test_keeps_current_secret(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "Existing-Passw0rd", expires_on=NOW + timedelta(days=60))
            result = KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                _secret_config(), now=NOW
            )
            versions = ctx.secrets.versions(VAULT_URL, SECRET_NAME)

        assert result.action == "kept"
        assert len(versions) == 1

    def test_rotates_expiring_secret(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "Existing-Passw0rd", expires_on=NOW + timedelta(days=3))
            result = KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                _secret_config(), now=NOW
            )
            versions = ctx.secrets.versions(VAULT_URL, SECRET_NAME)

        assert result.action == "rotated"
        assert result.reason == "expiring"
        assert len(versions) == 2
        assert versions[-1].value != "Existing-Passw0rd"

    def test_rotates_disabled_secret(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "Existing-Passw0rd", enabled=False)
            result = KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                _secret_config(), now=NOW
            )
            current = ctx.secrets.current(VAULT_URL, SECRET_NAME)

        assert result.action == "rotated"
        assert result.reason == "disabled"
        assert current is not None
        assert current.properties.enabled is True
        assert current.value != "Existing-Passw0rd"

    def test_custom_rotation_window(self) -> None:
        with MockAzureContext() as ctx:
            ctx.secrets.put(VAULT_URL, SECRET_NAME, "Existing-Passw0rd", expires_on=NOW + timedelta(days=20))
            result = KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                _secret_config(), rotate_within_days=30, now=NOW
            )

        assert result.action == "rotated"

    def test_non_generated_secret_not_written(self) -> None:
        with MockAzureContext() as ctx:
            with pytest.raises(SecretError, match="vvm secret set"):
                KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(
                    _secret_config(generate=False), now=NOW
                )
            assert ctx.secrets.current(VAULT_URL, SECRET_NAME) is None

    def test_secret_value_not_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("DEBUG"):
            with MockAzureContext() as ctx:
                KeyVaultSecrets(VAULT_NAME, ctx.credential).ensure_secret(_secret_config(), now=NOW)
                value = ctx.secrets.current(VAULT_URL, SECRET_NAME).value  # type: ignore[union-attr]

        for record in caplog.records:
            assert value not in record.getMessage()
            assert value not in str(record.__dict__)
