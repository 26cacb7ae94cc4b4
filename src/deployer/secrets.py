"""Key Vault secret management for the VM admin password.

Key Vault owns storage, versioning and expiry enforcement. This module
only generates a compliant password, writes it with an expiry date, and
reads back metadata so the pipeline can decide whether a new version is
needed. Secret values are never logged.
"""

from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.keyvault.secrets import SecretClient, SecretProperties

from .models import SecretConfig

logger = logging.getLogger(__name__)

# Windows admin password rules
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 123
DEFAULT_PASSWORD_LENGTH = 24
DEFAULT_ROTATE_WITHIN_DAYS = 14

# Symbols that survive shell, JSON and RDP client quoting
PASSWORD_SYMBOLS = "!#$%()*+,-.:;<=>?@[]^_{|}~"

MASKED_VALUE = "********"

_EPOCH = datetime.min.replace(tzinfo=UTC)

_rng = random.SystemRandom()


class SecretError(Exception):
    """Raised when a Key Vault secret operation fails."""

    pass


def compute_expiry(days: int, now: datetime | None = None) -> datetime:
    """Expiry timestamp ``days`` whole days after ``now`` (UTC)."""
    if days < 1:
        raise ValueError(f"expiry days must be positive: {days}")
    base = now or datetime.now(UTC)
    if base.tzinfo is None:
        base = base.replace(tzinfo=UTC)
    return base.astimezone(UTC) + timedelta(days=days)


def _character_classes(value: str) -> int:
    return sum(
        (
            any(c.islower() for c in value),
            any(c.isupper() for c in value),
            any(c.isdigit() for c in value),
            any(c in PASSWORD_SYMBOLS for c in value),
        )
    )


def is_complex_password(value: str, username: str | None = None) -> bool:
    """Check a password against the Windows VM admin password rules.

    Azure requires 12-123 characters and at least three of the four
    character classes; generated passwords always carry all four. The
    username must not appear in the password.
    """
    if not (MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH):
        return False
    if _character_classes(value) < 3:
        return False
    if username and len(username) >= 3 and username.lower() in value.lower():
        return False
    return True


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH, username: str | None = None) -> str:
    """Generate a random password containing all four character classes.

    Raises:
        ValueError: If the length is outside the Windows limits.
    """
    if not (MIN_PASSWORD_LENGTH <= length <= MAX_PASSWORD_LENGTH):
        raise ValueError(
            f"password length must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH}"
        )

    pools = (string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS)
    alphabet = "".join(pools)

    while True:
        chars = [_rng.choice(pool) for pool in pools]
        chars.extend(_rng.choice(alphabet) for _ in range(length - len(pools)))
        _rng.shuffle(chars)
        password = "".join(chars)
        if is_complex_password(password, username) and _character_classes(password) == 4:
            return password


@dataclass
class SecretInfo:
    """Secret metadata; ``value`` is masked unless explicitly requested."""

    name: str
    version: str | None
    enabled: bool
    content_type: str | None
    created_on: datetime | None
    expires_on: datetime | None
    value: str = MASKED_VALUE

    def expires_within(self, days: int, now: datetime | None = None) -> bool:
        if self.expires_on is None:
            return False
        return self.expires_on <= (now or datetime.now(UTC)) + timedelta(days=days)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "version": self.version,
            "enabled": self.enabled,
            "contentType": self.content_type,
            "createdOn": self.created_on.isoformat() if self.created_on else None,
            "expiresOn": self.expires_on.isoformat() if self.expires_on else None,
            "value": self.value,
        }


@dataclass
class EnsureResult:
    """Outcome of ensure_secret: created, rotated or kept."""

    action: str
    secret: SecretInfo
    reason: str = ""


def _to_info(props: SecretProperties, value: str = MASKED_VALUE) -> SecretInfo:
    return SecretInfo(
        name=props.name,
        version=props.version,
        enabled=bool(props.enabled),
        content_type=props.content_type,
        created_on=props.created_on,
        expires_on=props.expires_on,
        value=value,
    )


class KeyVaultSecrets:
    """Secret operations against a single vault."""

    def __init__(self, vault_name: str, credential: TokenCredential) -> None:
        self._vault_name = vault_name
        self._vault_url = f"https://{vault_name}.vault.azure.net/"
        self._client = SecretClient(vault_url=self._vault_url, credential=credential)

    @property
    def vault_url(self) -> str:
        return self._vault_url

    def set_secret(
        self,
        name: str,
        value: str,
        expiry_days: int,
        content_type: str | None = None,
        now: datetime | None = None,
    ) -> SecretInfo:
        """Write a new secret version with an expiry date.

        Raises:
            SecretError: If Key Vault rejects the request.
        """
        expires_on = compute_expiry(expiry_days, now)
        try:
            secret = self._client.set_secret(
                name,
                value,
                enabled=True,
                content_type=content_type,
                expires_on=expires_on,
            )
        except HttpResponseError as e:
            logger.error(
                "Failed to set secret",
                extra={"vault": self._vault_name, "secret": name, "error": str(e)},
            )
            raise SecretError(f"Failed to set secret '{name}' in '{self._vault_name}': {e}") from e

        logger.info(
            "Secret version created",
            extra={
                "vault": self._vault_name,
                "secret": name,
                "version": secret.properties.version,
                "expires_on": expires_on.isoformat(),
            },
        )
        return _to_info(secret.properties)

    def _latest_properties(self, name: str) -> SecretProperties | None:
        # get_secret refuses disabled versions, the version listing does not
        try:
            versions = list(self._client.list_properties_of_secret_versions(name))
        except ResourceNotFoundError:
            return None
        if not versions:
            return None
        return sorted(versions, key=lambda p: p.created_on or _EPOCH)[-1]

    def show_secret(self, name: str, include_value: bool = False) -> SecretInfo | None:
        """Read the current version's metadata, or None if the secret does not exist.

        Metadata comes from the version listing so disabled secrets are
        reported rather than rejected. The value of a disabled secret
        stays masked even when ``include_value`` is set.

        Raises:
            SecretError: If Key Vault returns any other error.
        """
        try:
            props = self._latest_properties(name)
            if props is None:
                return None
            if not (include_value and props.enabled):
                return _to_info(props)
            secret = self._client.get_secret(name, props.version)
        except ResourceNotFoundError:
            return None
        except HttpResponseError as e:
            logger.error(
                "Failed to read secret",
                extra={"vault": self._vault_name, "secret": name, "error": str(e)},
            )
            raise SecretError(f"Failed to read secret '{name}' from '{self._vault_name}': {e}") from e

        return _to_info(secret.properties, secret.value or "")

    def ensure_secret(
        self,
        config: SecretConfig,
        username: str | None = None,
        rotate_within_days: int = DEFAULT_ROTATE_WITHIN_DAYS,
        now: datetime | None = None,
    ) -> EnsureResult:
        """Make sure a usable version of a declared secret exists.

        A new generated value is written when the secret is missing,
        disabled, already expired or expiring within ``rotate_within_days``.
        Secrets declared with ``generate: false`` are never written.

        Raises:
            SecretError: If the secret must exist but cannot be generated.
        """
        current_time = now or datetime.now(UTC)
        existing = self.show_secret(config.name)

        if existing is None:
            reason = "missing"
        elif not existing.enabled:
            reason = "disabled"
        elif existing.expires_within(rotate_within_days, current_time):
            reason = "expiring"
        else:
            logger.info(
                "Secret is current",
                extra={"vault": self._vault_name, "secret": config.name},
            )
            return EnsureResult(action="kept", secret=existing)

        if not config.generate:
            raise SecretError(
                f"Secret '{config.name}' in '{self._vault_name}' is {reason} and is not "
                f"marked for generation; store it with 'vvm secret set'"
            )

        info = self.set_secret(
            config.name,
            generate_password(username=username),
            expiry_days=config.expiry_days,
            content_type=config.content_type,
            now=current_time,
        )
        action = "created" if existing is None else "rotated"
        logger.info(
            f"Secret {action}",
            extra={"vault": self._vault_name, "secret": config.name, "reason": reason},
        )
        return EnsureResult(action=action, secret=info, reason=reason)
