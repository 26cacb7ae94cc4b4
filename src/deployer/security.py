"""Security enforcement for secretless deployments.

The deployer never authenticates with stored secrets:
- On Azure-hosted agents it uses a User-Assigned Managed Identity
- On pipeline agents it reuses the Azure CLI login established by a
  federated (workload identity) service connection

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. The VM admin password only ever reaches ARM as a Key Vault reference
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

# Parameter names that must be Key Vault references in deployment parameters
PASSWORD_PARAMETER_NAMES: tuple[str, ...] = ("adminPassword",)

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

This deployer only authenticates with Managed Identity or a federated
Azure CLI login.

Detected: {env_var}

RESOLUTION:
  1. Remove all credential environment variables
  2. Use a workload identity federation service connection, or
  3. Assign a User-Assigned Managed Identity to the agent and set AZURE_CLIENT_ID

See: https://learn.microsoft.com/azure/devops/pipelines/library/connect-to-azure
"""


class SecretlessViolationError(Exception):
    """Raised when the secretless model is violated.

    This is a fatal security error; the deployer MUST NOT proceed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info("Secretless architecture verified", extra={"security_event": "secretless_verified"})


def get_credential(client_id: str | None = None) -> TokenCredential:
    """Get a credential after verifying the secretless model.

    This is the ONLY way to obtain credentials in this codebase.

    Args:
        client_id: Client ID of a user-assigned managed identity. When None,
            the Azure CLI login of the pipeline agent is used.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using Azure CLI credential")
    return AzureCliCredential()


def assert_no_plaintext_password(parameters: dict[str, Any]) -> None:
    """Reject deployment parameters that carry a literal password.

    Raises:
        SecretlessViolationError: If a password parameter is not a Key Vault reference.
    """
    for name in PASSWORD_PARAMETER_NAMES:
        entry = parameters.get(name)
        if entry is None:
            continue
        if not isinstance(entry, dict) or "reference" not in entry:
            logger.critical(
                "Plain-text password in deployment parameters",
                extra={"security_event": "plaintext_password", "parameter": name},
            )
            raise SecretlessViolationError(
                f"Parameter '{name}' must be a Key Vault reference, not a literal value"
            )


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event for SIEM ingestion."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
