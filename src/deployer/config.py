"""Configuration management with validation.

All inputs are validated at load time so a misconfigured pipeline agent
fails before any Azure API call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_WHATIF_TIMEOUT_SECONDS = 300
DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS = 1800
MIN_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 7200

MAX_DEPLOYMENT_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5

DEFAULT_SPEC_NAME = "deployment"
DEFAULT_BRANCH = "refs/heads/main"
DEFAULT_PIPELINE_FILE = "pipelines/azure-pipelines.yml"

# Resource limits enforced on input files and ARM requests
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_TEMPLATE_FILE_SIZE_BYTES = 4 * 1024 * 1024  # ARM request limit is 4MB
MAX_PIPELINE_FILE_SIZE_BYTES = 1024 * 1024
MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_WHATIF_CHANGES = 1000

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w\._\(\)]+$"
VALID_SPEC_NAME_PATTERN = r"^[a-z0-9][a-z0-9-_]{0,62}$"


@dataclass(frozen=True)
class Config:
    """Deployer configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pipeline.
    """

    # Required fields
    subscription_id: str
    location: str
    resource_group_name: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("specs"))
    templates_dir: Path = field(default_factory=lambda: Path("templates"))
    spec_name: str = DEFAULT_SPEC_NAME
    pipeline_file: Path = field(default_factory=lambda: Path(DEFAULT_PIPELINE_FILE))

    # Timing
    whatif_timeout_seconds: int = DEFAULT_WHATIF_TIMEOUT_SECONDS
    deployment_timeout_seconds: int = DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS

    # Identity
    client_id: str | None = None

    # Pipeline context
    source_branch: str = DEFAULT_BRANCH
    deploy_branch: str = DEFAULT_BRANCH

    # Behavior
    dry_run: bool = False
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        else:
            if len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
                errors.append(
                    f"RESOURCE_GROUP_NAME exceeds maximum length of "
                    f"{MAX_RESOURCE_GROUP_NAME_LENGTH}"
                )
            if not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
                errors.append(
                    f"RESOURCE_GROUP_NAME contains invalid characters: {self.resource_group_name}"
                )
            elif self.resource_group_name.endswith("."):
                errors.append("RESOURCE_GROUP_NAME cannot end with a period")

        if not re.match(VALID_SPEC_NAME_PATTERN, self.spec_name):
            errors.append(f"SPEC_NAME must match pattern {VALID_SPEC_NAME_PATTERN}: {self.spec_name}")

        for key, value in (
            ("WHATIF_TIMEOUT", self.whatif_timeout_seconds),
            ("DEPLOYMENT_TIMEOUT", self.deployment_timeout_seconds),
        ):
            if not (MIN_TIMEOUT_SECONDS <= value <= MAX_TIMEOUT_SECONDS):
                errors.append(
                    f"{key} must be between {MIN_TIMEOUT_SECONDS} "
                    f"and {MAX_TIMEOUT_SECONDS} seconds"
                )

        if not self.source_branch.startswith("refs/"):
            errors.append(f"BUILD_SOURCEBRANCH must be a full ref name: {self.source_branch}")
        if not self.deploy_branch.startswith("refs/"):
            errors.append(f"DEPLOY_BRANCH must be a full ref name: {self.deploy_branch}")

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def is_deploy_branch(self) -> bool:
        """True when the current source branch is allowed to deploy."""
        return self.source_branch == self.deploy_branch

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Default deployment location
            RESOURCE_GROUP_NAME: Target resource group
            SPECS_DIR: Path to YAML specs (default: ./specs)
            TEMPLATES_DIR: Path to Bicep/ARM templates (default: ./templates)
            SPEC_NAME: Spec file name without extension (default: deployment)
            PIPELINE_FILE: Pipeline definition (default: pipelines/azure-pipelines.yml)
            WHATIF_TIMEOUT: Timeout for what-if operations in seconds (default: 300)
            DEPLOYMENT_TIMEOUT: Timeout for deployments in seconds (default: 1800)
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            BUILD_SOURCEBRANCH: Branch being built (Azure DevOps predefined variable)
            DEPLOY_BRANCH: Branch allowed to deploy (default: refs/heads/main)
            DRY_RUN: If "true", validate and preview without applying
            ENABLE_AUDIT_LOGGING: Enable provenance audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        # GitHub Actions exposes the branch as GITHUB_REF
        source_branch = (
            os.environ.get("BUILD_SOURCEBRANCH")
            or os.environ.get("GITHUB_REF")
            or DEFAULT_BRANCH
        )

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "specs")),
            templates_dir=Path(os.environ.get("TEMPLATES_DIR", "templates")),
            spec_name=os.environ.get("SPEC_NAME", DEFAULT_SPEC_NAME),
            pipeline_file=Path(os.environ.get("PIPELINE_FILE", DEFAULT_PIPELINE_FILE)),
            whatif_timeout_seconds=get_int("WHATIF_TIMEOUT", DEFAULT_WHATIF_TIMEOUT_SECONDS),
            deployment_timeout_seconds=get_int(
                "DEPLOYMENT_TIMEOUT", DEFAULT_DEPLOYMENT_TIMEOUT_SECONDS
            ),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            source_branch=source_branch,
            deploy_branch=os.environ.get("DEPLOY_BRANCH", DEFAULT_BRANCH),
            dry_run=get_bool("DRY_RUN", False),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
