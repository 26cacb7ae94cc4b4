"""Deployment provenance tracking for audit and compliance.

Every stage that touches Azure is stamped with a provenance record that
answers:
- "Which commit and spec produced this deployment?"
- "Which pipeline run and branch triggered it?"
- "What did the what-if preview predict, and what happened?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
DEPLOYER_VERSION = os.environ.get("DEPLOYER_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of what-if changes for provenance tracking."""

    create_count: int = 0
    modify_count: int = 0
    delete_count: int = 0
    deploy_count: int = 0
    no_change_count: int = 0
    ignore_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total significant changes (create + modify + delete + deploy)."""
        return self.create_count + self.modify_count + self.delete_count + self.deploy_count


@dataclass
class DeploymentProvenance:
    """Provenance record for a single pipeline stage."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    stage: str = ""
    deployer_version: str = DEPLOYER_VERSION

    # Source of truth (Azure DevOps predefined variables, GitHub fallbacks)
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""
    pipeline_run_id: str = ""
    spec_file_hash: str = ""

    # Azure context
    subscription_id: str = ""
    resource_group: str = ""
    deployment_name: str = ""

    # Outcome
    dry_run: bool = False
    provisioning_state: str = ""
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("BUILD_SOURCEVERSION") or os.environ.get(
            "GITHUB_SHA", ""
        )
        self._git_branch = os.environ.get("BUILD_SOURCEBRANCH") or os.environ.get(
            "GITHUB_REF", ""
        )
        self._git_repo = os.environ.get("BUILD_REPOSITORY_URI") or os.environ.get(
            "GITHUB_REPOSITORY", ""
        )
        self._run_id = os.environ.get("BUILD_BUILDID") or os.environ.get("GITHUB_RUN_ID", "")

    def create_provenance(
        self,
        stage: str,
        subscription_id: str,
        resource_group: str,
        spec_file_hash: str = "",
        dry_run: bool = False,
    ) -> DeploymentProvenance:
        """Create a provenance record for a stage."""
        return DeploymentProvenance(
            stage=stage,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            pipeline_run_id=self._run_id,
            spec_file_hash=spec_file_hash,
            subscription_id=subscription_id,
            resource_group=resource_group,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: DeploymentProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.ERROR if provenance.error else logging.INFO

        logger.log(
            log_level,
            "Deployment provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "stage": provenance.stage,
                "deployment_name": provenance.deployment_name,
                "provisioning_state": provenance.provisioning_state,
                "git_commit": provenance.git_commit_sha,
                "dry_run": provenance.dry_run,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
