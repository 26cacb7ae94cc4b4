"""Resource-group deployments through the Azure SDK for Python.

Wraps the three ARM operations the pipeline needs:
1. Validate - template and parameter validation by ARM
2. What-if  - preview of the changes a deployment would make
3. Create   - incremental deployment with retry

ARM remains the authoritative engine: this module submits requests, waits
for the long-running operations with a timeout, and reports ARM's own
results and error messages verbatim.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    DeploymentWhatIf,
    DeploymentWhatIfProperties,
)

from .config import (
    MAX_DEPLOYMENT_NAME_LENGTH,
    MAX_DEPLOYMENT_RETRIES,
    MAX_WHATIF_CHANGES,
    RETRY_BACKOFF_BASE_SECONDS,
    Config,
)
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .security import assert_no_plaintext_password

logger = logging.getLogger(__name__)

DEPLOYMENT_NAME_PREFIX = "vvm"


class DeploymentError(Exception):
    """Raised when ARM rejects or fails a validate, what-if or deployment request."""

    def __init__(self, message: str, *, stage: str = "", deployment_name: str = "") -> None:
        super().__init__(message)
        self.stage = stage
        self.deployment_name = deployment_name


class ChangeType(str, Enum):
    """ARM what-if change types."""

    CREATE = "Create"
    DELETE = "Delete"
    DEPLOY = "Deploy"
    IGNORE = "Ignore"
    MODIFY = "Modify"
    NO_CHANGE = "NoChange"
    UNSUPPORTED = "Unsupported"


SIGNIFICANT_CHANGE_TYPES: frozenset[str] = frozenset({
    ChangeType.CREATE.value,
    ChangeType.DELETE.value,
    ChangeType.DEPLOY.value,
    ChangeType.MODIFY.value,
})


def parse_resource_type_from_id(resource_id: str | None) -> str:
    """Extract resource type from an Azure resource ID.

    Returns:
        Resource type (e.g., "Microsoft.KeyVault/vaults") or "unknown".
    """
    if not resource_id:
        return "unknown"

    parts = resource_id.split("/providers/")
    if len(parts) < 2:
        return "unknown"

    segments = parts[-1].split("/")
    if len(segments) < 2:
        return "unknown"

    return f"{segments[0]}/{segments[1]}"


def _change_type_value(change_type: Any) -> str:
    return change_type.value if isinstance(change_type, Enum) else str(change_type)


@dataclass
class ResourceChangePreview:
    """A single predicted resource change."""

    resource_id: str
    change_type: str

    @property
    def resource_type(self) -> str:
        return parse_resource_type_from_id(self.resource_id)


@dataclass
class WhatIfSummary:
    """Condensed result of a what-if preview."""

    stage: str
    deployment_name: str
    changes: list[ResourceChangePreview] = field(default_factory=list)

    @property
    def significant_changes(self) -> list[ResourceChangePreview]:
        return [c for c in self.changes if c.change_type in SIGNIFICANT_CHANGE_TYPES]

    @property
    def has_changes(self) -> bool:
        return bool(self.significant_changes)

    def counts(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for change in self.changes:
            totals[change.change_type] = totals.get(change.change_type, 0) + 1
        return totals

    def to_provenance_summary(self) -> ChangeProvenanceSummary:
        counts = self.counts()
        return ChangeProvenanceSummary(
            create_count=counts.get(ChangeType.CREATE.value, 0),
            modify_count=counts.get(ChangeType.MODIFY.value, 0),
            delete_count=counts.get(ChangeType.DELETE.value, 0),
            deploy_count=counts.get(ChangeType.DEPLOY.value, 0),
            no_change_count=counts.get(ChangeType.NO_CHANGE.value, 0),
            ignore_count=counts.get(ChangeType.IGNORE.value, 0),
        )


@dataclass
class DeploymentOutcome:
    """Result of a validate or create request."""

    stage: str
    deployment_name: str
    provisioning_state: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.dry_run or self.provisioning_state == "Succeeded"


def _flatten_outputs(outputs: dict[str, Any] | None) -> dict[str, Any]:
    """ARM returns outputs as {"name": {"type": ..., "value": ...}}."""
    if not outputs:
        return {}
    return {
        name: (entry.get("value") if isinstance(entry, dict) else entry)
        for name, entry in outputs.items()
    }


class Deployer:
    """Submits deployments to a single resource group.

    Deployments are sequential (never more than one in flight per
    deployer). Long-running operations are awaited with the configured
    timeouts; only deployment creation is retried.
    """

    def __init__(self, config: Config, credential: TokenCredential) -> None:
        self._config = config
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def client(self) -> ResourceManagementClient:
        return self._client

    def deployment_name(self, stage: str) -> str:
        """Build a unique deployment name for a stage.

        Format: {prefix}-{stage}-{timestamp}-{suffix}, truncated so the
        result fits the ARM limit.
        """
        timestamp = int(time.time())
        random_suffix = random.randint(1000, 9999)
        # prefix + 1 + stage + 1 + 10 + 1 + 4
        reserved_len = len(DEPLOYMENT_NAME_PREFIX) + 17
        truncated_stage = stage[: MAX_DEPLOYMENT_NAME_LENGTH - reserved_len]
        name = f"{DEPLOYMENT_NAME_PREFIX}-{truncated_stage}-{timestamp}-{random_suffix}"

        if len(name) > MAX_DEPLOYMENT_NAME_LENGTH:
            raise DeploymentError(
                f"Deployment name '{name}' exceeds maximum length of "
                f"{MAX_DEPLOYMENT_NAME_LENGTH} characters",
                stage=stage,
            )
        return name

    async def validate(
        self, stage: str, template: dict[str, Any], parameters: dict[str, Any]
    ) -> DeploymentOutcome:
        """Ask ARM to validate a template and parameter set without deploying.

        Raises:
            DeploymentError: If ARM reports a validation error.
        """
        assert_no_plaintext_password(parameters)
        name = self.deployment_name(stage)
        outcome = DeploymentOutcome(stage=stage, deployment_name=name)
        deployment = Deployment(properties=self._properties(template, parameters))

        try:
            result = await self._execute_with_timeout(
                lambda: self._client.deployments.begin_validate(
                    self._config.resource_group_name, name, deployment
                ),
                timeout_seconds=self._config.whatif_timeout_seconds,
                operation_name="Validate",
            )
        except (HttpResponseError, TimeoutError) as e:
            raise self._wrap(e, "Validation", stage, name) from e

        error = getattr(result, "error", None)
        if error is not None:
            message = getattr(error, "message", None) or str(error)
            logger.error(
                "Template validation failed",
                extra={"stage": stage, "deployment_name": name, "error": message},
            )
            raise DeploymentError(
                f"Validation failed for stage '{stage}': {message}",
                stage=stage,
                deployment_name=name,
            )

        properties = getattr(result, "properties", None)
        outcome.provisioning_state = getattr(properties, "provisioning_state", None) or "Succeeded"
        outcome.end_time = datetime.now(UTC)
        logger.info(
            "Template validation passed",
            extra={"stage": stage, "deployment_name": name},
        )
        return outcome

    async def what_if(
        self, stage: str, template: dict[str, Any], parameters: dict[str, Any]
    ) -> WhatIfSummary:
        """Preview the changes a deployment would make.

        Raises:
            DeploymentError: If the what-if request fails or returns too many changes.
        """
        assert_no_plaintext_password(parameters)
        name = self.deployment_name(stage)
        whatif = DeploymentWhatIf(
            properties=DeploymentWhatIfProperties(
                template=template,
                parameters=parameters,
                mode=DeploymentMode.INCREMENTAL,
            ),
        )

        try:
            result = await self._execute_with_timeout(
                lambda: self._client.deployments.begin_what_if(
                    self._config.resource_group_name, name, whatif
                ),
                timeout_seconds=self._config.whatif_timeout_seconds,
                operation_name="WhatIf",
            )
        except (HttpResponseError, TimeoutError) as e:
            raise self._wrap(e, "What-if", stage, name) from e

        summary = WhatIfSummary(stage=stage, deployment_name=name)
        properties = getattr(result, "properties", None)
        changes = getattr(properties, "changes", None) or []

        # Bound the number of changes to avoid processing unexpectedly large responses
        if len(changes) > MAX_WHATIF_CHANGES:
            raise DeploymentError(
                f"What-if returned {len(changes)} changes, exceeding limit of "
                f"{MAX_WHATIF_CHANGES}",
                stage=stage,
                deployment_name=name,
            )

        for change in changes:
            summary.changes.append(
                ResourceChangePreview(
                    resource_id=change.resource_id,
                    change_type=_change_type_value(change.change_type),
                )
            )

        logger.info(
            "What-if completed",
            extra={
                "stage": stage,
                "deployment_name": name,
                "changes": summary.counts(),
                "has_changes": summary.has_changes,
            },
        )
        return summary

    async def deploy(
        self,
        stage: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
        *,
        spec_file_hash: str = "",
        what_if: WhatIfSummary | None = None,
    ) -> DeploymentOutcome:
        """Create or update a deployment, retrying transient ARM failures.

        In dry-run mode nothing is submitted and the outcome is marked dry_run.
        A ``what_if`` preview of the same template fills the change summary of
        the provenance record.

        Raises:
            DeploymentError: If all attempts fail or the operation times out.
        """
        assert_no_plaintext_password(parameters)
        name = self.deployment_name(stage)
        outcome = DeploymentOutcome(stage=stage, deployment_name=name, dry_run=self._config.dry_run)

        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            stage=stage,
            subscription_id=self._config.subscription_id,
            resource_group=self._config.resource_group_name,
            spec_file_hash=spec_file_hash,
            dry_run=self._config.dry_run,
        )
        provenance.deployment_name = name
        if what_if is not None:
            provenance.change_summary = what_if.to_provenance_summary()

        try:
            if self._config.dry_run:
                logger.info(
                    "Dry run: deployment skipped",
                    extra={"stage": stage, "deployment_name": name},
                )
                outcome.provisioning_state = "DryRun"
            else:
                result = await self._create_with_retry(stage, name, template, parameters)
                properties = getattr(result, "properties", None)
                outcome.provisioning_state = (
                    getattr(properties, "provisioning_state", None) or "Succeeded"
                )
                outcome.outputs = _flatten_outputs(getattr(properties, "outputs", None))

                if outcome.provisioning_state != "Succeeded":
                    raise DeploymentError(
                        f"Deployment '{name}' finished in state {outcome.provisioning_state}",
                        stage=stage,
                        deployment_name=name,
                    )
        except DeploymentError as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            outcome.end_time = datetime.now(UTC)
            provenance.provisioning_state = outcome.provisioning_state
            provenance.duration_seconds = outcome.duration_seconds
            if self._config.enable_audit_logging:
                provenance_logger.log_provenance(provenance)

        logger.info(
            "Deployment completed",
            extra={
                "stage": stage,
                "deployment_name": name,
                "provisioning_state": outcome.provisioning_state,
                "duration_seconds": outcome.duration_seconds,
            },
        )
        return outcome

    async def _create_with_retry(
        self,
        stage: str,
        name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> Any:
        """Create the deployment with exponential backoff retry.

        Raises:
            DeploymentError: If all retries fail.
        """
        deployment = Deployment(properties=self._properties(template, parameters))
        last_error: Exception | None = None

        for attempt in range(1, MAX_DEPLOYMENT_RETRIES + 1):
            try:
                return await self._execute_with_timeout(
                    lambda: self._client.deployments.begin_create_or_update(
                        self._config.resource_group_name, name, deployment
                    ),
                    timeout_seconds=self._config.deployment_timeout_seconds,
                    operation_name="Deployment",
                )
            except TimeoutError as e:
                # The deployment keeps running in ARM; retrying would start a second one
                raise self._wrap(e, "Deployment", stage, name) from e
            except HttpResponseError as e:
                last_error = e

                if attempt < MAX_DEPLOYMENT_RETRIES:
                    backoff = RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Deployment failed, retrying",
                        extra={
                            "stage": stage,
                            "attempt": attempt,
                            "max_attempts": MAX_DEPLOYMENT_RETRIES,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise self._wrap(last_error, "Deployment", stage, name) from last_error

    def _properties(
        self, template: dict[str, Any], parameters: dict[str, Any]
    ) -> DeploymentProperties:
        return DeploymentProperties(
            template=template,
            parameters=parameters,
            mode=DeploymentMode.INCREMENTAL,
        )

    def _wrap(self, error: Exception, operation: str, stage: str, name: str) -> DeploymentError:
        """Log an Azure failure and wrap it, keeping ARM's message verbatim."""
        if isinstance(error, TimeoutError):
            message = f"{operation} timed out for stage '{stage}'"
        else:
            message = f"{operation} failed for stage '{stage}': {error}"

        extra: dict[str, Any] = {"stage": stage, "deployment_name": name, "error": str(error)}
        if isinstance(error, HttpResponseError):
            extra["status_code"] = error.status_code
        logger.error(f"{operation} failed", extra=extra)
        return DeploymentError(message, stage=stage, deployment_name=name)

    async def _execute_with_timeout(
        self,
        begin_operation: Any,
        timeout_seconds: int,
        operation_name: str,
    ) -> Any:
        """Execute an Azure SDK poller operation with timeout.

        Args:
            begin_operation: Callable that returns an LROPoller.
            timeout_seconds: Maximum time to wait for operation completion.
            operation_name: Human-readable name for logging.

        Raises:
            TimeoutError: If operation exceeds timeout.
            HttpResponseError: If Azure API returns an error.
        """
        loop = asyncio.get_running_loop()

        poller = await loop.run_in_executor(None, begin_operation)

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, poller.result),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                f"{operation_name} timed out",
                extra={
                    "resource_group": self._config.resource_group_name,
                    "timeout_seconds": timeout_seconds,
                },
            )
            raise

    async def get_resource(self, resource_id: str, api_version: str, **kwargs: Any) -> Any:
        """Read a resource through the generic resources API.

        Extra keyword arguments (e.g. ``params={"$expand": "instanceView"}``)
        are passed through to the SDK request.

        Raises:
            AzureError: Propagated from the SDK (including ResourceNotFoundError).
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: self._client.resources.get_by_id(resource_id, api_version, **kwargs),
                ),
                timeout=self._config.whatif_timeout_seconds,
            )
        except AzureError as e:
            logger.warning(
                "Resource read failed",
                extra={"resource_id": resource_id, "error": str(e)},
            )
            raise
