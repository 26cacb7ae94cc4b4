"""Tests for resource-group deployments against the mocked ARM API."""

from __future__ import annotations

import dataclasses
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure_mock import MockAzureContext

from deployer.config import MAX_DEPLOYMENT_NAME_LENGTH, MAX_DEPLOYMENT_RETRIES, Config
from deployer.deployments import (
    ChangeType,
    Deployer,
    DeploymentError,
    ResourceChangePreview,
    WhatIfSummary,
    parse_resource_type_from_id,
)
from deployer.models import DeploymentSpec
from deployer.security import SecretlessViolationError
from deployer.templates import (
    KEY_VAULT_API_VERSION,
    build_keyvault_template,
    key_vault_resource_id,
)

from conftest import RESOURCE_GROUP, SUBSCRIPTION_ID, VAULT_NAME

VAULT_ID = key_vault_resource_id(SUBSCRIPTION_ID, RESOURCE_GROUP, VAULT_NAME)


@pytest.fixture
def no_sleep():
    with patch("deployer.deployments.asyncio.sleep", new=AsyncMock()) as sleep_mock:
        yield sleep_mock


def _keyvault(spec: DeploymentSpec) -> tuple[dict[str, Any], dict[str, Any]]:
    return build_keyvault_template(spec.key_vault), spec.keyvault_parameters()


class TestDeploymentName:
    def test_format(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            name = Deployer(config, ctx.credential).deployment_name("keyvault")

        assert name.startswith("vvm-keyvault-")
        assert len(name) <= MAX_DEPLOYMENT_NAME_LENGTH

    def test_long_stage_truncated(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            name = Deployer(config, ctx.credential).deployment_name("s" * 100)

        assert len(name) <= MAX_DEPLOYMENT_NAME_LENGTH

    def test_client_uses_subscription(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            Deployer(config, ctx.credential)
            assert ctx.clients[0].subscription_id == SUBSCRIPTION_ID


class TestValidate:
    @pytest.mark.asyncio
    async def test_valid_template(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            outcome = await Deployer(config, ctx.credential).validate("keyvault", *_keyvault(spec))

            assert outcome.provisioning_state == "Succeeded"
            assert ctx.get_deployment_count() == 0

    @pytest.mark.asyncio
    async def test_missing_parameter_reported_verbatim(
        self, config: Config, spec: DeploymentSpec
    ) -> None:
        template, parameters = _keyvault(spec)
        del parameters["keyVaultName"]

        with MockAzureContext() as ctx:
            with pytest.raises(DeploymentError) as exc_info:
                await Deployer(config, ctx.credential).validate("keyvault", template, parameters)

        assert "The value for the template parameter 'keyVaultName' is not provided." in str(
            exc_info.value
        )
        assert exc_info.value.stage == "keyvault"

    @pytest.mark.asyncio
    async def test_validation_error(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext(fail_validation=True) as ctx:
            with pytest.raises(DeploymentError, match="Simulated validation failure"):
                await Deployer(config, ctx.credential).validate("keyvault", *_keyvault(spec))

    @pytest.mark.asyncio
    async def test_rejects_literal_password(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            with pytest.raises(SecretlessViolationError):
                await Deployer(config, ctx.credential).validate(
                    "vm", {"resources": []}, {"adminPassword": {"value": "literal"}}
                )


class TestWhatIf:
    @pytest.mark.asyncio
    async def test_new_vault_is_created(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            summary = await Deployer(config, ctx.credential).what_if("keyvault", *_keyvault(spec))

        assert summary.has_changes is True
        assert summary.counts() == {"Create": 1}
        assert summary.changes[0].resource_type == "Microsoft.KeyVault/vaults"

    @pytest.mark.asyncio
    async def test_no_change_after_deploy(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            deployer = Deployer(config, ctx.credential)
            await deployer.deploy("keyvault", *_keyvault(spec))
            summary = await deployer.what_if("keyvault", *_keyvault(spec))

        assert summary.has_changes is False
        assert summary.counts() == {"NoChange": 1}

    @pytest.mark.asyncio
    async def test_what_if_does_not_deploy(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            await Deployer(config, ctx.credential).what_if("keyvault", *_keyvault(spec))
            assert ctx.get_resource_count() == 0


class TestDeploy:
    @pytest.mark.asyncio
    async def test_deploy_creates_resources(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            outcome = await Deployer(config, ctx.credential).deploy("keyvault", *_keyvault(spec))

            assert ctx.get_deployment_count() == 1
            assert ctx.state.get_resource(VAULT_ID) is not None

        assert outcome.succeeded is True
        assert outcome.outputs["vaultId"] == VAULT_ID
        assert outcome.outputs["vaultUri"] == f"https://{VAULT_NAME}.vault.azure.net/"
        assert outcome.end_time is not None

    @pytest.mark.asyncio
    async def test_deployments_are_incremental(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            await Deployer(config, ctx.credential).deploy("keyvault", *_keyvault(spec))
            deployment = ctx.get_deployments()[0]

        assert deployment.mode == "Incremental"
        assert deployment.resource_group == RESOURCE_GROUP

    @pytest.mark.asyncio
    async def test_dry_run_submits_nothing(self, config: Config, spec: DeploymentSpec) -> None:
        dry_config = dataclasses.replace(config, dry_run=True)

        with MockAzureContext() as ctx:
            outcome = await Deployer(dry_config, ctx.credential).deploy("keyvault", *_keyvault(spec))
            assert ctx.get_deployment_count() == 0

        assert outcome.dry_run is True
        assert outcome.provisioning_state == "DryRun"
        assert outcome.succeeded is True

    @pytest.mark.asyncio
    async def test_transient_failures_retried(
        self, config: Config, spec: DeploymentSpec, no_sleep: AsyncMock
    ) -> None:
        with MockAzureContext(transient_failures=2) as ctx:
            outcome = await Deployer(config, ctx.credential).deploy("keyvault", *_keyvault(spec))
            create_calls = ctx.clients[0].create_calls

        assert outcome.succeeded is True
        assert create_calls == 3
        assert no_sleep.await_count == 2
        # Exponential backoff: second wait is at least twice the base
        first, second = (call.args[0] for call in no_sleep.await_args_list)
        assert first >= 5
        assert second >= 10

    @pytest.mark.asyncio
    async def test_persistent_failure_gives_up(
        self, config: Config, spec: DeploymentSpec, no_sleep: AsyncMock
    ) -> None:
        with MockAzureContext(fail_deployments=True) as ctx:
            with pytest.raises(DeploymentError) as exc_info:
                await Deployer(config, ctx.credential).deploy("keyvault", *_keyvault(spec))
            create_calls = ctx.clients[0].create_calls

        assert create_calls == MAX_DEPLOYMENT_RETRIES
        assert "Simulated deployment failure" in str(exc_info.value)
        assert exc_info.value.deployment_name.startswith("vvm-keyvault-")

    @pytest.mark.asyncio
    async def test_non_succeeded_state_fails(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            deployer = Deployer(config, ctx.credential)
            ctx.clients[0].final_state = "Canceled"

            with pytest.raises(DeploymentError, match="finished in state Canceled"):
                await deployer.deploy("keyvault", *_keyvault(spec))

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            deployer = Deployer(config, ctx.credential)
            with patch.object(
                deployer, "_execute_with_timeout", new=AsyncMock(side_effect=TimeoutError())
            ) as execute_mock:
                with pytest.raises(DeploymentError, match="timed out"):
                    await deployer.deploy("keyvault", *_keyvault(spec))

        assert execute_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_provenance_logged(
        self, config: Config, spec: DeploymentSpec, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level("INFO"):
            with MockAzureContext() as ctx:
                await Deployer(config, ctx.credential).deploy(
                    "keyvault", *_keyvault(spec), spec_file_hash="abc"
                )

        records = [r for r in caplog.records if r.getMessage() == "Deployment provenance"]
        assert len(records) == 1
        assert records[0].provenance["spec_file_hash"] == "abc"
        assert records[0].provisioning_state == "Succeeded"

    @pytest.mark.asyncio
    async def test_provenance_carries_what_if_counts(
        self, config: Config, spec: DeploymentSpec, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level("INFO"):
            with MockAzureContext() as ctx:
                deployer = Deployer(config, ctx.credential)
                preview = await deployer.what_if("keyvault", *_keyvault(spec))
                await deployer.deploy("keyvault", *_keyvault(spec), what_if=preview)
                await deployer.deploy("keyvault", *_keyvault(spec))

        records = [r for r in caplog.records if r.getMessage() == "Deployment provenance"]
        assert len(records) == 2
        previewed, blind = (r.provenance["change_summary"] for r in records)
        assert previewed["create_count"] == 1
        assert previewed["no_change_count"] == 0
        assert blind["create_count"] == 0


class TestGetResource:
    @pytest.mark.asyncio
    async def test_missing_resource(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            with pytest.raises(ResourceNotFoundError):
                await Deployer(config, ctx.credential).get_resource(VAULT_ID, KEY_VAULT_API_VERSION)

    @pytest.mark.asyncio
    async def test_reads_deployed_resource(self, config: Config, spec: DeploymentSpec) -> None:
        with MockAzureContext() as ctx:
            deployer = Deployer(config, ctx.credential)
            await deployer.deploy("keyvault", *_keyvault(spec))
            resource = await deployer.get_resource(VAULT_ID, KEY_VAULT_API_VERSION)

        assert resource.name == VAULT_NAME
        assert resource.properties["enabledForTemplateDeployment"] is True


class TestWhatIfSummary:
    def test_counts_and_significance(self) -> None:
        summary = WhatIfSummary(
            stage="vm",
            deployment_name="vvm-vm-1",
            changes=[
                ResourceChangePreview("/x/providers/Microsoft.Compute/virtualMachines/vm", "Create"),
                ResourceChangePreview("/x/providers/Microsoft.Network/networkInterfaces/n", "Modify"),
                ResourceChangePreview("/x/providers/Microsoft.Network/publicIPAddresses/p", "NoChange"),
                ResourceChangePreview("/x/providers/Microsoft.Insights/diagnostics/d", "Ignore"),
            ],
        )

        assert len(summary.significant_changes) == 2
        provenance = summary.to_provenance_summary()
        assert provenance.create_count == 1
        assert provenance.modify_count == 1
        assert provenance.no_change_count == 1
        assert provenance.ignore_count == 1
        assert provenance.total_significant == 2

    def test_change_type_values(self) -> None:
        assert ChangeType.NO_CHANGE.value == "NoChange"


class TestParseResourceType:
    @pytest.mark.parametrize(
        ("resource_id", "expected"),
        [
            (VAULT_ID, "Microsoft.KeyVault/vaults"),
            ("/subscriptions/s/resourceGroups/rg", "unknown"),
            ("", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_parse(self, resource_id: str | None, expected: str) -> None:
        assert parse_resource_type_from_id(resource_id) == expected
