"""Built-in pipeline actions for the Key Vault and SQL Server VM deployment.

Each action is bound to a pipeline ``task`` name. Stage sequencing, branch
gating and skip/fail decisions belong to the pipeline definition; actions
only do their one job and publish outputs as run variables.

Task names:
    bicep-build, validate, what-if, deploy-keyvault, store-secret,
    deploy-vm, reset-password, configure-jit, verify
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from azure.core.credentials import TokenCredential

from .bicep import build_to_file
from .compute import VirtualMachineInspector, reset_admin_password
from .config import Config
from .deployments import Deployer, DeploymentOutcome
from .jit import configure_jit
from .models import DeploymentSpec
from .pipeline import Action, StepContext
from .secrets import KeyVaultSecrets
from .security import get_credential, log_security_audit_event
from .spec_loader import load_template
from .templates import (
    TemplateError,
    build_jit_template,
    build_keyvault_template,
    build_parameters_file,
    build_vm_template,
    check_parameters,
    jit_parameters,
    key_vault_reference,
    key_vault_resource_id,
    secret_parameter_name,
    virtual_machine_resource_id,
)

logger = logging.getLogger(__name__)

TEMPLATE_KINDS = ("keyvault", "vm", "jit")
DEFAULT_OUTPUT_DIR = Path("build")


class VerificationError(Exception):
    """Raised when deployed resources do not match the expected state."""

    pass


def _as_list(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return default
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def _secret_values(context: StepContext | None) -> dict[str, str]:
    """Secret values supplied to the Key Vault deployment, keyed by secret name."""
    if context is None:
        return {}
    return {str(k): str(v) for k, v in (context.inputs.get("secretValues") or {}).items()}


class StageActions:
    """Holds the deployment context shared by all actions of a run."""

    def __init__(
        self,
        config: Config,
        spec: DeploymentSpec,
        credential: TokenCredential | None = None,
        spec_file_hash: str = "",
        output_dir: Path = DEFAULT_OUTPUT_DIR,
    ) -> None:
        self._config = config
        self._spec = spec
        self._credential = credential
        self._spec_file_hash = spec_file_hash
        self._output_dir = output_dir
        self._deployer: Deployer | None = None

    @property
    def credential(self) -> TokenCredential:
        # Offline actions (build) never need one
        if self._credential is None:
            self._credential = get_credential(self._config.client_id)
        return self._credential

    @property
    def deployer(self) -> Deployer:
        if self._deployer is None:
            self._deployer = Deployer(self._config, self.credential)
        return self._deployer

    # -------------------------------------------------------------------------
    # Templates and parameters
    # -------------------------------------------------------------------------

    def _template_source(self, kind: str) -> Path | None:
        """A hand-written template in TEMPLATES_DIR overrides the generated one."""
        for suffix in (".bicep", ".json"):
            candidate = self._config.templates_dir / f"{kind}{suffix}"
            if candidate.exists():
                return candidate
        return None

    def template(self, kind: str, secret_names: list[str] | None = None) -> dict[str, Any]:
        source = self._template_source(kind)
        if source is not None:
            return load_template(source)
        if kind == "keyvault":
            return build_keyvault_template(self._spec.key_vault, secret_names)
        if kind == "vm":
            return build_vm_template()
        if kind == "jit":
            return build_jit_template()
        raise TemplateError(f"Unknown template kind '{kind}'")

    def vault_id(self, context: StepContext | None = None) -> str:
        published = context.get_variable("keyVaultId") if context else None
        return published or key_vault_resource_id(
            self._config.subscription_id,
            self._config.resource_group_name,
            self._spec.key_vault.name,
        )

    def vm_id(self, context: StepContext | None = None) -> str:
        published = context.get_variable("vmId") if context else None
        return published or virtual_machine_resource_id(
            self._config.subscription_id,
            self._config.resource_group_name,
            self._spec.virtual_machine.name,
        )

    def parameters(self, kind: str, context: StepContext | None = None) -> dict[str, Any]:
        if kind == "keyvault":
            params = self._spec.keyvault_parameters()
            for name, value in _secret_values(context).items():
                params[secret_parameter_name(name)] = {"value": value}
            return params
        if kind == "vm":
            params = self._spec.vm_parameters()
            params["adminPassword"] = key_vault_reference(
                self.vault_id(context), self._spec.virtual_machine.admin_password
            )
            return params
        if kind == "jit":
            location = self._spec.location or self._config.location
            return jit_parameters(self._spec.jit, self.vm_id(context), location)
        raise TemplateError(f"Unknown template kind '{kind}'")

    def checked(
        self, kind: str, context: StepContext | None = None
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        secret_names = list(_secret_values(context)) if kind == "keyvault" else None
        template = self.template(kind, secret_names)
        parameters = self.parameters(kind, context)
        problems = check_parameters(template, parameters)
        if problems:
            raise TemplateError(
                f"Parameters for '{kind}' do not match the template:\n  - "
                + "\n  - ".join(problems)
            )
        return template, parameters

    def bindings(self) -> dict[str, Action]:
        """Map pipeline task names to this instance's actions."""
        return {
            "bicep-build": self.build,
            "validate": self.validate,
            "what-if": self.what_if,
            "deploy-keyvault": self.deploy_keyvault,
            "store-secret": self.store_secret,
            "deploy-vm": self.deploy_vm,
            "reset-password": self.reset_password,
            "configure-jit": self.configure_jit,
            "verify": self.verify,
        }

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def build(self, context: StepContext) -> None:
        """Compile Bicep sources, or render the generated templates, to JSON files."""
        output_dir = Path(context.inputs.get("outputDir", self._output_dir))
        output_dir.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()

        for kind in TEMPLATE_KINDS:
            outfile = output_dir / f"{kind}.json"
            source = self._template_source(kind)
            if source is not None and source.suffix == ".bicep":
                await loop.run_in_executor(None, build_to_file, source, outfile)
            else:
                template, _ = self.checked(kind, context)
                outfile.write_text(json.dumps(template, indent=2) + "\n", encoding="utf-8")

        parameters_file = output_dir / "vm.parameters.json"
        parameters_file.write_text(
            json.dumps(build_parameters_file(self.parameters("vm", context)), indent=2) + "\n",
            encoding="utf-8",
        )
        context.set_variable("templatesDir", str(output_dir))
        logger.info("Templates built", extra={"output_dir": str(output_dir)})

    async def validate(self, context: StepContext) -> None:
        """Check parameters locally, then ask ARM to validate each template."""
        for kind in _as_list(context.inputs.get("templates"), ["keyvault"]):
            template, parameters = self.checked(kind, context)
            await self.deployer.validate(kind, template, parameters)

    async def what_if(self, context: StepContext) -> None:
        """Preview changes and publish whether anything would change."""
        any_changes = False
        for kind in _as_list(context.inputs.get("templates"), ["keyvault", "vm"]):
            template, parameters = self.checked(kind, context)
            summary = await self.deployer.what_if(kind, template, parameters)
            any_changes = any_changes or summary.has_changes
            context.set_variable(f"whatIf.{kind}.changes", len(summary.significant_changes))
        context.set_variable("whatIfHasChanges", "true" if any_changes else "false")

    async def _deploy(self, kind: str, context: StepContext) -> DeploymentOutcome:
        # The preview feeds the provenance change summary
        template, parameters = self.checked(kind, context)
        preview = await self.deployer.what_if(kind, template, parameters)
        return await self.deployer.deploy(
            kind, template, parameters, spec_file_hash=self._spec_file_hash, what_if=preview
        )

    async def deploy_keyvault(self, context: StepContext) -> None:
        outcome = await self._deploy("keyvault", context)
        context.set_variable("keyVaultId", outcome.outputs.get("vaultId") or self.vault_id())
        context.set_variable(
            "keyVaultUri", outcome.outputs.get("vaultUri") or self._spec.key_vault.uri
        )

    async def store_secret(self, context: StepContext) -> None:
        """Create or rotate the admin password secret when it is missing or expiring."""
        secret_config = self._spec.password_secret
        if self._config.dry_run:
            logger.info(
                "Dry run: secret not written",
                extra={"vault": self._spec.key_vault.name, "secret": secret_config.name},
            )
            context.set_variable("adminPasswordSecretAction", "dry-run")
            return

        rotate_within = int(context.inputs.get("rotateWithinDays", 14))
        secrets = KeyVaultSecrets(self._spec.key_vault.name, self.credential)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: secrets.ensure_secret(
                secret_config,
                username=self._spec.virtual_machine.admin_username,
                rotate_within_days=rotate_within,
            ),
        )
        log_security_audit_event(
            "secret_ensured",
            target_resource=f"{self._spec.key_vault.name}/{secret_config.name}",
            action=result.action,
            result="success",
        )
        context.set_variable("adminPasswordSecretAction", result.action)

    async def deploy_vm(self, context: StepContext) -> None:
        outcome = await self._deploy("vm", context)
        context.set_variable("vmId", outcome.outputs.get("vmId") or self.vm_id())
        context.set_variable("privateIpAddress", outcome.outputs.get("privateIpAddress", ""))
        context.set_variable("publicIpAddress", outcome.outputs.get("publicIpAddress", ""))

    async def reset_password(self, context: StepContext) -> None:
        await reset_admin_password(self.deployer, self._spec, self._spec_file_hash)

    async def configure_jit(self, context: StepContext) -> None:
        await self.deploy_jit(context)

    async def deploy_jit(self, context: StepContext | None = None) -> DeploymentOutcome | None:
        """Deploy the JIT policy from the checked template, if JIT is enabled."""
        vm_id = self.vm_id(context)
        if not self._spec.jit.enabled:
            return await configure_jit(self.deployer, self._spec, vm_id)
        template, parameters = self.checked("jit", context)
        return await configure_jit(
            self.deployer,
            self._spec,
            vm_id,
            template,
            parameters,
            spec_file_hash=self._spec_file_hash,
        )

    async def verify(self, context: StepContext) -> None:
        """Check the deployed VM and the password secret.

        Raises:
            VerificationError: If the VM or the secret is not in the expected state.
        """
        if self._config.dry_run:
            logger.info("Dry run: verification skipped")
            return

        problems: list[str] = []
        vm_name = self._spec.virtual_machine.name
        status = await VirtualMachineInspector(self.deployer).show(vm_name)
        if status.provisioning_state != "Succeeded":
            problems.append(f"VM '{vm_name}' provisioning state is {status.provisioning_state}")
        if context.inputs.get("requireRunning", True) and not status.is_running:
            problems.append(f"VM '{vm_name}' power state is {status.power_state}")
        expected_user = self._spec.virtual_machine.admin_username
        if status.admin_username and status.admin_username != expected_user:
            problems.append(
                f"VM admin user is '{status.admin_username}', expected "
                f"'{self._spec.virtual_machine.admin_username}'"
            )

        secret_name = self._spec.password_secret.name
        secrets = KeyVaultSecrets(self._spec.key_vault.name, self.credential)
        loop = asyncio.get_running_loop()
        info = await loop.run_in_executor(None, secrets.show_secret, secret_name)
        if info is None:
            problems.append(f"Secret '{secret_name}' does not exist")
        elif not info.enabled:
            problems.append(f"Secret '{secret_name}' is disabled")
        elif info.expires_on is not None and info.expires_on <= datetime.now(UTC):
            problems.append(f"Secret '{secret_name}' expired on {info.expires_on.isoformat()}")

        if problems:
            raise VerificationError("Verification failed:\n  - " + "\n  - ".join(problems))

        context.set_variable("vmPowerState", status.power_state)
        logger.info(
            "Deployment verified",
            extra={"vm": vm_name, "power_state": status.power_state, "secret": secret_name},
        )


def default_actions(
    config: Config,
    spec: DeploymentSpec,
    credential: TokenCredential | None = None,
    spec_file_hash: str = "",
    output_dir: Path = DEFAULT_OUTPUT_DIR,
) -> dict[str, Action]:
    """Bind the built-in actions to their task names."""
    return StageActions(config, spec, credential, spec_file_hash, output_dir).bindings()


def run_variables(config: Config) -> dict[str, str]:
    """Predefined variables a local run exposes to stage conditions."""
    branch = config.source_branch
    return {
        "Build.SourceBranch": branch,
        "Build.SourceBranchName": branch.rsplit("/", 1)[-1],
        "Deploy.Branch": config.deploy_branch,
        "Deploy.DryRun": "true" if config.dry_run else "false",
        "Azure.ResourceGroup": config.resource_group_name,
        "Azure.Location": config.location,
    }
