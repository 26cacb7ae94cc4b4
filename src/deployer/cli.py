"""Key Vault backed SQL Server VM deployer CLI (vvm).

Usage:
    vvm build                      # Compile/render ARM templates to ./build
    vvm validate                   # ARM validation of the Key Vault template
    vvm what-if                    # Preview Key Vault and VM changes
    vvm deploy --stage all         # Key Vault, secret, VM, JIT
    vvm secret ensure              # Create or rotate the admin password secret
    vvm vm show                    # VM provisioning and power state
    vvm pipeline plan              # Stage order and conditions
    vvm pipeline run               # Run the pipeline locally
    vvm info                       # Configuration and tool versions

Configuration comes from the same environment variables as the pipeline
runner (AZURE_SUBSCRIPTION_ID, AZURE_LOCATION, RESOURCE_GROUP_NAME, ...).
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError

from .actions import DEFAULT_OUTPUT_DIR, StageActions, VerificationError, run_variables
from .bicep import BicepBuildError
from .compute import VirtualMachineInspector, VirtualMachineNotFoundError, reset_admin_password
from .conditions import ConditionError
from .config import Config, ConfigurationError
from .deployments import Deployer, DeploymentError
from .models import DeploymentSpec
from .pipeline import PipelineError, PipelineRun, StageResult, StepContext, load_pipeline
from .secrets import KeyVaultSecrets, SecretError
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError, find_spec_file, load_spec, spec_file_hash
from .templates import TemplateError

VERSION = "0.1.0"
DEPLOY_STAGES = ("keyvault", "vm", "jit", "all")
TEMPLATE_CHOICES = ("keyvault", "vm", "jit")

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 30

_HANDLED_ERRORS = (
    AzureError,
    BicepBuildError,
    ConditionError,
    DeploymentError,
    PipelineError,
    SecretError,
    SpecLoadError,
    TemplateError,
    VerificationError,
    VirtualMachineNotFoundError,
)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn domain errors into click errors, keeping Azure's message verbatim."""
    try:
        yield
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    except SecretlessViolationError as e:
        click.secho(str(e), fg="red", err=True)
        raise click.exceptions.Exit(2) from e
    except _HANDLED_ERRORS as e:
        raise click.ClickException(str(e)) from e


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    with handle_errors():
        return asyncio.run(coro)


class DeployContext:
    """Configuration, spec and actions loaded lazily per command."""

    def __init__(self) -> None:
        self._config: Config | None = None
        self._spec: DeploymentSpec | None = None
        self._actions: StageActions | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            with handle_errors():
                self._config = Config.from_env()
        return self._config

    @property
    def spec(self) -> DeploymentSpec:
        if self._spec is None:
            with handle_errors():
                self._spec = load_spec(self.config.specs_dir, self.config.spec_name)
        return self._spec

    @property
    def spec_hash(self) -> str:
        return spec_file_hash(find_spec_file(self.config.specs_dir, self.config.spec_name))

    @property
    def actions(self) -> StageActions:
        if self._actions is None:
            self._actions = StageActions(self.config, self.spec, spec_file_hash=self.spec_hash)
        return self._actions

    @property
    def deployer(self) -> Deployer:
        with handle_errors():
            return self.actions.deployer

    def step(self, task: str, **inputs: Any) -> StepContext:
        return StepContext(
            stage="cli",
            job="cli",
            task=task,
            inputs=inputs,
            variables=run_variables(self.config),
        )


pass_context = click.make_pass_decorator(DeployContext, ensure=True)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="vvm")
def cli() -> None:
    """Key Vault backed SQL Server VM deployer (vvm).

    \b
    Quick Start:
        vvm build          # Render templates
        vvm what-if        # Preview changes
        vvm deploy         # Deploy everything
    """
    pass


# =============================================================================
# Build / Validate / What-if
# =============================================================================


@cli.command()
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_OUTPUT_DIR,
    show_default=True,
    help="Directory for compiled templates",
)
@pass_context
def build(ctx: DeployContext, output_dir: Path) -> None:
    """Compile Bicep sources or render generated ARM templates."""
    run_async(ctx.actions.build(ctx.step("bicep-build", outputDir=str(output_dir))))
    for path in sorted(output_dir.glob("*.json")):
        click.echo(f"  {path}")
    click.secho(f"✓ Templates written to {output_dir}", fg="green")


@cli.command()
@click.option(
    "--template",
    "-t",
    "templates",
    multiple=True,
    type=click.Choice(TEMPLATE_CHOICES),
    help="Template to validate (repeatable, default: keyvault)",
)
@pass_context
def validate(ctx: DeployContext, templates: tuple[str, ...]) -> None:
    """Validate templates and parameters with ARM."""
    selected = list(templates) or ["keyvault"]
    run_async(ctx.actions.validate(ctx.step("validate", templates=selected)))
    click.secho(f"✓ Validation passed: {', '.join(selected)}", fg="green")


@cli.command("what-if")
@click.option(
    "--template",
    "-t",
    "templates",
    multiple=True,
    type=click.Choice(TEMPLATE_CHOICES),
    help="Template to preview (repeatable, default: keyvault and vm)",
)
@pass_context
def what_if(ctx: DeployContext, templates: tuple[str, ...]) -> None:
    """Preview the changes a deployment would make."""
    actions = ctx.actions

    async def preview() -> None:
        for kind in templates or ("keyvault", "vm"):
            template, parameters = actions.checked(kind)
            summary = await actions.deployer.what_if(kind, template, parameters)
            click.echo(f"{kind}:")
            if not summary.changes:
                click.echo("  no changes")
            for change in summary.changes:
                click.echo(f"  {change.change_type:<10} {change.resource_id}")

    run_async(preview())


# =============================================================================
# Deploy
# =============================================================================


@cli.command()
@click.option(
    "--stage",
    "-s",
    type=click.Choice(DEPLOY_STAGES),
    default="all",
    show_default=True,
    help="What to deploy",
)
@click.option(
    "--ignore-branch",
    is_flag=True,
    help="Deploy even when the source branch is not the deploy branch",
)
@click.option(
    "--with-secret",
    "with_secrets",
    multiple=True,
    metavar="NAME",
    help="Create this declared secret in the Key Vault deployment (value is prompted)",
)
@pass_context
def deploy(
    ctx: DeployContext, stage: str, ignore_branch: bool, with_secrets: tuple[str, ...]
) -> None:
    """Deploy the Key Vault, the admin password secret, the VM and the JIT policy."""
    config = ctx.config
    if not config.is_deploy_branch and not ignore_branch:
        raise click.ClickException(
            f"Source branch {config.source_branch} is not the deploy branch "
            f"{config.deploy_branch}. Use --ignore-branch to override."
        )
    if with_secrets and stage not in ("keyvault", "all"):
        raise click.UsageError("--with-secret only applies to the keyvault stage")
    for name in with_secrets:
        if ctx.spec.key_vault.get_secret(name) is None:
            raise click.BadParameter(
                f"'{name}' is not declared in keyVault.secrets", param_hint="--with-secret"
            )

    secret_values = {
        name: click.prompt(f"Value for {name}", hide_input=True, confirmation_prompt=True)
        for name in with_secrets
    }
    actions = ctx.actions
    step = ctx.step("deploy", secretValues=secret_values)

    async def run_stages() -> None:
        if stage in ("keyvault", "all"):
            await actions.deploy_keyvault(step)
            click.echo(f"  Key Vault: {step.get_variable('keyVaultId')}")
            await actions.store_secret(step)
            click.echo(f"  Admin password secret: {step.get_variable('adminPasswordSecretAction')}")
        if stage in ("vm", "all"):
            await actions.deploy_vm(step)
            click.echo(f"  VM: {step.get_variable('vmId')}")
        if stage in ("jit", "all"):
            await actions.configure_jit(step)
            click.echo("  JIT policy configured")

    run_async(run_stages())
    suffix = " (dry run)" if config.dry_run else ""
    click.secho(f"✓ Deployed {stage}{suffix}", fg="green")


# =============================================================================
# Secrets
# =============================================================================


@cli.group()
def secret() -> None:
    """Key Vault secret commands: set, show, ensure."""
    pass


def _secrets_client(ctx: DeployContext) -> KeyVaultSecrets:
    with handle_errors():
        return KeyVaultSecrets(ctx.spec.key_vault.name, ctx.actions.credential)


@secret.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--expiry-days", type=click.IntRange(1, 730), default=None, help="Days until expiry")
@click.option("--content-type", default=None)
@pass_context
def secret_set(
    ctx: DeployContext,
    name: str,
    value: str,
    expiry_days: int | None,
    content_type: str | None,
) -> None:
    """Store a secret version with an expiry date."""
    declared = ctx.spec.key_vault.get_secret(name)
    days = expiry_days or (declared.expiry_days if declared else 90)
    content = content_type or (declared.content_type if declared else None)

    client = _secrets_client(ctx)
    with handle_errors():
        info = client.set_secret(name, value, expiry_days=days, content_type=content)
    click.echo(json.dumps(info.to_dict(), indent=2))


@secret.command("show")
@click.argument("name", required=False)
@click.option("--show-value", is_flag=True, help="Print the secret value")
@pass_context
def secret_show(ctx: DeployContext, name: str | None, show_value: bool) -> None:
    """Show secret metadata (defaults to the VM admin password secret)."""
    secret_name = name or ctx.spec.password_secret.name
    client = _secrets_client(ctx)
    with handle_errors():
        info = client.show_secret(secret_name, include_value=show_value)
    if info is None:
        raise click.ClickException(f"Secret '{secret_name}' not found in {client.vault_url}")
    click.echo(json.dumps(info.to_dict(), indent=2))


@secret.command("ensure")
@click.option(
    "--rotate-within-days",
    type=click.IntRange(0, 365),
    default=14,
    show_default=True,
    help="Rotate when the secret expires within this many days",
)
@pass_context
def secret_ensure(ctx: DeployContext, rotate_within_days: int) -> None:
    """Create or rotate the VM admin password secret if needed."""
    spec = ctx.spec
    client = _secrets_client(ctx)
    with handle_errors():
        result = client.ensure_secret(
            spec.password_secret,
            username=spec.virtual_machine.admin_username,
            rotate_within_days=rotate_within_days,
        )
    reason = f" ({result.reason})" if result.reason else ""
    click.secho(f"✓ Secret {result.secret.name}: {result.action}{reason}", fg="green")


# =============================================================================
# VM
# =============================================================================


@cli.group()
def vm() -> None:
    """Virtual machine commands: show, reset-password."""
    pass


@vm.command("show")
@click.argument("name", required=False)
@pass_context
def vm_show(ctx: DeployContext, name: str | None) -> None:
    """Show VM provisioning and power state."""
    vm_name = name or ctx.spec.virtual_machine.name
    inspector = VirtualMachineInspector(ctx.deployer)
    status = run_async(inspector.show(vm_name))
    click.echo(json.dumps(status.to_dict(), indent=2))


@vm.command("reset-password")
@pass_context
def vm_reset_password(ctx: DeployContext) -> None:
    """Reset the VM admin password to the current Key Vault secret."""
    run_async(reset_admin_password(ctx.deployer, ctx.spec, ctx.spec_hash))
    click.secho(f"✓ Password reset for {ctx.spec.virtual_machine.admin_username}", fg="green")


# =============================================================================
# JIT
# =============================================================================


@cli.group()
def jit() -> None:
    """Just-in-time access commands."""
    pass


@jit.command("enable")
@pass_context
def jit_enable(ctx: DeployContext) -> None:
    """Deploy the JIT policy for the VM."""
    outcome = run_async(ctx.actions.deploy_jit())
    if outcome is None:
        click.echo("JIT is disabled in the spec; nothing deployed")
        return
    ports = ", ".join(str(p.number) for p in ctx.spec.jit.ports)
    click.secho(f"✓ JIT policy '{ctx.spec.jit.policy_name}' covers ports {ports}", fg="green")


# =============================================================================
# Pipeline
# =============================================================================


@cli.group()
def pipeline() -> None:
    """Run or inspect the stage pipeline locally."""
    pass


def _load_run(ctx: DeployContext, file: Path | None) -> PipelineRun:
    config = ctx.config
    with handle_errors():
        definition = load_pipeline(file or config.pipeline_file)
        return PipelineRun(definition, ctx.actions.bindings(), run_variables(config))


_FILE_OPTION = click.option(
    "--file",
    "-f",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Pipeline YAML (default: PIPELINE_FILE)",
)


@pipeline.command("plan")
@_FILE_OPTION
@pass_context
def pipeline_plan(ctx: DeployContext, file: Path | None) -> None:
    """Show stage order and which stages would run on this branch."""
    run = _load_run(ctx, file)
    with handle_errors():
        planned = run.plan()
    for index, stage in enumerate(planned, start=1):
        marker = "run " if stage.will_run else "skip"
        deps = ", ".join(stage.depends_on) or "-"
        click.echo(f"{index:>2}. [{marker}] {stage.name:<20} dependsOn: {deps}")
        click.echo(f"    condition: {stage.condition}")
        click.echo(f"    tasks: {', '.join(stage.tasks)}")


@pipeline.command("run")
@_FILE_OPTION
@pass_context
def pipeline_run(ctx: DeployContext, file: Path | None) -> None:
    """Run the pipeline stages in dependency order."""
    run = _load_run(ctx, file)
    records = run_async(run.run())

    colors = {
        StageResult.SUCCEEDED: "green",
        StageResult.FAILED: "red",
        StageResult.SKIPPED: "yellow",
        StageResult.CANCELED: "yellow",
    }
    for record in records:
        click.secho(
            f"  {record.name:<20} {record.result.value:<10} {record.duration_seconds:.1f}s",
            fg=colors[record.result],
        )
        if record.error:
            click.echo(f"    {record.error}")

    if not run.succeeded:
        raise click.ClickException("Pipeline failed")
    click.secho("✓ Pipeline succeeded", fg="green")


# =============================================================================
# Info Command
# =============================================================================


@cli.command()
@pass_context
def info(ctx: DeployContext) -> None:
    """Show configuration, spec summary and tool versions."""
    config = ctx.config
    click.echo("Key Vault backed SQL Server VM deployer (vvm)")
    click.echo("=" * 46)
    click.echo(f"Subscription:   {config.subscription_id}")
    click.echo(f"Resource group: {config.resource_group_name}")
    click.echo(f"Location:       {config.location}")
    click.echo(f"Specs dir:      {config.specs_dir}")
    click.echo(f"Pipeline:       {config.pipeline_file}")
    click.echo(f"Source branch:  {config.source_branch}")
    click.echo(f"Deploy branch:  {config.deploy_branch} {'✓' if config.is_deploy_branch else '✗'}")
    click.echo(f"Dry run:        {config.dry_run}")

    spec = ctx.spec
    click.echo("\nSpec:")
    click.echo(f"  Key Vault: {spec.key_vault.name} ({spec.key_vault.sku})")
    click.echo(f"  VM:        {spec.virtual_machine.name} ({spec.virtual_machine.size})")
    click.echo(f"  Password:  {spec.key_vault.name}/{spec.password_secret.name}")
    jit_ports = ", ".join(str(p.number) for p in spec.jit.ports) if spec.jit.enabled else "disabled"
    click.echo(f"  JIT ports: {jit_ports}")

    click.echo("\nTools:")
    try:
        result = subprocess.run(
            ["az", "version", "--output", "json"],
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_SECONDS,
            check=False,
        )
        version = (
            json.loads(result.stdout).get("azure-cli", "unknown")
            if result.returncode == 0
            else "not found"
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, json.JSONDecodeError):
        version = "not found"
    click.echo(f"  Azure CLI: {version}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
