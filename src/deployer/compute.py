"""Virtual machine inspection and admin password reset.

Reads go through the generic resources API so no compute-specific SDK is
needed. The password reset is an ARM deployment of the VMAccessAgent
extension whose password parameter is a Key Vault reference.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import ResourceNotFoundError

from .deployments import Deployer, DeploymentError, DeploymentOutcome
from .models import DeploymentSpec
from .templates import (
    VIRTUAL_MACHINE_API_VERSION,
    build_password_reset_template,
    key_vault_reference,
    key_vault_resource_id,
    virtual_machine_resource_id,
)

logger = logging.getLogger(__name__)

PASSWORD_RESET_STAGE = "reset-password"


class VirtualMachineNotFoundError(Exception):
    """Raised when the VM does not exist in the resource group."""

    pass


@dataclass
class VmStatus:
    """Condensed view of a VM and its instance view."""

    name: str
    resource_id: str
    location: str = ""
    vm_size: str = ""
    provisioning_state: str = ""
    power_state: str = "unknown"
    os_name: str = ""
    os_version: str = ""
    admin_username: str = ""
    image: dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.power_state == "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "id": self.resource_id,
            "location": self.location,
            "vmSize": self.vm_size,
            "provisioningState": self.provisioning_state,
            "powerState": self.power_state,
            "osName": self.os_name,
            "osVersion": self.os_version,
            "adminUsername": self.admin_username,
            "image": self.image,
        }


def _status_code(statuses: list[dict[str, Any]], prefix: str) -> str | None:
    """Find the suffix of the first status code with the given prefix.

    Instance view codes look like ``PowerState/running``.
    """
    for status in statuses:
        code = status.get("code", "")
        if code.startswith(prefix + "/"):
            return code.split("/", 1)[1]
    return None


def parse_vm_status(resource: Any) -> VmStatus:
    """Build a VmStatus from a generic resource returned with the instance view."""
    properties: dict[str, Any] = getattr(resource, "properties", None) or {}
    instance_view: dict[str, Any] = properties.get("instanceView") or {}
    statuses: list[dict[str, Any]] = instance_view.get("statuses") or []

    storage = properties.get("storageProfile") or {}
    os_profile = properties.get("osProfile") or {}

    return VmStatus(
        name=getattr(resource, "name", "") or "",
        resource_id=getattr(resource, "id", "") or "",
        location=getattr(resource, "location", "") or "",
        vm_size=(properties.get("hardwareProfile") or {}).get("vmSize", ""),
        provisioning_state=properties.get("provisioningState", ""),
        power_state=_status_code(statuses, "PowerState") or "unknown",
        os_name=instance_view.get("osName", ""),
        os_version=instance_view.get("osVersion", ""),
        admin_username=os_profile.get("adminUsername", ""),
        image=storage.get("imageReference") or {},
    )


class VirtualMachineInspector:
    """Reads VM state for verification and the ``vm show`` command."""

    def __init__(self, deployer: Deployer) -> None:
        self._deployer = deployer

    async def show(self, vm_name: str) -> VmStatus:
        """Read the VM with its instance view.

        Raises:
            VirtualMachineNotFoundError: If the VM does not exist.
            AzureError: For other Azure failures.
        """
        config = self._deployer.config
        vm_id = virtual_machine_resource_id(
            config.subscription_id, config.resource_group_name, vm_name
        )
        try:
            resource = await self._deployer.get_resource(
                vm_id,
                VIRTUAL_MACHINE_API_VERSION,
                params={"$expand": "instanceView"},
            )
        except ResourceNotFoundError as e:
            raise VirtualMachineNotFoundError(
                f"Virtual machine '{vm_name}' not found in resource group "
                f"'{config.resource_group_name}'"
            ) from e

        status = parse_vm_status(resource)
        logger.info(
            "Virtual machine status",
            extra={
                "vm": vm_name,
                "provisioning_state": status.provisioning_state,
                "power_state": status.power_state,
            },
        )
        return status


async def reset_admin_password(
    deployer: Deployer, spec: DeploymentSpec, spec_file_hash: str = ""
) -> DeploymentOutcome:
    """Reset the VM admin password to the current Key Vault secret value.

    Run after ``ensure_secret`` rotates the secret so the VM and the vault
    agree again.

    Raises:
        DeploymentError: If the extension deployment fails.
    """
    config = deployer.config
    vm = spec.virtual_machine
    vault_id = key_vault_resource_id(
        config.subscription_id, config.resource_group_name, spec.key_vault.name
    )

    parameters: dict[str, Any] = {
        "vmName": {"value": vm.name},
        "adminUsername": {"value": vm.admin_username},
        "adminPassword": key_vault_reference(vault_id, vm.admin_password),
    }
    if spec.location:
        parameters["location"] = {"value": spec.location}

    template = build_password_reset_template()
    try:
        preview = await deployer.what_if(PASSWORD_RESET_STAGE, template, parameters)
        outcome = await deployer.deploy(
            PASSWORD_RESET_STAGE,
            template,
            parameters,
            spec_file_hash=spec_file_hash,
            what_if=preview,
        )
    except DeploymentError:
        logger.error("Password reset failed", extra={"vm": vm.name})
        raise

    logger.info(
        "Admin password reset",
        extra={"vm": vm.name, "admin_username": vm.admin_username},
    )
    return outcome

