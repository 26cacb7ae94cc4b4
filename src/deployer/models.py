"""Pydantic models for deployment specifications with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Cross-reference checks between the Key Vault, VM and JIT sections
4. Clean transformation to ARM parameters
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Naming rules
# =============================================================================

GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Key Vault: 3-24 chars, letter first, letter or digit last, no "--"
KEY_VAULT_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$")
SECRET_NAME_PATTERN = re.compile(r"^[0-9a-zA-Z-]+$")

# Windows computer names cannot contain these characters
WINDOWS_NAME_FORBIDDEN_CHARS = set("\\/\"[]:|<>+=;,?*@&~!#$%^(){}'_. ")

RESERVED_ADMIN_USERNAMES: frozenset[str] = frozenset({
    "administrator", "admin", "user", "user1", "test", "user2", "test1", "user3",
    "admin1", "1", "123", "a", "actuser", "adm", "admin2", "aspnet", "backup",
    "console", "david", "guest", "john", "owner", "root", "server", "sql",
    "support", "support_388945a0", "sys", "test2", "test3", "user4", "user5",
})  # fmt: skip

VALID_SECRET_PERMISSIONS: frozenset[str] = frozenset({
    "get", "list", "set", "delete", "recover", "backup", "restore", "purge",
})  # fmt: skip

ISO_DURATION_PATTERN = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?$")
MAX_JIT_DURATION = timedelta(hours=24)
MIN_JIT_DURATION = timedelta(minutes=1)

DEFAULT_RDP_PORT = 3389
DEFAULT_SQL_PORT = 1433


def parse_iso_duration(value: str) -> timedelta:
    """Parse the ``PT{h}H{m}M`` subset of ISO-8601 durations used by JIT policies.

    Raises:
        ValueError: If the value is not a supported duration.
    """
    match = ISO_DURATION_PATTERN.match(value)
    if not match or not any(match.groups()):
        raise ValueError(f"duration must be an ISO-8601 time duration like PT3H: {value}")
    hours, minutes = (int(g) if g else 0 for g in match.groups())
    return timedelta(hours=hours, minutes=minutes)


# =============================================================================
# Key Vault
# =============================================================================


class AccessPolicyConfig(BaseModel):
    """Key Vault access policy for a principal."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    object_id: str = Field(alias="objectId")
    tenant_id: str | None = Field(None, alias="tenantId")
    secret_permissions: list[str] = Field(
        default_factory=lambda: ["get", "list", "set"], alias="secretPermissions"
    )

    @field_validator("object_id", "tenant_id")
    @classmethod
    def validate_guid(cls, v: str | None) -> str | None:
        if v is not None and not GUID_PATTERN.match(v):
            raise ValueError(f"must be a GUID: {v}")
        return v

    @field_validator("secret_permissions")
    @classmethod
    def validate_permissions(cls, v: list[str]) -> list[str]:
        normalized = [p.lower() for p in v]
        invalid = sorted(set(normalized) - VALID_SECRET_PERMISSIONS)
        if invalid:
            raise ValueError(f"unknown secret permissions: {invalid}")
        if not normalized:
            raise ValueError("at least one secret permission is required")
        return normalized


class SecretConfig(BaseModel):
    """A secret stored in the vault (e.g. the VM admin password)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=127)]
    content_type: str | None = Field(None, alias="contentType")
    expiry_days: Annotated[int, Field(ge=1, le=730, alias="expiryDays")] = 90
    generate: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not SECRET_NAME_PATTERN.match(v):
            raise ValueError("secret name may only contain letters, digits and hyphens")
        return v


class KeyVaultConfig(BaseModel):
    """Key Vault configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=3, max_length=24)]
    sku: str = "standard"
    tenant_id: str | None = Field(None, alias="tenantId")
    enabled_for_template_deployment: bool = Field(True, alias="enabledForTemplateDeployment")
    enabled_for_deployment: bool = Field(False, alias="enabledForDeployment")
    enable_soft_delete: bool = Field(True, alias="enableSoftDelete")
    soft_delete_retention_days: Annotated[
        int, Field(ge=7, le=90, alias="softDeleteRetentionDays")
    ] = 90
    enable_purge_protection: bool = Field(True, alias="enablePurgeProtection")
    enable_rbac_authorization: bool = Field(False, alias="enableRbacAuthorization")
    access_policies: list[AccessPolicyConfig] = Field(
        default_factory=list, alias="accessPolicies"
    )
    secrets: list[SecretConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not KEY_VAULT_NAME_PATTERN.match(v):
            raise ValueError(
                "name must start with a letter, end with a letter or digit and "
                "contain only letters, digits and hyphens"
            )
        if "--" in v:
            raise ValueError("name cannot contain consecutive hyphens")
        return v

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid = {"standard", "premium"}
        if v.lower() not in valid:
            raise ValueError(f"sku must be one of {valid}")
        return v.lower()

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant(cls, v: str | None) -> str | None:
        if v is not None and not GUID_PATTERN.match(v):
            raise ValueError(f"tenantId must be a GUID: {v}")
        return v

    @model_validator(mode="after")
    def validate_secret_names_unique(self) -> KeyVaultConfig:
        names = [s.name.lower() for s in self.secrets]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate secret names: {duplicates}")
        return self

    @property
    def uri(self) -> str:
        return f"https://{self.name}.vault.azure.net/"

    def get_secret(self, name: str) -> SecretConfig | None:
        # Key Vault secret names are case-insensitive
        for secret in self.secrets:
            if secret.name.lower() == name.lower():
                return secret
        return None

    def to_arm_parameters(self) -> dict[str, Any]:
        """Convert to ARM template parameters (secret values excluded)."""
        params: dict[str, Any] = {
            "keyVaultName": {"value": self.name},
            "skuName": {"value": self.sku},
            "enabledForTemplateDeployment": {"value": self.enabled_for_template_deployment},
            "enabledForDeployment": {"value": self.enabled_for_deployment},
            "enableSoftDelete": {"value": self.enable_soft_delete},
            "softDeleteRetentionInDays": {"value": self.soft_delete_retention_days},
            "enablePurgeProtection": {"value": self.enable_purge_protection},
            "enableRbacAuthorization": {"value": self.enable_rbac_authorization},
            "accessPolicies": {
                "value": [
                    {
                        "objectId": p.object_id,
                        "tenantId": p.tenant_id or self.tenant_id,
                        "secretPermissions": p.secret_permissions,
                    }
                    for p in self.access_policies
                ]
            },
        }
        if self.tenant_id:
            params["tenantId"] = {"value": self.tenant_id}
        return params


# =============================================================================
# Virtual Machine
# =============================================================================


class ImageReferenceConfig(BaseModel):
    """Marketplace image for SQL Server on Windows Server."""

    model_config = {"extra": "ignore"}

    publisher: str = "MicrosoftSQLServer"
    offer: str = "sql2022-ws2022"
    sku: str = "sqldev-gen2"
    version: str = "latest"

    def to_arm(self) -> dict[str, str]:
        return {
            "publisher": self.publisher,
            "offer": self.offer,
            "sku": self.sku,
            "version": self.version,
        }


class PublicIpConfig(BaseModel):
    """Public IP address attached to the NIC."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = True
    sku: str = "Standard"
    allocation_method: str = Field("Static", alias="allocationMethod")
    dns_label: str | None = Field(None, alias="dnsLabel")

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid = {"Basic", "Standard"}
        if v not in valid:
            raise ValueError(f"sku must be one of {valid}")
        return v

    @field_validator("allocation_method")
    @classmethod
    def validate_allocation(cls, v: str) -> str:
        valid = {"Static", "Dynamic"}
        if v not in valid:
            raise ValueError(f"allocationMethod must be one of {valid}")
        return v

    @field_validator("dns_label")
    @classmethod
    def validate_dns_label(cls, v: str | None) -> str | None:
        if v is not None and not re.match(r"^[a-z][a-z0-9-]{1,61}[a-z0-9]$", v):
            raise ValueError(f"dnsLabel must be a lowercase DNS label: {v}")
        return v

    @model_validator(mode="after")
    def validate_standard_is_static(self) -> PublicIpConfig:
        if self.sku == "Standard" and self.allocation_method != "Static":
            raise ValueError("Standard SKU public IPs require Static allocation")
        return self


class NetworkConfig(BaseModel):
    """Network placement of the VM."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    virtual_network_name: Annotated[
        str, Field(min_length=2, max_length=64, alias="virtualNetworkName")
    ]
    subnet_name: Annotated[str, Field(min_length=1, max_length=80, alias="subnetName")]
    virtual_network_resource_group: str | None = Field(
        None, alias="virtualNetworkResourceGroup"
    )
    public_ip: PublicIpConfig = Field(default_factory=PublicIpConfig, alias="publicIp")
    accelerated_networking: bool = Field(False, alias="acceleratedNetworking")


class PasswordReferenceConfig(BaseModel):
    """Key Vault reference for the VM admin password."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    vault_name: str = Field(alias="vaultName")
    secret_name: str = Field(alias="secretName")
    secret_version: str | None = Field(None, alias="secretVersion")


class VirtualMachineConfig(BaseModel):
    """Windows Server / SQL Server virtual machine configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=15)]
    size: str = "Standard_D2s_v5"
    admin_username: Annotated[str, Field(min_length=1, max_length=20, alias="adminUsername")]
    admin_password: PasswordReferenceConfig = Field(alias="adminPassword")
    image: ImageReferenceConfig = Field(default_factory=ImageReferenceConfig)
    os_disk_type: str = Field("Premium_LRS", alias="osDiskType")
    data_disks: list[Annotated[int, Field(ge=4, le=32767)]] = Field(
        default_factory=list, alias="dataDisks"
    )
    network: NetworkConfig
    sql_connectivity: str = Field("PRIVATE", alias="sqlConnectivity")
    sql_port: Annotated[int, Field(ge=1, le=65535, alias="sqlPort")] = DEFAULT_SQL_PORT
    time_zone: str = Field("UTC", alias="timeZone")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        bad = sorted(WINDOWS_NAME_FORBIDDEN_CHARS.intersection(v))
        if bad:
            raise ValueError(f"name contains characters not allowed in Windows names: {bad}")
        if v.isdigit():
            raise ValueError("name cannot be entirely numeric")
        if v.startswith("-") or v.endswith("-"):
            raise ValueError("name cannot start or end with a hyphen")
        return v

    @field_validator("admin_username")
    @classmethod
    def validate_admin_username(cls, v: str) -> str:
        if v.lower() in RESERVED_ADMIN_USERNAMES:
            raise ValueError(f"adminUsername '{v}' is reserved")
        if v.endswith("."):
            raise ValueError("adminUsername cannot end with a period")
        if any(c in v for c in '\\/"[]:|<>+=;,?*@'):
            raise ValueError("adminUsername contains invalid characters")
        return v

    @field_validator("os_disk_type")
    @classmethod
    def validate_os_disk(cls, v: str) -> str:
        valid = {"Standard_LRS", "StandardSSD_LRS", "Premium_LRS"}
        if v not in valid:
            raise ValueError(f"osDiskType must be one of {valid}")
        return v

    @field_validator("sql_connectivity")
    @classmethod
    def validate_sql_connectivity(cls, v: str) -> str:
        valid = {"LOCAL", "PRIVATE", "PUBLIC"}
        if v.upper() not in valid:
            raise ValueError(f"sqlConnectivity must be one of {valid}")
        return v.upper()

    def to_arm_parameters(self) -> dict[str, Any]:
        """Convert to ARM template parameters (password excluded)."""
        network = self.network
        params: dict[str, Any] = {
            "vmName": {"value": self.name},
            "vmSize": {"value": self.size},
            "adminUsername": {"value": self.admin_username},
            "imageReference": {"value": self.image.to_arm()},
            "osDiskType": {"value": self.os_disk_type},
            "dataDiskSizesGB": {"value": list(self.data_disks)},
            "virtualNetworkName": {"value": network.virtual_network_name},
            "subnetName": {"value": network.subnet_name},
            "deployPublicIp": {"value": network.public_ip.enabled},
            "publicIpSku": {"value": network.public_ip.sku},
            "publicIpAllocationMethod": {"value": network.public_ip.allocation_method},
            "enableAcceleratedNetworking": {"value": network.accelerated_networking},
            "sqlConnectivityType": {"value": self.sql_connectivity},
            "sqlPort": {"value": self.sql_port},
            "timeZone": {"value": self.time_zone},
        }
        if network.virtual_network_resource_group:
            params["virtualNetworkResourceGroup"] = {
                "value": network.virtual_network_resource_group
            }
        if network.public_ip.dns_label:
            params["publicIpDnsLabel"] = {"value": network.public_ip.dns_label}
        return params


# =============================================================================
# JIT access
# =============================================================================


class JitPortRule(BaseModel):
    """A management port governed by JIT access."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    number: Annotated[int, Field(ge=1, le=65535)]
    protocol: str = "TCP"
    allowed_source_address_prefixes: list[str] = Field(
        default_factory=lambda: ["*"], alias="allowedSourceAddressPrefixes"
    )
    max_request_access_duration: str = Field("PT3H", alias="maxRequestAccessDuration")

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        normalized = "*" if v == "*" else v.upper()
        if normalized not in {"TCP", "UDP", "*"}:
            raise ValueError("protocol must be TCP, UDP or *")
        return normalized

    @field_validator("allowed_source_address_prefixes")
    @classmethod
    def validate_prefixes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("allowedSourceAddressPrefixes cannot be empty")
        return v

    @field_validator("max_request_access_duration")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        duration = parse_iso_duration(v)
        if not (MIN_JIT_DURATION <= duration <= MAX_JIT_DURATION):
            raise ValueError("maxRequestAccessDuration must be between 1 minute and 24 hours")
        return v

    def to_arm(self) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "number": self.number,
            "protocol": self.protocol,
            "maxRequestAccessDuration": self.max_request_access_duration,
        }
        if len(self.allowed_source_address_prefixes) == 1:
            rule["allowedSourceAddressPrefix"] = self.allowed_source_address_prefixes[0]
        else:
            rule["allowedSourceAddressPrefixes"] = self.allowed_source_address_prefixes
        return rule


def _default_jit_ports() -> list[JitPortRule]:
    return [JitPortRule(number=DEFAULT_RDP_PORT), JitPortRule(number=DEFAULT_SQL_PORT)]


class JitConfig(BaseModel):
    """Defender for Cloud just-in-time VM access policy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = True
    policy_name: str = Field("default", alias="policyName")
    ports: list[JitPortRule] = Field(default_factory=_default_jit_ports)

    @model_validator(mode="after")
    def validate_unique_ports(self) -> JitConfig:
        numbers = [p.number for p in self.ports]
        duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate JIT ports: {duplicates}")
        if self.enabled and not self.ports:
            raise ValueError("at least one port is required when JIT is enabled")
        return self


# =============================================================================
# Root specification
# =============================================================================


class DeploymentSpec(BaseModel):
    """Root specification: a Key Vault, the SQL Server VM and its JIT policy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    location: str | None = None
    resource_group_name: str | None = Field(None, alias="resourceGroupName")
    tags: dict[str, str] = Field(default_factory=dict)
    key_vault: KeyVaultConfig = Field(alias="keyVault")
    virtual_machine: VirtualMachineConfig = Field(alias="virtualMachine")
    jit: JitConfig = Field(default_factory=JitConfig)

    @model_validator(mode="after")
    def default_jit_ports(self) -> DeploymentSpec:
        """Without an explicit port list, JIT covers RDP and the VM's SQL port."""
        if "ports" not in self.jit.model_fields_set:
            numbers = dict.fromkeys((DEFAULT_RDP_PORT, self.virtual_machine.sql_port))
            self.jit.ports = [JitPortRule(number=n) for n in numbers]
        return self

    @model_validator(mode="after")
    def validate_cross_references(self) -> DeploymentSpec:
        """Ensure names referenced across sections agree."""
        ref = self.virtual_machine.admin_password
        if ref.vault_name.lower() != self.key_vault.name.lower():
            raise ValueError(
                f"virtualMachine.adminPassword.vaultName '{ref.vault_name}' does not match "
                f"keyVault.name '{self.key_vault.name}'"
            )
        if self.key_vault.get_secret(ref.secret_name) is None:
            raise ValueError(
                f"virtualMachine.adminPassword.secretName '{ref.secret_name}' is not declared "
                f"in keyVault.secrets"
            )
        if not self.key_vault.enabled_for_template_deployment:
            raise ValueError(
                "keyVault.enabledForTemplateDeployment must be true when the VM password "
                "is a Key Vault reference"
            )
        return self

    @property
    def password_secret(self) -> SecretConfig:
        secret = self.key_vault.get_secret(self.virtual_machine.admin_password.secret_name)
        # Guaranteed by validate_cross_references
        assert secret is not None
        return secret

    def keyvault_parameters(self) -> dict[str, Any]:
        params = self.key_vault.to_arm_parameters()
        if self.location:
            params["location"] = {"value": self.location}
        if self.tags:
            params["tags"] = {"value": self.tags}
        return params

    def vm_parameters(self) -> dict[str, Any]:
        params = self.virtual_machine.to_arm_parameters()
        if self.location:
            params["location"] = {"value": self.location}
        if self.tags:
            params["tags"] = {"value": self.tags}
        return params
