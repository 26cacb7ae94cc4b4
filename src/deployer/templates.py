"""ARM template builders for the Key Vault, the SQL Server VM and JIT access.

Templates are plain dictionaries in the ARM JSON schema. They are the same
documents ``az bicep build`` produces, so they can be written to disk,
diffed, or handed straight to the deployments API. All expression
evaluation (``resourceId``, ``dateTimeAdd``, Key Vault references) happens
inside Azure Resource Manager.
"""

from __future__ import annotations

import re
from typing import Any

from .models import JitConfig, KeyVaultConfig, PasswordReferenceConfig

DEPLOYMENT_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
)
DEPLOYMENT_PARAMETERS_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"
)
CONTENT_VERSION = "1.0.0.0"

# Resource API versions
KEY_VAULT_API_VERSION = "2023-07-01"
VIRTUAL_MACHINE_API_VERSION = "2023-09-01"
NETWORK_API_VERSION = "2023-11-01"
SQL_VIRTUAL_MACHINE_API_VERSION = "2023-10-01"
JIT_POLICY_API_VERSION = "2020-01-01"

KEY_VAULT_TYPE = "Microsoft.KeyVault/vaults"
KEY_VAULT_SECRET_TYPE = "Microsoft.KeyVault/vaults/secrets"
VIRTUAL_MACHINE_TYPE = "Microsoft.Compute/virtualMachines"
VM_EXTENSION_TYPE = "Microsoft.Compute/virtualMachines/extensions"
NETWORK_INTERFACE_TYPE = "Microsoft.Network/networkInterfaces"
PUBLIC_IP_TYPE = "Microsoft.Network/publicIPAddresses"
SQL_VIRTUAL_MACHINE_TYPE = "Microsoft.SqlVirtualMachine/sqlVirtualMachines"
JIT_POLICY_TYPE = "Microsoft.Security/locations/jitNetworkAccessPolicies"

# Parameters whose values must never be literals in a parameters document
SENSITIVE_PARAMETER_NAMES: frozenset[str] = frozenset({"adminPassword"})


class TemplateError(Exception):
    """Raised when a template or parameter set is inconsistent."""

    pass


def _empty_template() -> dict[str, Any]:
    return {
        "$schema": DEPLOYMENT_TEMPLATE_SCHEMA,
        "contentVersion": CONTENT_VERSION,
        "parameters": {},
        "variables": {},
        "resources": [],
        "outputs": {},
    }


def _location_parameter() -> dict[str, Any]:
    return {"type": "string", "defaultValue": "[resourceGroup().location]"}


def _tags_parameter() -> dict[str, Any]:
    return {"type": "object", "defaultValue": {}}


def secret_parameter_name(secret_name: str) -> str:
    """Map a secret name (hyphenated) to a template parameter name."""
    parts = [p for p in re.split(r"[^0-9a-zA-Z]+", secret_name) if p]
    return "secret" + "".join(p[:1].upper() + p[1:] for p in parts) + "Value"


def key_vault_resource_id(subscription_id: str, resource_group: str, vault_name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{KEY_VAULT_TYPE}/{vault_name}"
    )


def virtual_machine_resource_id(subscription_id: str, resource_group: str, vm_name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{VIRTUAL_MACHINE_TYPE}/{vm_name}"
    )


# =============================================================================
# Key Vault
# =============================================================================


def build_keyvault_template(
    key_vault: KeyVaultConfig, secret_names: list[str] | None = None
) -> dict[str, Any]:
    """Build the Key Vault template.

    Args:
        key_vault: Vault configuration.
        secret_names: Declared secrets whose values are supplied as secure
            template parameters. Secrets not listed here are expected to be
            written with the secrets module after the vault exists.

    Returns:
        ARM template dictionary.
    """
    template = _empty_template()
    template["parameters"] = {
        "keyVaultName": {"type": "string", "minLength": 3, "maxLength": 24},
        "location": _location_parameter(),
        "tenantId": {"type": "string", "defaultValue": "[subscription().tenantId]"},
        "skuName": {
            "type": "string",
            "defaultValue": "standard",
            "allowedValues": ["standard", "premium"],
        },
        "enabledForTemplateDeployment": {"type": "bool", "defaultValue": True},
        "enabledForDeployment": {"type": "bool", "defaultValue": False},
        "enableSoftDelete": {"type": "bool", "defaultValue": True},
        "softDeleteRetentionInDays": {
            "type": "int",
            "defaultValue": 90,
            "minValue": 7,
            "maxValue": 90,
        },
        "enablePurgeProtection": {"type": "bool", "defaultValue": True},
        "enableRbacAuthorization": {"type": "bool", "defaultValue": False},
        "accessPolicies": {"type": "array", "defaultValue": []},
        "tags": _tags_parameter(),
        # utcNow() is only allowed as a parameter default value
        "baseTime": {"type": "string", "defaultValue": "[utcNow('u')]"},
    }

    vault_properties: dict[str, Any] = {
        "tenantId": "[parameters('tenantId')]",
        "sku": {"family": "A", "name": "[parameters('skuName')]"},
        "enabledForTemplateDeployment": "[parameters('enabledForTemplateDeployment')]",
        "enabledForDeployment": "[parameters('enabledForDeployment')]",
        "enableSoftDelete": "[parameters('enableSoftDelete')]",
        "softDeleteRetentionInDays": "[parameters('softDeleteRetentionInDays')]",
        "enableRbacAuthorization": "[parameters('enableRbacAuthorization')]",
        "copy": [
            {
                "name": "accessPolicies",
                "count": "[length(parameters('accessPolicies'))]",
                "input": {
                    "tenantId": (
                        "[coalesce(parameters('accessPolicies')[copyIndex('accessPolicies')]"
                        ".tenantId, parameters('tenantId'))]"
                    ),
                    "objectId": (
                        "[parameters('accessPolicies')[copyIndex('accessPolicies')].objectId]"
                    ),
                    "permissions": {
                        "secrets": (
                            "[parameters('accessPolicies')[copyIndex('accessPolicies')]"
                            ".secretPermissions]"
                        ),
                    },
                },
            }
        ],
    }
    # Purge protection cannot be disabled once set; ARM rejects an explicit false
    if key_vault.enable_purge_protection:
        vault_properties["enablePurgeProtection"] = "[parameters('enablePurgeProtection')]"

    resources: list[dict[str, Any]] = [
        {
            "type": KEY_VAULT_TYPE,
            "apiVersion": KEY_VAULT_API_VERSION,
            "name": "[parameters('keyVaultName')]",
            "location": "[parameters('location')]",
            "tags": "[parameters('tags')]",
            "properties": vault_properties,
        }
    ]

    for name in secret_names or []:
        secret = key_vault.get_secret(name)
        if secret is None:
            raise TemplateError(f"Secret '{name}' is not declared on vault '{key_vault.name}'")

        param_name = secret_parameter_name(secret.name)
        template["parameters"][param_name] = {"type": "securestring"}

        secret_properties: dict[str, Any] = {
            "value": f"[parameters('{param_name}')]",
            "attributes": {
                "enabled": True,
                "exp": (
                    f"[dateTimeToEpoch(dateTimeAdd(parameters('baseTime'), "
                    f"'P{secret.expiry_days}D'))]"
                ),
            },
        }
        if secret.content_type:
            secret_properties["contentType"] = secret.content_type

        resources.append(
            {
                "type": KEY_VAULT_SECRET_TYPE,
                "apiVersion": KEY_VAULT_API_VERSION,
                "name": f"[format('{{0}}/{{1}}', parameters('keyVaultName'), '{secret.name}')]",
                "dependsOn": [
                    f"[resourceId('{KEY_VAULT_TYPE}', parameters('keyVaultName'))]"
                ],
                "properties": secret_properties,
            }
        )

    template["resources"] = resources
    template["outputs"] = {
        "vaultId": {
            "type": "string",
            "value": f"[resourceId('{KEY_VAULT_TYPE}', parameters('keyVaultName'))]",
        },
        "vaultUri": {
            "type": "string",
            "value": (
                f"[reference(resourceId('{KEY_VAULT_TYPE}', "
                f"parameters('keyVaultName'))).vaultUri]"
            ),
        },
    }
    return template


# =============================================================================
# Virtual Machine
# =============================================================================


def build_vm_template() -> dict[str, Any]:
    """Build the template for the public IP, NIC, SQL Server VM and SQL IaaS registration."""
    template = _empty_template()
    template["parameters"] = {
        "vmName": {"type": "string", "minLength": 1, "maxLength": 15},
        "location": _location_parameter(),
        "vmSize": {"type": "string", "defaultValue": "Standard_D2s_v5"},
        "adminUsername": {"type": "string", "minLength": 1, "maxLength": 20},
        "adminPassword": {"type": "securestring", "minLength": 12, "maxLength": 123},
        "imageReference": {"type": "object"},
        "osDiskType": {
            "type": "string",
            "defaultValue": "Premium_LRS",
            "allowedValues": ["Standard_LRS", "StandardSSD_LRS", "Premium_LRS"],
        },
        "dataDiskSizesGB": {"type": "array", "defaultValue": []},
        "virtualNetworkName": {"type": "string"},
        "virtualNetworkResourceGroup": {
            "type": "string",
            "defaultValue": "[resourceGroup().name]",
        },
        "subnetName": {"type": "string"},
        "deployPublicIp": {"type": "bool", "defaultValue": True},
        "publicIpSku": {
            "type": "string",
            "defaultValue": "Standard",
            "allowedValues": ["Basic", "Standard"],
        },
        "publicIpAllocationMethod": {
            "type": "string",
            "defaultValue": "Static",
            "allowedValues": ["Static", "Dynamic"],
        },
        "publicIpDnsLabel": {"type": "string", "defaultValue": ""},
        "enableAcceleratedNetworking": {"type": "bool", "defaultValue": False},
        "sqlConnectivityType": {
            "type": "string",
            "defaultValue": "PRIVATE",
            "allowedValues": ["LOCAL", "PRIVATE", "PUBLIC"],
        },
        "sqlPort": {"type": "int", "defaultValue": 1433, "minValue": 1, "maxValue": 65535},
        "timeZone": {"type": "string", "defaultValue": "UTC"},
        "tags": _tags_parameter(),
    }
    template["variables"] = {
        "nicName": "[format('{0}-nic', parameters('vmName'))]",
        "publicIpName": "[format('{0}-pip', parameters('vmName'))]",
        "subnetId": (
            "[resourceId(parameters('virtualNetworkResourceGroup'), "
            "'Microsoft.Network/virtualNetworks/subnets', "
            "parameters('virtualNetworkName'), parameters('subnetName'))]"
        ),
    }

    public_ip_id = f"[resourceId('{PUBLIC_IP_TYPE}', variables('publicIpName'))]"
    nic_id = f"[resourceId('{NETWORK_INTERFACE_TYPE}', variables('nicName'))]"
    vm_id = f"[resourceId('{VIRTUAL_MACHINE_TYPE}', parameters('vmName'))]"

    public_ip = {
        "condition": "[parameters('deployPublicIp')]",
        "type": PUBLIC_IP_TYPE,
        "apiVersion": NETWORK_API_VERSION,
        "name": "[variables('publicIpName')]",
        "location": "[parameters('location')]",
        "tags": "[parameters('tags')]",
        "sku": {"name": "[parameters('publicIpSku')]"},
        "properties": {
            "publicIPAllocationMethod": "[parameters('publicIpAllocationMethod')]",
            "dnsSettings": (
                "[if(empty(parameters('publicIpDnsLabel')), null(), "
                "createObject('domainNameLabel', parameters('publicIpDnsLabel')))]"
            ),
        },
    }

    nic = {
        "type": NETWORK_INTERFACE_TYPE,
        "apiVersion": NETWORK_API_VERSION,
        "name": "[variables('nicName')]",
        "location": "[parameters('location')]",
        "tags": "[parameters('tags')]",
        "dependsOn": [public_ip_id],
        "properties": {
            "enableAcceleratedNetworking": "[parameters('enableAcceleratedNetworking')]",
            "ipConfigurations": [
                {
                    "name": "ipconfig1",
                    "properties": {
                        "subnet": {"id": "[variables('subnetId')]"},
                        "privateIPAllocationMethod": "Dynamic",
                        "publicIPAddress": (
                            f"[if(parameters('deployPublicIp'), createObject('id', "
                            f"resourceId('{PUBLIC_IP_TYPE}', variables('publicIpName'))), null())]"
                        ),
                    },
                }
            ],
        },
    }

    vm = {
        "type": VIRTUAL_MACHINE_TYPE,
        "apiVersion": VIRTUAL_MACHINE_API_VERSION,
        "name": "[parameters('vmName')]",
        "location": "[parameters('location')]",
        "tags": "[parameters('tags')]",
        "dependsOn": [nic_id],
        "properties": {
            "hardwareProfile": {"vmSize": "[parameters('vmSize')]"},
            "storageProfile": {
                "imageReference": "[parameters('imageReference')]",
                "osDisk": {
                    "createOption": "FromImage",
                    "managedDisk": {"storageAccountType": "[parameters('osDiskType')]"},
                },
                "copy": [
                    {
                        "name": "dataDisks",
                        "count": "[length(parameters('dataDiskSizesGB'))]",
                        "input": {
                            "lun": "[copyIndex('dataDisks')]",
                            "createOption": "Empty",
                            "diskSizeGB": "[parameters('dataDiskSizesGB')[copyIndex('dataDisks')]]",
                            "managedDisk": {
                                "storageAccountType": "[parameters('osDiskType')]"
                            },
                        },
                    }
                ],
            },
            "osProfile": {
                "computerName": "[parameters('vmName')]",
                "adminUsername": "[parameters('adminUsername')]",
                "adminPassword": "[parameters('adminPassword')]",
                "windowsConfiguration": {
                    "enableAutomaticUpdates": True,
                    "provisionVMAgent": True,
                    "timeZone": "[parameters('timeZone')]",
                },
            },
            "networkProfile": {"networkInterfaces": [{"id": nic_id}]},
            "diagnosticsProfile": {"bootDiagnostics": {"enabled": True}},
        },
    }

    sql_vm = {
        "type": SQL_VIRTUAL_MACHINE_TYPE,
        "apiVersion": SQL_VIRTUAL_MACHINE_API_VERSION,
        "name": "[parameters('vmName')]",
        "location": "[parameters('location')]",
        "tags": "[parameters('tags')]",
        "dependsOn": [vm_id],
        "properties": {
            "virtualMachineResourceId": vm_id,
            "sqlManagement": "Full",
            "sqlServerLicenseType": "PAYG",
            "serverConfigurationsManagementSettings": {
                "sqlConnectivityUpdateSettings": {
                    "connectivityType": "[parameters('sqlConnectivityType')]",
                    "port": "[parameters('sqlPort')]",
                }
            },
        },
    }

    template["resources"] = [public_ip, nic, vm, sql_vm]
    template["outputs"] = {
        "vmId": {"type": "string", "value": vm_id},
        "privateIpAddress": {
            "type": "string",
            "value": (
                "[reference(resourceId('Microsoft.Network/networkInterfaces', "
                "variables('nicName'))).ipConfigurations[0].properties.privateIPAddress]"
            ),
        },
        "publicIpAddress": {
            "type": "string",
            "value": (
                "[if(parameters('deployPublicIp'), reference(resourceId("
                "'Microsoft.Network/publicIPAddresses', variables('publicIpName'))).ipAddress, '')]"
            ),
        },
    }
    return template


def build_password_reset_template() -> dict[str, Any]:
    """Build a VMAccessAgent extension template that resets the admin password.

    Equivalent to ``az vm user update`` for Windows VMs.
    """
    template = _empty_template()
    template["parameters"] = {
        "vmName": {"type": "string", "minLength": 1, "maxLength": 15},
        "location": _location_parameter(),
        "adminUsername": {"type": "string", "minLength": 1, "maxLength": 20},
        "adminPassword": {"type": "securestring", "minLength": 12, "maxLength": 123},
    }
    template["resources"] = [
        {
            "type": VM_EXTENSION_TYPE,
            "apiVersion": VIRTUAL_MACHINE_API_VERSION,
            "name": "[format('{0}/enablevmAccess', parameters('vmName'))]",
            "location": "[parameters('location')]",
            "properties": {
                "publisher": "Microsoft.Compute",
                "type": "VMAccessAgent",
                "typeHandlerVersion": "2.4",
                "autoUpgradeMinorVersion": True,
                "settings": {"UserName": "[parameters('adminUsername')]"},
                "protectedSettings": {"Password": "[parameters('adminPassword')]"},
            },
        }
    ]
    return template


# =============================================================================
# JIT access
# =============================================================================


def build_jit_template() -> dict[str, Any]:
    """Build the Defender for Cloud JIT network access policy template.

    The policy lives under the VM's region, so ``location`` must be the
    region of the VM rather than of the resource group.
    """
    template = _empty_template()
    template["parameters"] = {
        "location": _location_parameter(),
        "policyName": {"type": "string", "defaultValue": "default"},
        "vmId": {"type": "string"},
        "ports": {"type": "array", "minLength": 1},
    }
    template["resources"] = [
        {
            "type": JIT_POLICY_TYPE,
            "apiVersion": JIT_POLICY_API_VERSION,
            "name": "[format('{0}/{1}', parameters('location'), parameters('policyName'))]",
            "kind": "Basic",
            "properties": {
                "virtualMachines": [
                    {"id": "[parameters('vmId')]", "ports": "[parameters('ports')]"}
                ]
            },
        }
    ]
    return template


def jit_parameters(jit: JitConfig, vm_id: str, location: str) -> dict[str, Any]:
    return {
        "location": {"value": location},
        "policyName": {"value": jit.policy_name},
        "vmId": {"value": vm_id},
        "ports": {"value": [p.to_arm() for p in jit.ports]},
    }


# =============================================================================
# Parameters documents
# =============================================================================


def key_vault_reference(vault_id: str, ref: PasswordReferenceConfig) -> dict[str, Any]:
    """ARM parameter value that ARM resolves from a Key Vault secret at deployment time."""
    reference: dict[str, Any] = {
        "keyVault": {"id": vault_id},
        "secretName": ref.secret_name,
    }
    if ref.secret_version:
        reference["secretVersion"] = ref.secret_version
    return {"reference": reference}


def build_parameters_file(parameters: dict[str, Any]) -> dict[str, Any]:
    """Wrap parameters in a ``deploymentParameters.json`` document.

    Raises:
        TemplateError: If a sensitive parameter carries a literal value.
    """
    for name in SENSITIVE_PARAMETER_NAMES:
        entry = parameters.get(name)
        if entry is not None and "reference" not in entry:
            raise TemplateError(
                f"Parameter '{name}' must be a Key Vault reference, not a literal value"
            )
    return {
        "$schema": DEPLOYMENT_PARAMETERS_SCHEMA,
        "contentVersion": CONTENT_VERSION,
        "parameters": parameters,
    }


_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "securestring": (str,),
    "int": (int,),
    "bool": (bool,),
    "object": (dict,),
    "secureobject": (dict,),
    "array": (list,),
}


def check_parameters(template: dict[str, Any], parameters: dict[str, Any]) -> list[str]:
    """Check a parameter set against the constraints a template declares.

    Mirrors the checks ARM performs before deploying: unknown parameters,
    missing required parameters, types, lengths, ranges and allowed values.
    Key Vault references and template expressions are not evaluated.

    Returns:
        List of human-readable problems (empty when valid).
    """
    problems: list[str] = []
    declared: dict[str, Any] = template.get("parameters", {})

    for name in parameters:
        if name not in declared:
            problems.append(f"{name}: not declared by the template")

    for name, decl in declared.items():
        entry = parameters.get(name)
        if entry is None:
            if "defaultValue" not in decl:
                problems.append(f"{name}: required parameter has no value")
            continue
        if "reference" in entry:
            continue

        value = entry.get("value")
        param_type = str(decl.get("type", "")).lower()
        expected = _TYPE_CHECKS.get(param_type)
        # bool is a subclass of int; an int parameter must not accept True/False
        if expected and (
            not isinstance(value, expected) or (param_type == "int" and isinstance(value, bool))
        ):
            problems.append(f"{name}: expected {param_type}, got {type(value).__name__}")
            continue

        if "allowedValues" in decl and value not in decl["allowedValues"]:
            problems.append(f"{name}: '{value}' is not one of {decl['allowedValues']}")
        if isinstance(value, (str, list)):
            if "minLength" in decl and len(value) < decl["minLength"]:
                problems.append(f"{name}: shorter than minLength {decl['minLength']}")
            if "maxLength" in decl and len(value) > decl["maxLength"]:
                problems.append(f"{name}: longer than maxLength {decl['maxLength']}")
        if isinstance(value, int) and not isinstance(value, bool):
            if "minValue" in decl and value < decl["minValue"]:
                problems.append(f"{name}: below minValue {decl['minValue']}")
            if "maxValue" in decl and value > decl["maxValue"]:
                problems.append(f"{name}: above maxValue {decl['maxValue']}")

    return problems


def api_versions(template: dict[str, Any]) -> dict[str, str]:
    """Map each resource type in a template to its declared API version."""
    return {r["type"]: r["apiVersion"] for r in template.get("resources", [])}
