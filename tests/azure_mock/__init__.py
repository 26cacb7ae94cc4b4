"""Azure API Mock for Integration Testing.

This module provides mock implementations of the Azure Resource Manager
and Key Vault secret APIs so the deployer can be tested without Azure
connectivity.

Key Features:
- In-memory resource group state
- Validate and WhatIf simulation with realistic change detection
- Deployment simulation with outputs, transient and permanent failures
- Generic resource reads with a VM instance view
- Versioned Key Vault secrets with expiry
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        deployer = Deployer(config, get_credential())
        await deployer.deploy("keyvault", template, parameters)

        assert ctx.get_deployment_count() == 1
"""

from .context import MockAzureContext, mock_azure_context
from .credential import MockManagedIdentityCredential, create_mock_credential
from .keyvault import MockKeyVaultSecret, MockSecretClient, MockSecretStore
from .resources import MockResource, MockResourceClient, MockResourceState

__all__ = [
    "MockAzureContext",
    "MockKeyVaultSecret",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "MockSecretClient",
    "MockSecretStore",
    "create_mock_credential",
    "mock_azure_context",
]
