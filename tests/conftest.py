"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from deployer.config import Config  # noqa: E402
from deployer.models import DeploymentSpec  # noqa: E402
from deployer.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402

REPO_ROOT = Path(__file__).parent.parent

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
TENANT_ID = "11111111-1111-1111-1111-111111111111"
OBJECT_ID = "22222222-2222-2222-2222-222222222222"
RESOURCE_GROUP = "rg-sqlvm-dev"
VAULT_NAME = "kv-sqlvm-dev"
VM_NAME = "sqlvm-dev"
SECRET_NAME = "vm-admin-password"
VAULT_URL = f"https://{VAULT_NAME}.vault.azure.net/"


def make_spec_data() -> dict[str, Any]:
    return {
        "location": "westeurope",
        "tags": {"environment": "dev"},
        "keyVault": {
            "name": VAULT_NAME,
            "tenantId": TENANT_ID,
            "accessPolicies": [{"objectId": OBJECT_ID}],
            "secrets": [
                {"name": SECRET_NAME, "contentType": "password", "expiryDays": 90},
            ],
        },
        "virtualMachine": {
            "name": VM_NAME,
            "adminUsername": "sqladmin",
            "adminPassword": {"vaultName": VAULT_NAME, "secretName": SECRET_NAME},
            "network": {"virtualNetworkName": "vnet-dev", "subnetName": "snet-sql"},
        },
        "jit": {
            "ports": [
                {"number": 3389},
                {"number": 1433, "allowedSourceAddressPrefixes": ["10.0.0.0/8"]},
            ]
        },
    }


@pytest.fixture(autouse=True)
def clean_credential_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep credential variables of the test runner out of every test."""
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def spec_data() -> dict[str, Any]:
    return make_spec_data()


@pytest.fixture
def spec(spec_data: dict[str, Any]) -> DeploymentSpec:
    return DeploymentSpec.model_validate(spec_data)


@pytest.fixture
def specs_dir(tmp_path: Path, spec_data: dict[str, Any]) -> Path:
    directory = tmp_path / "specs"
    directory.mkdir()
    (directory / "deployment.yaml").write_text(yaml.safe_dump(spec_data))
    return directory


@pytest.fixture
def config(tmp_path: Path, specs_dir: Path) -> Config:
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        location="westeurope",
        resource_group_name=RESOURCE_GROUP,
        specs_dir=specs_dir,
        # Never pick up the repository's Bicep sources in tests
        templates_dir=tmp_path / "templates",
        pipeline_file=REPO_ROOT / "pipelines" / "azure-pipelines.yml",
        whatif_timeout_seconds=30,
        deployment_timeout_seconds=60,
    )
