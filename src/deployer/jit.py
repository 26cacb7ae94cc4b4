"""Just-in-time VM access policy.

Defender for Cloud brokers JIT access requests; this module only declares
which ports are locked down and for how long access may be granted. The
policy must be deployed after the VM exists because it references the VM id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .deployments import Deployer, DeploymentOutcome
from .models import DEFAULT_RDP_PORT, DeploymentSpec, JitConfig, parse_iso_duration
from .templates import build_jit_template, jit_parameters

logger = logging.getLogger(__name__)

JIT_STAGE = "jit"


@dataclass(frozen=True)
class JitPortPolicy:
    number: int
    protocol: str
    allowed_source_address_prefixes: tuple[str, ...]
    max_request_access_duration: timedelta


@dataclass
class JitPolicy:
    """JIT network access policy for a single VM."""

    name: str
    location: str
    vm_id: str
    ports: list[JitPortPolicy] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: JitConfig, vm_id: str, location: str) -> JitPolicy:
        return cls(
            name=config.policy_name,
            location=location,
            vm_id=vm_id,
            ports=[
                JitPortPolicy(
                    number=p.number,
                    protocol=p.protocol,
                    allowed_source_address_prefixes=tuple(p.allowed_source_address_prefixes),
                    max_request_access_duration=parse_iso_duration(p.max_request_access_duration),
                )
                for p in config.ports
            ],
        )

    @property
    def resource_id(self) -> str:
        # Policies live in the VM's resource group under the region
        scope = self.vm_id.split("/providers/", 1)[0]
        return (
            f"{scope}/providers/Microsoft.Security/locations/{self.location}"
            f"/jitNetworkAccessPolicies/{self.name}"
        )

    @property
    def port_numbers(self) -> list[int]:
        return [p.number for p in self.ports]

    def covers(self, port: int) -> bool:
        return port in self.port_numbers


async def configure_jit(
    deployer: Deployer,
    spec: DeploymentSpec,
    vm_id: str,
    template: dict[str, Any] | None = None,
    parameters: dict[str, Any] | None = None,
    spec_file_hash: str = "",
) -> DeploymentOutcome | None:
    """Deploy the JIT policy for the VM.

    ``template`` and ``parameters`` default to the generated policy template
    and the parameters derived from the spec.

    Returns:
        The deployment outcome, or None when JIT is disabled in the spec.

    Raises:
        DeploymentError: If ARM rejects the policy.
    """
    if not spec.jit.enabled:
        logger.info("JIT access disabled, skipping policy", extra={"vm_id": vm_id})
        return None

    location = spec.location or deployer.config.location
    policy = JitPolicy.from_config(spec.jit, vm_id, location)

    # RDP must stay behind JIT whenever a public IP is exposed
    if spec.virtual_machine.network.public_ip.enabled and not policy.covers(DEFAULT_RDP_PORT):
        logger.warning(
            "JIT policy does not cover RDP while a public IP is deployed",
            extra={"vm_id": vm_id, "ports": policy.port_numbers},
        )

    if parameters is None:
        parameters = jit_parameters(spec.jit, vm_id, location)
    if template is None:
        template = build_jit_template()
    preview = await deployer.what_if(JIT_STAGE, template, parameters)
    outcome = await deployer.deploy(
        JIT_STAGE, template, parameters, spec_file_hash=spec_file_hash, what_if=preview
    )

    logger.info(
        "JIT policy configured",
        extra={"policy": policy.resource_id, "ports": policy.port_numbers},
    )
    return outcome
