"""Spec and template file loading with validation.

All file operations enforce size limits before reading. Input validation
is performed at the boundary.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .bicep import BicepBuildError, compile_bicep
from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_TEMPLATE_FILE_SIZE_BYTES
from .models import DeploymentSpec

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when spec or template loading or validation fails."""

    pass


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    """Read a text file after checking it exists and fits the size limit."""
    if not path.exists():
        raise SpecLoadError(f"{kind} file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {kind.lower()} file {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{kind} file exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {kind.lower()} file {path}: {e}") from e


def find_spec_file(specs_dir: Path, name: str) -> Path:
    """Locate ``<name>.yaml`` or ``<name>.yml`` in the specs directory."""
    for suffix in SPEC_FILE_SUFFIXES:
        candidate = specs_dir / f"{name}{suffix}"
        if candidate.exists():
            return candidate
    return specs_dir / f"{name}{SPEC_FILE_SUFFIXES[0]}"


def spec_file_hash(path: Path) -> str:
    """SHA256 of a spec file, used for provenance records."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def parse_spec(raw_data: Any, source: str = "<memory>") -> DeploymentSpec:
    """Validate already-parsed YAML data into a DeploymentSpec.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec must contain a YAML mapping: {source}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return DeploymentSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"]) or "spec"
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_spec(specs_dir: Path, name: str) -> DeploymentSpec:
    """Load and validate a deployment spec from YAML.

    Args:
        specs_dir: Directory containing spec files.
        name: Spec file name without extension.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    spec_path = find_spec_file(specs_dir, name)
    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, "Spec")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, str(spec_path))
    logger.info("Loaded spec '%s' from %s", name, spec_path)
    return spec


def load_template(template_path: Path) -> dict[str, Any]:
    """Load an ARM template from compiled JSON or a Bicep source file.

    Bicep files are compiled with the external Bicep compiler first.

    Raises:
        SpecLoadError: If the template cannot be loaded or compiled.
    """
    if template_path.suffix == ".bicep":
        if not template_path.exists():
            raise SpecLoadError(f"Template file not found: {template_path}")
        try:
            template = compile_bicep(template_path)
        except BicepBuildError as e:
            raise SpecLoadError(str(e)) from e
    else:
        content = _read_bounded(template_path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template")
        try:
            template = json.loads(content)
        except json.JSONDecodeError as e:
            raise SpecLoadError(f"Invalid JSON in {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise SpecLoadError(f"Template must be a JSON object: {template_path}")
    if "resources" not in template:
        raise SpecLoadError(f"Template has no 'resources' section: {template_path}")

    logger.info("Loaded template from %s", template_path)
    return template
