"""Bicep compilation through the Azure CLI.

The Bicep compiler is an external tool; this module only invokes
``az bicep build`` and surfaces its diagnostics verbatim.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

BICEP_BUILD_TIMEOUT_SECONDS = 120


class BicepBuildError(Exception):
    """Raised when the Bicep compiler fails or is unavailable."""

    pass


def _az_executable() -> str:
    az = shutil.which("az")
    if not az:
        raise BicepBuildError(
            "Azure CLI (az) not found. Install from https://aka.ms/installazurecli"
        )
    return az


def _run_bicep(args: list[str], source: Path, timeout: int) -> subprocess.CompletedProcess[str]:
    cmd = [_az_executable(), "bicep", "build", "--file", str(source), *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise BicepBuildError(f"Bicep build timed out after {timeout}s: {source}") from e

    if result.returncode != 0:
        logger.error(
            "Bicep build failed",
            extra={"file": str(source), "exit_code": result.returncode},
        )
        raise BicepBuildError(
            f"Bicep build failed for {source} (exit code {result.returncode}):\n"
            f"{result.stderr.strip()}"
        )

    # Linter warnings are printed to stderr even on success
    if result.stderr.strip():
        logger.warning(
            "Bicep build produced warnings",
            extra={"file": str(source), "warnings": result.stderr.strip()},
        )
    return result


def compile_bicep(
    source: Path, timeout: int = BICEP_BUILD_TIMEOUT_SECONDS
) -> dict[str, Any]:
    """Compile a Bicep file and return the ARM template.

    Raises:
        BicepBuildError: If compilation fails, times out or output is not JSON.
    """
    result = _run_bicep(["--stdout"], source, timeout)
    try:
        template = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise BicepBuildError(f"Bicep compiler returned invalid JSON for {source}: {e}") from e

    logger.info("Compiled Bicep template", extra={"file": str(source)})
    return template


def build_to_file(
    source: Path, outfile: Path, timeout: int = BICEP_BUILD_TIMEOUT_SECONDS
) -> Path:
    """Compile a Bicep file to an ARM JSON file next to the build outputs."""
    outfile.parent.mkdir(parents=True, exist_ok=True)
    _run_bicep(["--outfile", str(outfile)], source, timeout)
    logger.info("Compiled Bicep template", extra={"file": str(source), "outfile": str(outfile)})
    return outfile
