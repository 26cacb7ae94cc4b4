"""Main entry point for the Key Vault backed SQL Server VM deployer.

SECRETLESS ARCHITECTURE:
- Authentication uses a managed identity or the pipeline's federated Azure CLI login
- The VM admin password is generated into Key Vault and reaches ARM only
  as a Key Vault reference
- No credential is ever read from the environment
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .actions import default_actions, run_variables
from .config import Config, ConfigurationError
from .pipeline import PipelineError, PipelineRun, load_pipeline
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, find_spec_file, load_spec, spec_file_hash

_RESERVED_RECORD_KEYS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "taskName", "message",
})  # fmt: skip


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_KEYS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the full deployment pipeline from environment configuration.

    Returns:
        0 when every stage succeeded or was skipped, 1 on failure,
        2 on a security violation.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting deployment pipeline",
        extra={
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "location": config.location,
            "source_branch": config.source_branch,
            "dry_run": config.dry_run,
        },
    )

    try:
        spec = load_spec(config.specs_dir, config.spec_name)
        spec_hash = spec_file_hash(find_spec_file(config.specs_dir, config.spec_name))
        pipeline = load_pipeline(config.pipeline_file)
        credential = get_credential(config.client_id)
        pipeline_run = PipelineRun(
            pipeline,
            default_actions(config, spec, credential, spec_hash),
            run_variables(config),
        )
    except (SpecLoadError, PipelineError) as e:
        logger.error("Failed to prepare pipeline", extra={"error": str(e)})
        return 1
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        pipeline_run.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    await pipeline_run.run()

    if any(r.error_type == SecretlessViolationError.__name__ for r in pipeline_run.records):
        logger.critical("Security violation during pipeline run")
        return 2
    return 0 if pipeline_run.succeeded else 1


def run() -> None:
    """Entry point for the pipeline runner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
