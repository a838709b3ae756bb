"""Main entry point for the infraflow engine.

One invocation runs one operation against one cluster:
- reconcile: converge the network and identity resources, write status
- delete: tear down everything the persisted state says was created

Exit codes: 0 on success, 1 on any failure.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from .client import create_clients
from .config import Config, ConfigurationError
from .errors import InfraflowError
from .reconciler import FlowContext
from .spec_loader import SpecLoadError, load_infrastructure
from .state import FileStateStore

OPERATIONS = ("reconcile", "delete")

# LogRecord attributes that are not structured fields
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the Google client libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main(
    operation: str,
    *,
    infra_config_path: Path | None = None,
    state_path: Path | None = None,
) -> int:
    """Run one operation.

    Args:
        operation: "reconcile" or "delete".
        infra_config_path: Overrides INFRA_CONFIG_PATH.
        state_path: Overrides STATE_PATH.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    if operation not in OPERATIONS:
        logger.error("Unknown operation", extra={"operation": operation})
        return 1

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    overrides = {}
    if infra_config_path is not None:
        overrides["infra_config_path"] = Path(infra_config_path)
    if state_path is not None:
        overrides["state_path"] = Path(state_path)
    if overrides:
        config = dataclasses.replace(config, **overrides)

    logger.info(
        "Starting infraflow",
        extra={
            "operation": operation,
            "project_id": config.project_id,
            "region": config.region,
            "cluster": config.cluster_name,
        },
    )

    try:
        infra = load_infrastructure(config.infra_config_path)
    except SpecLoadError as e:
        logger.error(
            "Infrastructure config loading failed",
            extra={"error": str(e), "path": str(config.infra_config_path)},
        )
        return 1

    try:
        compute, iam = create_clients(config)
        ctx = await FlowContext.from_store(
            config=config,
            infra=infra,
            compute=compute,
            iam=iam,
            store=FileStateStore(config.state_path),
        )
        if operation == "reconcile":
            await ctx.reconcile()
        else:
            await ctx.delete()
    except InfraflowError as e:
        logger.error(
            "Operation failed",
            extra={"operation": operation, "error": str(e), "error_type": type(e).__name__},
        )
        return 1
    except Exception as e:
        logger.exception(
            "Operation failed unexpectedly", extra={"operation": operation, "error": str(e)}
        )
        return 1

    logger.info("Operation finished", extra={"operation": operation})
    return 0


def run(operation: str = "reconcile") -> None:
    """Entry point for a one-shot run."""
    setup_logging()
    sys.exit(asyncio.run(main(operation)))


if __name__ == "__main__":
    run(sys.argv[1] if len(sys.argv) > 1 else "reconcile")
