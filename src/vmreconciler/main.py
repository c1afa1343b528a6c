"""Command line entry point for the virtual machine reconciler (vmrec).

Usage:
    vmrec plan vm.yaml --changed os_disk.disk_size_gb   # Offline validation and planning
    vmrec read --resource-group rg --name vm            # Print observed state
    vmrec apply vm.yaml                                 # Create or update
    vmrec delete --resource-group rg --name vm          # Delete

Authentication uses managed identity only (AZURE_CLIENT_ID selects a
user-assigned identity).
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError

from .classifier import Operation, plan_disruption, validate
from .config import Config, ConfigurationError
from .desired_state import DesiredState
from .engine import VirtualMachineReconciler
from .errors import (
    AlreadyExistsError,
    AttributeValidationError,
    OperationTimeoutError,
    ReconcileError,
    RemoteRejectionError,
)
from .payload import build_update_payload
from .spec_loader import SpecLoadError, load_spec

# Exit codes
EXIT_OK = 0
EXIT_INVALID = 1
EXIT_ALREADY_EXISTS = 2
EXIT_REMOTE_REJECTED = 3
EXIT_TIMEOUT = 4
EXIT_NOT_FOUND = 5

logger = logging.getLogger(__name__)


_STANDARD_RECORD_ATTRIBUTES = frozenset(
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRIBUTES:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output.

    Logs go to stderr so command output on stdout stays machine-readable.
    """
    root_logger = logging.getLogger()
    if not any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        click.echo(str(e), err=True)
        sys.exit(EXIT_INVALID)


def _exit_code_for(error: Exception) -> int:
    match error:
        case AttributeValidationError() | SpecLoadError():
            return EXIT_INVALID
        case AlreadyExistsError():
            return EXIT_ALREADY_EXISTS
        case OperationTimeoutError():
            return EXIT_TIMEOUT
        case RemoteRejectionError() | AzureError():
            return EXIT_REMOTE_REJECTED
        case _:
            return EXIT_INVALID


def _run(coro: Any) -> Any:
    """Run a reconciler coroutine, mapping failures to exit codes."""
    try:
        return asyncio.run(coro)
    except (ReconcileError, AzureError) as e:
        logger.error(
            "Reconciliation failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        click.echo(f"Error: {e}", err=True)
        sys.exit(_exit_code_for(e))


@click.group()
@click.version_option(version="0.1.0", prog_name="vmrec")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Virtual machine reconciler (vmrec).

    Reconciles Azure Windows virtual machines against YAML specs.

    \b
    Quick Start:
        vmrec plan vm.yaml        # Validate a spec without calling Azure
        vmrec apply vm.yaml       # Create or update the virtual machine
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.argument("spec_file", type=click.Path(path_type=Path))
@click.option(
    "--changed",
    "-c",
    "changed",
    multiple=True,
    help="Attribute path that changed (repeatable). Omit to validate for create.",
)
@click.option(
    "--available-size",
    "available_sizes",
    multiple=True,
    help="Size available without deallocation (repeatable).",
)
def plan(spec_file: Path, changed: tuple[str, ...], available_sizes: tuple[str, ...]) -> None:
    """Validate a spec and show the disruption plan, offline."""
    try:
        spec = load_spec(spec_file)
        desired = DesiredState(spec, changed)
        operation = Operation.UPDATE if changed else Operation.CREATE
        validate(desired, operation)
        disruption = plan_disruption(desired, available_sizes=available_sizes or None)
    except (SpecLoadError, AttributeValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INVALID)

    output: dict[str, Any] = {
        "operation": operation.value,
        "must_power_off": disruption.must_power_off,
        "must_deallocate": disruption.must_deallocate,
        "deferred": [dataclasses.asdict(op) for op in disruption.deferred],
    }
    if operation is Operation.UPDATE:
        output["update_payload"] = build_update_payload(desired).to_dict()
    _echo_json(output)


@cli.command()
@click.option("--resource-group", "-g", required=True, help="Resource group name")
@click.option("--name", "-n", required=True, help="Virtual machine name")
def read(resource_group: str, name: str) -> None:
    """Print the observed state of a virtual machine."""
    config = _load_config()
    reconciler = VirtualMachineReconciler.from_config(config)
    result = _run(reconciler.read(config.identity_for(resource_group, name)))

    if not result.found:
        click.echo(f"Virtual machine {name!r} not found in {resource_group!r}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    _echo_json(result.state.attributes)


@cli.command()
@click.argument("spec_file", type=click.Path(path_type=Path))
def apply(spec_file: Path) -> None:
    """Create or update a virtual machine to match a spec."""
    try:
        spec = load_spec(spec_file)
    except SpecLoadError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INVALID)

    config = _load_config()
    reconciler = VirtualMachineReconciler.from_config(config)
    result = _run(reconciler.apply(spec))

    click.echo(f"{spec.name}: {result.action.value}")
    if result.changed_paths:
        for path in sorted(result.changed_paths):
            click.echo(f"  ~ {path}")


@cli.command()
@click.option("--resource-group", "-g", required=True, help="Resource group name")
@click.option("--name", "-n", required=True, help="Virtual machine name")
@click.option("--skip-shutdown", is_flag=True, help="Do not power off first")
@click.option("--graceful-shutdown", is_flag=True, help="Shut the guest OS down")
@click.option("--force-deletion", is_flag=True, help="Force-delete the VM")
@click.option("--keep-os-disk", is_flag=True, help="Keep the OS disk")
def delete(
    resource_group: str,
    name: str,
    skip_shutdown: bool,
    graceful_shutdown: bool,
    force_deletion: bool,
    keep_os_disk: bool,
) -> None:
    """Delete a virtual machine. Flags override the environment settings."""
    config = _load_config()
    options = config.delete_options
    overrides: dict[str, bool] = {}
    if skip_shutdown:
        overrides["skip_shutdown"] = True
    if graceful_shutdown:
        overrides["graceful_shutdown"] = True
    if force_deletion:
        overrides["force_deletion"] = True
    if keep_os_disk:
        overrides["delete_os_disk"] = False
    options = dataclasses.replace(options, **overrides)

    reconciler = VirtualMachineReconciler.from_config(config)
    _run(reconciler.delete(config.identity_for(resource_group, name), options))
    click.echo(f"{name}: deleted")


def run() -> None:
    """Entry point for the vmrec CLI."""
    cli()


if __name__ == "__main__":
    run()
