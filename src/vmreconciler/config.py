"""Configuration management with validation.

Timeouts and delete behavior flags are loaded from the environment and
validated at construction time so a misconfigured process fails before it
touches any virtual machine.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from .identity import ResourceIdentity


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Per-operation timeouts with documented bounds
DEFAULT_CREATE_TIMEOUT_SECONDS = 45 * 60
DEFAULT_READ_TIMEOUT_SECONDS = 5 * 60
DEFAULT_UPDATE_TIMEOUT_SECONDS = 45 * 60
DEFAULT_DELETE_TIMEOUT_SECONDS = 45 * 60
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 24 * 60 * 60

# Long-running operation polling
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_DELETE_VERIFY_INTERVAL_SECONDS = 30.0

# Spec files larger than this are rejected before parsing
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class DeleteOptions:
    """Behavior flags for deleting a virtual machine.

    Attributes:
        skip_shutdown: Do not power off before deleting.
        graceful_shutdown: Let the guest OS shut down during power off.
        force_deletion: Ask the API to force-delete; implies no power off.
        delete_os_disk: Delete the managed OS disk once the VM is gone.
    """

    skip_shutdown: bool = False
    graceful_shutdown: bool = False
    force_deletion: bool = False
    delete_os_disk: bool = True

    @property
    def power_off_first(self) -> bool:
        return not (self.skip_shutdown or self.force_deletion)


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    subscription_id: str

    # Optional user-assigned managed identity
    client_id: str | None = None

    # Timeouts per operation
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    read_timeout_seconds: int = DEFAULT_READ_TIMEOUT_SECONDS
    update_timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS

    # Polling
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    delete_verify_interval_seconds: float = DEFAULT_DELETE_VERIFY_INTERVAL_SECONDS

    # Delete behavior
    skip_shutdown_before_delete: bool = False
    graceful_shutdown_on_delete: bool = False
    force_deletion: bool = False
    delete_os_disk_on_deletion: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        timeouts = {
            "CREATE_TIMEOUT": self.create_timeout_seconds,
            "READ_TIMEOUT": self.read_timeout_seconds,
            "UPDATE_TIMEOUT": self.update_timeout_seconds,
            "DELETE_TIMEOUT": self.delete_timeout_seconds,
        }
        for key, value in timeouts.items():
            if not (MIN_OPERATION_TIMEOUT_SECONDS <= value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{key} must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                    f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.poll_interval_seconds <= 0:
            errors.append("POLL_INTERVAL must be positive")
        if self.delete_verify_interval_seconds <= 0:
            errors.append("DELETE_VERIFY_INTERVAL must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def delete_options(self) -> DeleteOptions:
        """Delete flags as passed to the engine."""
        return DeleteOptions(
            skip_shutdown=self.skip_shutdown_before_delete,
            graceful_shutdown=self.graceful_shutdown_on_delete,
            force_deletion=self.force_deletion,
            delete_os_disk=self.delete_os_disk_on_deletion,
        )

    def identity_for(self, resource_group: str, name: str) -> ResourceIdentity:
        """Build a virtual machine identity in the configured subscription."""
        return ResourceIdentity(
            subscription_id=self.subscription_id,
            resource_group=resource_group,
            name=name,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription containing the virtual machines
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            CREATE_TIMEOUT: Create timeout in seconds (default: 2700)
            READ_TIMEOUT: Read timeout in seconds (default: 300)
            UPDATE_TIMEOUT: Update timeout in seconds (default: 2700)
            DELETE_TIMEOUT: Delete timeout in seconds (default: 2700)
            POLL_INTERVAL: Seconds between long-running operation polls (default: 5)
            DELETE_VERIFY_INTERVAL: Seconds between deletion checks (default: 30)

        Delete Behavior Variables:
            SKIP_SHUTDOWN_BEFORE_DELETE: Do not power off before delete (default: false)
            GRACEFUL_SHUTDOWN_ON_DELETE: Graceful guest shutdown on power off (default: false)
            FORCE_DELETION: Force-delete the VM (default: false)
            DELETE_OS_DISK_ON_DELETION: Delete the OS disk after the VM (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            create_timeout_seconds=get_int("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            read_timeout_seconds=get_int("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
            update_timeout_seconds=get_int("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=get_int("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            delete_verify_interval_seconds=get_float(
                "DELETE_VERIFY_INTERVAL", DEFAULT_DELETE_VERIFY_INTERVAL_SECONDS
            ),
            skip_shutdown_before_delete=get_bool("SKIP_SHUTDOWN_BEFORE_DELETE", False),
            graceful_shutdown_on_delete=get_bool("GRACEFUL_SHUTDOWN_ON_DELETE", False),
            force_deletion=get_bool("FORCE_DELETION", False),
            delete_os_disk_on_deletion=get_bool("DELETE_OS_DISK_ON_DELETION", True),
        )
