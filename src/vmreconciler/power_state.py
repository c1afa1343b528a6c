"""Instance power state inspection.

The instance view reports a list of opaque status codes such as
``ProvisioningState/succeeded`` and ``PowerState/deallocated``. This module
reduces them to a PowerState and decides which disruptive calls are
redundant for the current state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .clients import VirtualMachineClient
from .identity import ResourceIdentity
from .operations import Deadline, run_blocking

logger = logging.getLogger(__name__)

POWER_STATE_PREFIX = "powerstate/"
PROVISIONING_STATE_PREFIX = "provisioningstate/"


class PowerState(str, Enum):
    """Normalized power state of a virtual machine."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DEALLOCATING = "deallocating"
    DEALLOCATED = "deallocated"
    UNKNOWN = "unknown"


_POWER_STATE_CODES: dict[str, PowerState] = {
    "running": PowerState.RUNNING,
    # A starting VM will be running by the time anything else happens
    "starting": PowerState.RUNNING,
    "stopping": PowerState.STOPPING,
    "stopped": PowerState.STOPPED,
    "deallocating": PowerState.DEALLOCATING,
    "deallocated": PowerState.DEALLOCATED,
}


def _status_codes(statuses: Iterable[Mapping[str, Any]] | None) -> list[str]:
    return [str(status.get("code") or "").lower() for status in statuses or []]


def normalize_power_state(statuses: Iterable[Mapping[str, Any]] | None) -> PowerState:
    """Reduce instance view statuses to a single PowerState."""
    for code in _status_codes(statuses):
        if code.startswith(POWER_STATE_PREFIX):
            return _POWER_STATE_CODES.get(code[len(POWER_STATE_PREFIX) :], PowerState.UNKNOWN)
    return PowerState.UNKNOWN


def provisioning_state(statuses: Iterable[Mapping[str, Any]] | None) -> str | None:
    """Provisioning state from instance view statuses, e.g. ``succeeded``."""
    for code in _status_codes(statuses):
        if code.startswith(PROVISIONING_STATE_PREFIX):
            return code[len(PROVISIONING_STATE_PREFIX) :]
    return None


@dataclass(frozen=True)
class RemoteInstanceState:
    """Live state of one instance, fetched fresh for every pass."""

    provisioning_state: str | None
    power_state: PowerState

    @property
    def is_running(self) -> bool:
        return self.power_state is PowerState.RUNNING

    @property
    def is_failed(self) -> bool:
        return (self.provisioning_state or "").lower() == "failed"

    @property
    def skip_power_off(self) -> bool:
        """Power-off is redundant when the VM is already stopped or beyond."""
        return self.power_state in (
            PowerState.STOPPED,
            PowerState.DEALLOCATING,
            PowerState.DEALLOCATED,
        )

    @property
    def skip_deallocate(self) -> bool:
        return self.power_state is PowerState.DEALLOCATED


def has_ephemeral_os_disk(vm: Mapping[str, Any] | None) -> bool:
    """Whether the VM's OS disk is ephemeral (local) and so cannot be deallocated."""
    if not vm:
        return False
    diff_disk_settings = (
        ((vm.get("properties") or {}).get("storageProfile") or {}).get("osDisk") or {}
    ).get("diffDiskSettings") or {}
    return str(diff_disk_settings.get("option") or "").lower() == "local"


class InstanceStateInspector:
    """Reads and normalizes instance views.

    Remote errors propagate unchanged; retry is the client's concern.
    """

    def __init__(self, client: VirtualMachineClient, timeout_seconds: float) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def current_state(self, identity: ResourceIdentity) -> RemoteInstanceState:
        instance_view = await run_blocking(
            self._client.instance_view,
            identity,
            operation="instance_view",
            deadline=Deadline.after(self._timeout_seconds),
            rejection=None,
        )
        statuses = (instance_view or {}).get("statuses")
        state = RemoteInstanceState(
            provisioning_state=provisioning_state(statuses),
            power_state=normalize_power_state(statuses),
        )
        logger.debug(
            "Read instance state",
            extra={
                "resource_id": identity.id,
                "power_state": state.power_state.value,
                "provisioning_state": state.provisioning_state,
            },
        )
        return state

    async def current_power_state(self, identity: ResourceIdentity) -> PowerState:
        return (await self.current_state(identity)).power_state
