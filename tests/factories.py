"""Builders for test specs, configs and reconcilers."""

from __future__ import annotations

import copy
from typing import Any

from compute_mock import MockComputeState, MockDiskClient, MockVirtualMachineClient
from vmreconciler.config import Config
from vmreconciler.desired_state import DesiredState
from vmreconciler.engine import PhaseTransition, VirtualMachineReconciler
from vmreconciler.identity import ResourceIdentity
from vmreconciler.locks import ResourceLockManager
from vmreconciler.models import WindowsVirtualMachineSpec
from vmreconciler.payload import build_create_payload

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
RESOURCE_GROUP = "rg-vms"
VM_NAME = "vm-app-01"


def nic_id(name: str = "nic-app-01") -> str:
    return (
        f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}"
        f"/providers/Microsoft.Network/networkInterfaces/{name}"
    )


def resource_id(provider: str, name: str) -> str:
    return (
        f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}"
        f"/providers/{provider}/{name}"
    )


BASE_SPEC: dict[str, Any] = {
    "name": VM_NAME,
    "resource_group_name": RESOURCE_GROUP,
    "location": "westeurope",
    "admin_username": "azureadmin",
    "admin_password": "P@ssw0rd1234!",
    "network_interface_ids": [nic_id()],
    "size": "Standard_D2s_v3",
    "os_disk": {
        "caching": "ReadWrite",
        "storage_account_type": "Premium_LRS",
    },
    "source_image_reference": {
        "publisher": "MicrosoftWindowsServer",
        "offer": "WindowsServer",
        "sku": "2022-datacenter",
        "version": "latest",
    },
    "tags": {"env": "test"},
}


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict) and key != "tags":
            _merge(base[key], value)
        elif value is None:
            base.pop(key, None)
        else:
            base[key] = value
    return base


def spec_data(**overrides: Any) -> dict[str, Any]:
    """Raw spec mapping; nested dicts merge, None removes a key."""
    return _merge(copy.deepcopy(BASE_SPEC), overrides)


def make_spec(**overrides: Any) -> WindowsVirtualMachineSpec:
    return WindowsVirtualMachineSpec.model_validate(spec_data(**overrides))


def make_config(**overrides: Any) -> Config:
    values: dict[str, Any] = {
        "subscription_id": SUBSCRIPTION_ID,
        "poll_interval_seconds": 0.001,
        "delete_verify_interval_seconds": 0.001,
    }
    values.update(overrides)
    return Config(**values)


def vm_identity(name: str = VM_NAME) -> ResourceIdentity:
    return ResourceIdentity(SUBSCRIPTION_ID, RESOURCE_GROUP, name)


def seed_vm(state: MockComputeState, **overrides: Any) -> WindowsVirtualMachineSpec:
    """Put an existing VM built from the base spec into the mock, then clear the call log."""
    spec = make_spec(**overrides)
    state.create_or_update_vm(
        spec.resource_group_name, spec.name, build_create_payload(DesiredState(spec))
    )
    state.reset_calls()
    return spec


class TransitionRecorder:
    """Observer collecting phase transitions."""

    def __init__(self) -> None:
        self.transitions: list[PhaseTransition] = []

    def __call__(self, transition: PhaseTransition) -> None:
        self.transitions.append(transition)

    def phases(self) -> list[str]:
        return [t.to_phase.value for t in self.transitions]


def make_reconciler(
    state: MockComputeState,
    config: Config | None = None,
    locks: ResourceLockManager | None = None,
    observer: TransitionRecorder | None = None,
) -> VirtualMachineReconciler:
    return VirtualMachineReconciler(
        config or make_config(),
        MockVirtualMachineClient(state),
        MockDiskClient(state),
        locks or ResourceLockManager(),
        observer,
    )
