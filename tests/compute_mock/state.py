"""In-memory state for mocked compute resources.

Virtual machines and disks are stored as REST documents, the same shape the
real API returns. Every operation is recorded so tests can assert on the
exact sequence of remote calls.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import HttpResponseError

from .pollers import MockPoller

DEFAULT_OS_DISK_SIZE_GB = 127
DEFAULT_AVAILABLE_SIZES = ("Standard_D2s_v3", "Standard_D4s_v3", "Standard_D8s_v3")

# Operations that change remote state
MUTATING_OPERATIONS = frozenset(
    {
        "vm.create_or_update",
        "vm.update",
        "vm.delete",
        "vm.power_off",
        "vm.deallocate",
        "vm.start",
        "disk.update",
        "disk.delete",
    }
)


def make_http_error(status_code: int, message: str, code: str | None = None) -> HttpResponseError:
    """Build an HttpResponseError carrying a status code, as the SDK raises."""
    error = HttpResponseError(message=message)
    error.status_code = status_code
    if code is not None:
        error.error = type("ODataError", (), {"code": code})()
    return error


def deep_merge(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """PATCH semantics: nested objects merge, everything else replaces."""
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict) and key != "tags":
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


@dataclass
class MockCall:
    """One recorded remote call."""

    operation: str
    resource_name: str
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class InjectedFailure:
    status_code: int
    message: str
    code: str | None = None
    remaining: int = 1


class MockComputeState:
    """Shared state behind the mock VM and disk clients.

    Args:
        subscription_id: Subscription used when rendering resource IDs.
        available_sizes: Sizes list_available_sizes reports.
    """

    def __init__(
        self,
        subscription_id: str = "00000000-0000-0000-0000-000000000000",
        available_sizes: tuple[str, ...] = DEFAULT_AVAILABLE_SIZES,
    ) -> None:
        self.subscription_id = subscription_id
        self.available_sizes = list(available_sizes)
        self.vms: dict[tuple[str, str], dict[str, Any]] = {}
        self.disks: dict[tuple[str, str], dict[str, Any]] = {}
        self.power_states: dict[tuple[str, str], str] = {}
        self.encryption_set_types: dict[str, str] = {}
        self.calls: list[MockCall] = []
        self._failures: dict[str, InjectedFailure] = {}
        # Operations whose pollers report done only after this many polls;
        # None means they never finish
        self.poll_delays: dict[str, int | None] = {}
        # Number of gets that still see a VM after it was deleted
        self.delete_visibility_lag = 0
        self._lagging_deletes: dict[tuple[str, str], tuple[dict[str, Any], int]] = {}

    # =========================================================================
    # Test helpers
    # =========================================================================

    @staticmethod
    def key(resource_group: str, name: str) -> tuple[str, str]:
        return (resource_group.lower(), name.lower())

    def resource_id(self, resource_group: str, provider: str, name: str) -> str:
        return (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
            f"/providers/{provider}/{name}"
        )

    def fail(
        self,
        operation: str,
        status_code: int = 409,
        message: str = "Simulated failure",
        code: str | None = None,
        times: int = 1,
    ) -> None:
        """Make the next `times` calls of an operation fail."""
        self._failures[operation] = InjectedFailure(status_code, message, code, times)

    def add_encryption_set(
        self,
        resource_group: str,
        name: str,
        encryption_type: str = "EncryptionAtRestWithCustomerKey",
    ) -> str:
        """Register a disk encryption set and return its ID."""
        encryption_set_id = self.resource_id(
            resource_group, "Microsoft.Compute/diskEncryptionSets", name
        )
        self.encryption_set_types[encryption_set_id.lower()] = encryption_type
        return encryption_set_id

    def operations(self) -> list[str]:
        """Recorded operation names in call order."""
        return [call.operation for call in self.calls]

    def mutating_operations(self) -> list[str]:
        return [op for op in self.operations() if op in MUTATING_OPERATIONS]

    def calls_of(self, operation: str) -> list[MockCall]:
        return [call for call in self.calls if call.operation == operation]

    def reset_calls(self) -> None:
        self.calls.clear()

    def vm(self, resource_group: str, name: str) -> dict[str, Any]:
        return self.vms[self.key(resource_group, name)]

    def power_state(self, resource_group: str, name: str) -> str:
        return self.power_states[self.key(resource_group, name)]

    def set_power_state(self, resource_group: str, name: str, power_state: str) -> None:
        self.power_states[self.key(resource_group, name)] = power_state

    def os_disk(self, resource_group: str, vm_name: str) -> dict[str, Any] | None:
        os_disk = self.vm(resource_group, vm_name)["properties"]["storageProfile"]["osDisk"]
        return self.disks.get(self.key(resource_group, os_disk.get("name", "")))

    # =========================================================================
    # Internals
    # =========================================================================

    def _record(self, operation: str, name: str, **kwargs: Any) -> None:
        self.calls.append(MockCall(operation=operation, resource_name=name, kwargs=kwargs))
        failure = self._failures.get(operation)
        if failure is not None and failure.remaining > 0:
            failure.remaining -= 1
            raise make_http_error(failure.status_code, failure.message, failure.code)

    def _poller(self, operation: str, result: Any = None) -> MockPoller:
        return MockPoller(result=result, polls_until_done=self.poll_delays.get(operation, 0))

    def _not_found(self, kind: str, name: str) -> HttpResponseError:
        return make_http_error(404, f"The {kind} '{name}' was not found.", "ResourceNotFound")

    # =========================================================================
    # Virtual machines
    # =========================================================================

    def get_vm(self, resource_group: str, name: str) -> dict[str, Any] | None:
        self._record("vm.get", name)
        key = self.key(resource_group, name)
        if key in self._lagging_deletes:
            vm, remaining = self._lagging_deletes[key]
            if remaining > 0:
                self._lagging_deletes[key] = (vm, remaining - 1)
                return copy.deepcopy(vm)
            del self._lagging_deletes[key]
        vm = self.vms.get(key)
        return copy.deepcopy(vm) if vm is not None else None

    def instance_view(self, resource_group: str, name: str) -> dict[str, Any]:
        self._record("vm.instance_view", name)
        key = self.key(resource_group, name)
        if key not in self.vms:
            raise self._not_found("virtual machine", name)
        provisioning_state = self.vms[key]["properties"].get("provisioningState", "Succeeded")
        return {
            "statuses": [
                {"code": f"ProvisioningState/{provisioning_state.lower()}"},
                {"code": f"PowerState/{self.power_states.get(key, 'running')}"},
            ]
        }

    def create_or_update_vm(self, resource_group: str, name: str, body: dict[str, Any]) -> MockPoller:
        self._record("vm.create_or_update", name, body=copy.deepcopy(body))
        key = self.key(resource_group, name)
        vm = copy.deepcopy(body)
        vm["id"] = self.resource_id(resource_group, "Microsoft.Compute/virtualMachines", name)
        vm["name"] = name
        vm["type"] = "Microsoft.Compute/virtualMachines"
        properties = vm.setdefault("properties", {})
        properties["provisioningState"] = "Succeeded"

        os_disk = properties.setdefault("storageProfile", {}).setdefault("osDisk", {})
        os_disk.setdefault("name", f"{name}_OsDisk_1")
        os_disk.setdefault("diskSizeGB", DEFAULT_OS_DISK_SIZE_GB)
        managed_disk = os_disk.setdefault("managedDisk", {})
        disk_id = self.resource_id(resource_group, "Microsoft.Compute/disks", os_disk["name"])
        managed_disk["id"] = disk_id

        ephemeral = (os_disk.get("diffDiskSettings") or {}).get("option") == "Local"
        if not ephemeral:
            disk: dict[str, Any] = {
                "id": disk_id,
                "name": os_disk["name"],
                "sku": {"name": managed_disk.get("storageAccountType")},
                "properties": {"diskSizeGB": os_disk["diskSizeGB"]},
            }
            encryption_set = (managed_disk.get("diskEncryptionSet") or {}).get("id")
            if encryption_set:
                disk["properties"]["encryption"] = {"diskEncryptionSetId": encryption_set}
            self.disks[self.key(resource_group, os_disk["name"])] = disk

        self.vms[key] = vm
        self.power_states[key] = "running"
        return self._poller("vm.create_or_update", copy.deepcopy(vm))

    def update_vm(self, resource_group: str, name: str, patch: dict[str, Any]) -> MockPoller:
        self._record("vm.update", name, body=copy.deepcopy(patch))
        key = self.key(resource_group, name)
        if key not in self.vms:
            raise self._not_found("virtual machine", name)
        deep_merge(self.vms[key], patch)
        return self._poller("vm.update", copy.deepcopy(self.vms[key]))

    def delete_vm(self, resource_group: str, name: str, force_deletion: bool) -> MockPoller:
        self._record("vm.delete", name, force_deletion=force_deletion)
        key = self.key(resource_group, name)
        vm = self.vms.pop(key, None)
        self.power_states.pop(key, None)
        if vm is not None and self.delete_visibility_lag:
            self._lagging_deletes[key] = (vm, self.delete_visibility_lag)
        return self._poller("vm.delete")

    def power_off_vm(self, resource_group: str, name: str, skip_shutdown: bool) -> MockPoller:
        self._record("vm.power_off", name, skip_shutdown=skip_shutdown)
        self.power_states[self.key(resource_group, name)] = "stopped"
        return self._poller("vm.power_off")

    def deallocate_vm(self, resource_group: str, name: str, hibernate: bool) -> MockPoller:
        self._record("vm.deallocate", name, hibernate=hibernate)
        key = self.key(resource_group, name)
        os_disk = self.vms[key]["properties"]["storageProfile"]["osDisk"]
        if (os_disk.get("diffDiskSettings") or {}).get("option") == "Local":
            raise make_http_error(
                409,
                "Operation 'deallocate' is not supported for VMs using an ephemeral OS disk.",
                "OperationNotAllowed",
            )
        self.power_states[key] = "deallocated"
        return self._poller("vm.deallocate")

    def start_vm(self, resource_group: str, name: str) -> MockPoller:
        self._record("vm.start", name)
        self.power_states[self.key(resource_group, name)] = "running"
        return self._poller("vm.start")

    def list_available_sizes(self, resource_group: str, name: str) -> list[str]:
        self._record("vm.list_available_sizes", name)
        return list(self.available_sizes)

    # =========================================================================
    # Disks
    # =========================================================================

    def get_disk(self, resource_group: str, name: str) -> dict[str, Any] | None:
        self._record("disk.get", name)
        disk = self.disks.get(self.key(resource_group, name))
        return copy.deepcopy(disk) if disk is not None else None

    def update_disk(self, resource_group: str, name: str, patch: dict[str, Any]) -> MockPoller:
        self._record("disk.update", name, body=copy.deepcopy(patch))
        key = self.key(resource_group, name)
        if key not in self.disks:
            raise self._not_found("disk", name)

        # Attached disks can only be resized while the VM is deallocated
        new_size = (patch.get("properties") or {}).get("diskSizeGB")
        if new_size is not None:
            owner = self._owner_of(key)
            if owner is not None and self.power_states.get(owner) != "deallocated":
                raise make_http_error(
                    409,
                    "Disk resizing is allowed only when creating a VM or when the VM is deallocated.",
                    "OperationNotAllowed",
                )

        deep_merge(self.disks[key], patch)
        return self._poller("disk.update", copy.deepcopy(self.disks[key]))

    def delete_disk(self, resource_group: str, name: str) -> MockPoller:
        self._record("disk.delete", name)
        key = self.key(resource_group, name)
        if key not in self.disks:
            raise self._not_found("disk", name)
        del self.disks[key]
        return self._poller("disk.delete")

    def encryption_set_type(self, encryption_set_id: str) -> str | None:
        self._record("disk_encryption_set.get", encryption_set_id.rsplit("/", 1)[-1])
        return self.encryption_set_types.get(encryption_set_id.lower())

    def _owner_of(self, disk_key: tuple[str, str]) -> tuple[str, str] | None:
        for vm_key, vm in self.vms.items():
            os_disk = vm["properties"]["storageProfile"]["osDisk"]
            if self.key(vm_key[0], os_disk.get("name", "")) == disk_key:
                return vm_key
        return None
