"""Remote clients for virtual machines and their OS disks.

The engine depends on the VirtualMachineClient and DiskClient protocols.
The Azure implementations wrap azure-mgmt-compute and exchange plain REST
dicts with the rest of the package, so request shaping stays independent of
SDK model classes.

All methods are blocking; the engine runs them in an executor.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.identity import ManagedIdentityCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import DiskUpdate, VirtualMachine, VirtualMachineUpdate

from .config import Config
from .identity import DISK_ENCRYPTION_SET_PROVIDER, ResourceIdentity
from .operations import Poller

logger = logging.getLogger(__name__)


class VirtualMachineClient(Protocol):
    """Virtual machine operations the engine consumes."""

    def get(self, identity: ResourceIdentity) -> tuple[dict[str, Any] | None, bool]: ...

    def instance_view(self, identity: ResourceIdentity) -> dict[str, Any]: ...

    def begin_create_or_update(
        self, identity: ResourceIdentity, payload: dict[str, Any]
    ) -> Poller: ...

    def begin_update(self, identity: ResourceIdentity, payload: dict[str, Any]) -> Poller: ...

    def begin_delete(self, identity: ResourceIdentity, force_deletion: bool = False) -> Poller: ...

    def begin_power_off(self, identity: ResourceIdentity, skip_shutdown: bool = False) -> Poller: ...

    def begin_deallocate(self, identity: ResourceIdentity, hibernate: bool = False) -> Poller: ...

    def begin_start(self, identity: ResourceIdentity) -> Poller: ...

    def list_available_sizes(self, identity: ResourceIdentity) -> list[str]: ...


class DiskClient(Protocol):
    """Managed disk operations the engine consumes."""

    def get(self, identity: ResourceIdentity) -> tuple[dict[str, Any] | None, bool]: ...

    def begin_update(self, identity: ResourceIdentity, payload: dict[str, Any]) -> Poller: ...

    def begin_delete(self, identity: ResourceIdentity) -> Poller: ...

    def get_encryption_set_type(self, encryption_set_id: str) -> str | None: ...


class AzureVirtualMachineClient:
    """VirtualMachineClient backed by ComputeManagementClient."""

    def __init__(self, compute: ComputeManagementClient) -> None:
        self._compute = compute

    def get(self, identity: ResourceIdentity) -> tuple[dict[str, Any] | None, bool]:
        try:
            vm = self._compute.virtual_machines.get(
                identity.resource_group, identity.name, expand="userData"
            )
        except ResourceNotFoundError:
            return None, False
        return vm.serialize(keep_readonly=True), True

    def instance_view(self, identity: ResourceIdentity) -> dict[str, Any]:
        view = self._compute.virtual_machines.instance_view(identity.resource_group, identity.name)
        return view.serialize(keep_readonly=True)

    def begin_create_or_update(self, identity: ResourceIdentity, payload: dict[str, Any]) -> Poller:
        return self._compute.virtual_machines.begin_create_or_update(
            identity.resource_group, identity.name, VirtualMachine.deserialize(payload)
        )

    def begin_update(self, identity: ResourceIdentity, payload: dict[str, Any]) -> Poller:
        return self._compute.virtual_machines.begin_update(
            identity.resource_group, identity.name, VirtualMachineUpdate.deserialize(payload)
        )

    def begin_delete(self, identity: ResourceIdentity, force_deletion: bool = False) -> Poller:
        # force_deletion is only sent when requested; not every region supports it
        kwargs: dict[str, Any] = {"force_deletion": True} if force_deletion else {}
        return self._compute.virtual_machines.begin_delete(
            identity.resource_group, identity.name, **kwargs
        )

    def begin_power_off(self, identity: ResourceIdentity, skip_shutdown: bool = False) -> Poller:
        return self._compute.virtual_machines.begin_power_off(
            identity.resource_group, identity.name, skip_shutdown=skip_shutdown
        )

    def begin_deallocate(self, identity: ResourceIdentity, hibernate: bool = False) -> Poller:
        kwargs: dict[str, Any] = {"hibernate": True} if hibernate else {}
        return self._compute.virtual_machines.begin_deallocate(
            identity.resource_group, identity.name, **kwargs
        )

    def begin_start(self, identity: ResourceIdentity) -> Poller:
        return self._compute.virtual_machines.begin_start(identity.resource_group, identity.name)

    def list_available_sizes(self, identity: ResourceIdentity) -> list[str]:
        sizes = self._compute.virtual_machines.list_available_sizes(
            identity.resource_group, identity.name
        )
        return [size.name for size in sizes if size.name]


class AzureDiskClient:
    """DiskClient backed by ComputeManagementClient."""

    def __init__(self, compute: ComputeManagementClient) -> None:
        self._compute = compute

    def get(self, identity: ResourceIdentity) -> tuple[dict[str, Any] | None, bool]:
        try:
            disk = self._compute.disks.get(identity.resource_group, identity.name)
        except ResourceNotFoundError:
            return None, False
        return disk.serialize(keep_readonly=True), True

    def begin_update(self, identity: ResourceIdentity, payload: dict[str, Any]) -> Poller:
        return self._compute.disks.begin_update(
            identity.resource_group, identity.name, DiskUpdate.deserialize(payload)
        )

    def begin_delete(self, identity: ResourceIdentity) -> Poller:
        return self._compute.disks.begin_delete(identity.resource_group, identity.name)

    def get_encryption_set_type(self, encryption_set_id: str) -> str | None:
        """Encryption type of a disk encryption set, e.g. EncryptionAtRestWithCustomerKey."""
        encryption_set = ResourceIdentity.parse(
            encryption_set_id, provider=DISK_ENCRYPTION_SET_PROVIDER
        )
        result = self._compute.disk_encryption_sets.get(
            encryption_set.resource_group, encryption_set.name
        )
        return result.encryption_type


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential for a user- or system-assigned identity.

    Args:
        client_id: Client ID of a user-assigned managed identity. If None,
            the system-assigned identity is used.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def build_clients(config: Config) -> tuple[AzureVirtualMachineClient, AzureDiskClient]:
    """Build the Azure clients for the configured subscription."""
    credential = get_managed_identity_credential(config.client_id)
    compute = ComputeManagementClient(credential, config.subscription_id)
    return AzureVirtualMachineClient(compute), AzureDiskClient(compute)
