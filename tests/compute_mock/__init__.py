"""Compute API mock for integration testing.

In-memory stand-ins for the Azure compute API so the reconciler can be
tested without Azure connectivity.

Key Features:
- In-memory virtual machines, managed disks and power states
- Call recording for asserting on the exact remote call sequence
- Error injection and slow or never-finishing long-running operations
- Remote rules the engine must respect (no deallocate with an ephemeral OS
  disk, no disk resize unless the VM is deallocated)

Usage:
    from compute_mock import MockComputeState, MockVirtualMachineClient, MockDiskClient

    state = MockComputeState()
    reconciler = VirtualMachineReconciler(
        config, MockVirtualMachineClient(state), MockDiskClient(state), ResourceLockManager()
    )
    await reconciler.create(DesiredState(spec))

    assert state.mutating_operations() == ["vm.create_or_update"]
"""

from .clients import MockDiskClient, MockVirtualMachineClient
from .compute import MockComputeManagementClient
from .context import MockComputeContext, mock_compute_context
from .pollers import MockPoller
from .state import MockCall, MockComputeState, make_http_error

__all__ = [
    "MockCall",
    "MockComputeContext",
    "MockComputeManagementClient",
    "MockComputeState",
    "MockDiskClient",
    "MockPoller",
    "MockVirtualMachineClient",
    "make_http_error",
    "mock_compute_context",
]
