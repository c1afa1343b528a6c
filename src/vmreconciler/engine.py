"""Reconciliation engine for Windows virtual machines.

Turns a desired configuration plus a change set into an ordered sequence of
remote calls:

1. Planning: validate and classify the change set without any remote call
2. Disrupting: power off and/or deallocate when the change requires it
3. Updating: deferred disk operations, then one partial VM update
4. Restoring: start the VM again if it was running before
5. Verifying: re-read the VM so the caller gets fresh observed state

Create and delete follow their own phase sequences (see ALLOWED_TRANSITIONS).
Each pass holds the per-resource lock for its whole duration, holds no state
once it returns, and never rolls back a disruptive call that already
succeeded. Re-running a pass converges.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from azure.core.exceptions import HttpResponseError

from .classifier import (
    DeferredKind,
    DeferredOperation,
    Operation,
    plan_disruption,
    validate,
)
from .clients import DiskClient, VirtualMachineClient, build_clients
from .config import Config, DeleteOptions
from .desired_state import DesiredState, DesiredStateProvider
from .errors import (
    AlreadyExistsError,
    OperationTimeoutError,
    RemoteRejectionError,
    SubResourceRejectionError,
)
from .identity import VIRTUAL_MACHINE_RESOURCE_KIND, ResourceIdentity
from .locks import ResourceLockManager
from .models import WindowsVirtualMachineSpec
from .observed import flatten_virtual_machine, os_disk_identity
from .operations import Deadline, LongRunningOperation, rejection_from, run_blocking
from .payload import build_create_payload, build_update_payload
from .power_state import InstanceStateInspector, RemoteInstanceState, has_ephemeral_os_disk

logger = logging.getLogger(__name__)


class ReconcilePhase(str, Enum):
    """Phases of a reconciliation pass."""

    IDLE = "Idle"
    PLANNING = "Planning"
    PRECHECK = "Precheck"
    BUILD_PAYLOAD = "BuildPayload"
    CREATING = "Creating"
    DISRUPTING = "Disrupting"
    UPDATING = "Updating"
    RESTORING = "Restoring"
    VERIFYING = "Verifying"
    DELETING = "Deleting"
    POST_DELETE_CLEANUP = "PostDeleteCleanup"
    VERIFYING_ABSENCE = "VerifyingAbsence"
    FAILED = "Failed"


_P = ReconcilePhase

ALLOWED_TRANSITIONS: dict[ReconcilePhase, frozenset[ReconcilePhase]] = {
    _P.IDLE: frozenset({_P.PLANNING, _P.PRECHECK, _P.FAILED}),
    _P.PLANNING: frozenset({_P.PRECHECK, _P.DISRUPTING, _P.UPDATING, _P.FAILED}),
    _P.PRECHECK: frozenset({_P.BUILD_PAYLOAD, _P.DISRUPTING, _P.DELETING, _P.IDLE, _P.FAILED}),
    _P.BUILD_PAYLOAD: frozenset({_P.CREATING, _P.FAILED}),
    _P.CREATING: frozenset({_P.VERIFYING, _P.FAILED}),
    _P.DISRUPTING: frozenset({_P.UPDATING, _P.DELETING, _P.FAILED}),
    _P.UPDATING: frozenset({_P.RESTORING, _P.VERIFYING, _P.FAILED}),
    _P.RESTORING: frozenset({_P.VERIFYING, _P.FAILED}),
    _P.VERIFYING: frozenset({_P.IDLE, _P.FAILED}),
    _P.DELETING: frozenset({_P.POST_DELETE_CLEANUP, _P.FAILED}),
    _P.POST_DELETE_CLEANUP: frozenset({_P.VERIFYING_ABSENCE, _P.FAILED}),
    _P.VERIFYING_ABSENCE: frozenset({_P.IDLE, _P.FAILED}),
    _P.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a pass attempts a transition the table does not allow."""

    pass


@dataclass(frozen=True)
class PhaseTransition:
    """One phase change, as reported to the observer."""

    operation: str
    resource_id: str
    from_phase: ReconcilePhase
    to_phase: ReconcilePhase
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None


PhaseObserver = Callable[[PhaseTransition], None]


class _PassTracker:
    """Phase bookkeeping for a single pass."""

    def __init__(
        self,
        operation: str,
        identity: ResourceIdentity,
        observer: PhaseObserver | None,
    ) -> None:
        self.operation = operation
        self.identity = identity
        self.phase = ReconcilePhase.IDLE
        self.history: list[ReconcilePhase] = [ReconcilePhase.IDLE]
        self._observer = observer

    def advance(self, phase: ReconcilePhase, error: str | None = None) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"{self.operation}: transition {self.phase.value} -> {phase.value} is not allowed"
            )

        transition = PhaseTransition(
            operation=self.operation,
            resource_id=self.identity.id,
            from_phase=self.phase,
            to_phase=phase,
            error=error,
        )
        self.phase = phase
        self.history.append(phase)

        log = logger.error if phase is ReconcilePhase.FAILED else logger.info
        log(
            "Reconcile phase transition",
            extra={
                "operation": self.operation,
                "resource_id": self.identity.id,
                "from_phase": transition.from_phase.value,
                "to_phase": transition.to_phase.value,
                "error": error,
            },
        )
        if self._observer is not None:
            self._observer(transition)

    def fail(self, error: Exception) -> None:
        if self.phase is not ReconcilePhase.FAILED:
            self.advance(ReconcilePhase.FAILED, error=str(error))


@dataclass(frozen=True)
class ObservedState:
    """Flattened remote state returned by Read.

    Attributes:
        identity: The virtual machine the state belongs to.
        attributes: Dotted attribute path to observed value.
    """

    identity: ResourceIdentity
    attributes: dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        return self.attributes.get(path, default)


@dataclass(frozen=True)
class ReadResult:
    """Outcome of a Read. A missing VM is not an error."""

    found: bool
    state: ObservedState | None = None


class ApplyAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of apply(): what was done and the resulting observed state."""

    action: ApplyAction
    state: ObservedState
    changed_paths: frozenset[str] = frozenset()


class VirtualMachineReconciler:
    """Create, read, update and delete Windows virtual machines.

    Args:
        config: Timeouts, polling intervals and delete flags.
        vm_client: Virtual machine API client.
        disk_client: Managed disk API client.
        locks: Per-resource lock manager shared by all passes in the process.
        observer: Optional callback receiving every phase transition.
    """

    def __init__(
        self,
        config: Config,
        vm_client: VirtualMachineClient,
        disk_client: DiskClient,
        locks: ResourceLockManager,
        observer: PhaseObserver | None = None,
    ) -> None:
        self._config = config
        self._vms = vm_client
        self._disks = disk_client
        self._locks = locks
        self._observer = observer
        self._inspector = InstanceStateInspector(vm_client, config.read_timeout_seconds)

    @classmethod
    def from_config(
        cls,
        config: Config,
        locks: ResourceLockManager | None = None,
        observer: PhaseObserver | None = None,
    ) -> VirtualMachineReconciler:
        """Build a reconciler with Azure clients for the configured subscription."""
        vm_client, disk_client = build_clients(config)
        return cls(config, vm_client, disk_client, locks or ResourceLockManager(), observer)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lro(
        self,
        name: str,
        begin: Callable[..., Any],
        *args: Any,
        rejection: type[RemoteRejectionError] = RemoteRejectionError,
        **kwargs: Any,
    ) -> LongRunningOperation:
        return LongRunningOperation(
            name,
            begin,
            *args,
            poll_interval=self._config.poll_interval_seconds,
            rejection=rejection,
            **kwargs,
        )

    async def _get(
        self, identity: ResourceIdentity, deadline: Deadline
    ) -> tuple[dict[str, Any] | None, bool]:
        return await run_blocking(self._vms.get, identity, operation="get", deadline=deadline)

    async def _current_state(self, identity: ResourceIdentity) -> RemoteInstanceState:
        try:
            return await self._inspector.current_state(identity)
        except HttpResponseError as e:
            raise rejection_from("instance_view", e) from e

    def _identity_of(self, desired: DesiredStateProvider) -> ResourceIdentity:
        return self._config.identity_for(desired.get("resource_group_name"), desired.get("name"))

    async def _verify(self, tracker: _PassTracker) -> ObservedState:
        tracker.advance(ReconcilePhase.VERIFYING)
        result = await self.read(tracker.identity)
        if not result.found or result.state is None:
            raise RemoteRejectionError(
                "read", f"{tracker.identity} was not found after {tracker.operation}", 404
            )
        tracker.advance(ReconcilePhase.IDLE)
        return result.state

    # =========================================================================
    # Read
    # =========================================================================

    async def read(self, identity: ResourceIdentity) -> ReadResult:
        """Read the virtual machine and its OS disk.

        Returns:
            ReadResult with found=False when the VM does not exist.

        Raises:
            RemoteRejectionError: If the API rejects the read.
            OperationTimeoutError: If the read timeout expires.
        """
        deadline = Deadline.after(self._config.read_timeout_seconds)
        vm, found = await self._get(identity, deadline)
        if not found or vm is None:
            logger.info(
                "Virtual machine was not found - removing from state",
                extra={"resource_id": identity.id},
            )
            return ReadResult(found=False)

        disk = None
        disk_identity = os_disk_identity(vm)
        if disk_identity is not None:
            disk, disk_found = await run_blocking(
                self._disks.get,
                disk_identity,
                operation="get os disk",
                deadline=deadline,
                rejection=SubResourceRejectionError,
            )
            if not disk_found:
                # Ephemeral OS disks have an ID but no disk resource
                logger.debug("OS disk was not found", extra={"disk_id": disk_identity.id})

        attributes = flatten_virtual_machine(vm, identity, disk)
        return ReadResult(found=True, state=ObservedState(identity=identity, attributes=attributes))

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, desired: DesiredStateProvider) -> ObservedState:
        """Create a virtual machine that must not exist yet.

        Raises:
            AttributeValidationError: Before any remote call, on invalid input.
            AlreadyExistsError: If the VM already exists and must be imported.
            RemoteRejectionError: If the API rejects a call.
            OperationTimeoutError: If the create timeout expires.
        """
        identity = self._identity_of(desired)
        tracker = _PassTracker("create", identity, self._observer)
        try:
            async with self._locks.hold(identity.name, VIRTUAL_MACHINE_RESOURCE_KIND):
                return await self._create(identity, desired, tracker)
        except Exception as e:
            tracker.fail(e)
            raise

    async def _create(
        self,
        identity: ResourceIdentity,
        desired: DesiredStateProvider,
        tracker: _PassTracker,
    ) -> ObservedState:
        tracker.advance(ReconcilePhase.PLANNING)
        validate(desired, Operation.CREATE)

        deadline = Deadline.after(self._config.create_timeout_seconds)
        tracker.advance(ReconcilePhase.PRECHECK)
        _, found = await self._get(identity, deadline)
        if found:
            raise AlreadyExistsError(identity.id)

        tracker.advance(ReconcilePhase.BUILD_PAYLOAD)
        payload = build_create_payload(desired)

        tracker.advance(ReconcilePhase.CREATING)
        await self._lro("create_or_update", self._vms.begin_create_or_update, identity, payload).run(
            deadline
        )

        logger.info("Created virtual machine", extra={"resource_id": identity.id})
        return await self._verify(tracker)

    # =========================================================================
    # Update
    # =========================================================================

    async def update(self, identity: ResourceIdentity, desired: DesiredStateProvider) -> ObservedState:
        """Apply the changed attributes of desired to an existing virtual machine.

        Raises:
            AttributeValidationError: Before any remote call, on invalid input.
            RemoteRejectionError: If the API rejects a VM call.
            SubResourceRejectionError: If the API rejects an OS disk call.
            OperationTimeoutError: If the update timeout expires.
        """
        tracker = _PassTracker("update", identity, self._observer)
        try:
            async with self._locks.hold(identity.name, VIRTUAL_MACHINE_RESOURCE_KIND):
                return await self._update(identity, desired, tracker)
        except Exception as e:
            tracker.fail(e)
            raise

    async def _update(
        self,
        identity: ResourceIdentity,
        desired: DesiredStateProvider,
        tracker: _PassTracker,
    ) -> ObservedState:
        tracker.advance(ReconcilePhase.PLANNING)
        validate(desired, Operation.UPDATE)
        plan = plan_disruption(desired)
        payload = build_update_payload(desired)

        deadline = Deadline.after(self._config.update_timeout_seconds)
        existing, found = await self._get(identity, deadline)
        if not found or existing is None:
            raise RemoteRejectionError("update", f"{identity} was not found", 404)

        if desired.has_change("size"):
            sizes = await run_blocking(
                self._vms.list_available_sizes,
                identity,
                operation="list_available_sizes",
                deadline=deadline,
            )
            plan = plan_disruption(desired, available_sizes=sizes)

        instance = await self._current_state(identity)
        was_running = instance.is_running

        power_off = plan.must_power_off and not instance.skip_power_off
        deallocate = plan.must_deallocate and not instance.skip_deallocate
        if deallocate and has_ephemeral_os_disk(existing):
            logger.debug(
                "Skipping deallocation for virtual machine with ephemeral OS disk",
                extra={"resource_id": identity.id},
            )
            deallocate = False

        logger.info(
            "Planned update",
            extra={
                "resource_id": identity.id,
                "changed_paths": sorted(desired.changed_paths()),
                "power_state": instance.power_state.value,
                "power_off": power_off,
                "deallocate": deallocate,
                "deferred": [op.kind.value for op in plan.deferred],
            },
        )

        disrupted = False
        if power_off or deallocate:
            tracker.advance(ReconcilePhase.DISRUPTING)
            if power_off:
                await self._lro(
                    "power_off", self._vms.begin_power_off, identity, skip_shutdown=False
                ).run(deadline)
                disrupted = True
            if deallocate:
                await self._lro("deallocate", self._vms.begin_deallocate, identity).run(deadline)
                disrupted = True

        tracker.advance(ReconcilePhase.UPDATING)
        for operation in plan.deferred:
            await self._apply_deferred(identity, existing, desired, operation, deadline)

        if payload:
            await self._lro("update", self._vms.begin_update, identity, payload.to_dict()).run(
                deadline
            )
        else:
            logger.debug(
                "No in-place changes for the virtual machine itself",
                extra={"resource_id": identity.id},
            )

        if was_running and disrupted:
            tracker.advance(ReconcilePhase.RESTORING)
            await self._lro("start", self._vms.begin_start, identity).run(deadline)

        return await self._verify(tracker)

    async def _apply_deferred(
        self,
        identity: ResourceIdentity,
        existing: dict[str, Any],
        desired: DesiredStateProvider,
        operation: DeferredOperation,
        deadline: Deadline,
    ) -> None:
        disk_identity = os_disk_identity(existing)
        if disk_identity is None:
            disk_name = desired.get("os_disk.name") or (
                ((existing.get("properties") or {}).get("storageProfile") or {})
                .get("osDisk", {})
                .get("name")
            )
            if not disk_name:
                raise SubResourceRejectionError(
                    operation.kind.value, f"unable to determine the OS disk of {identity}"
                )
            disk_identity = identity.disk(disk_name)

        match operation.kind:
            case DeferredKind.DISK_RESIZE:
                payload: dict[str, Any] = {"properties": {"diskSizeGB": operation.value}}
            case DeferredKind.DISK_ENCRYPTION:
                encryption_type = await run_blocking(
                    self._disks.get_encryption_set_type,
                    operation.value,
                    operation="get disk encryption set",
                    deadline=deadline,
                    rejection=SubResourceRejectionError,
                )
                payload = {
                    "properties": {
                        "encryption": {
                            "diskEncryptionSetId": operation.value,
                            "type": encryption_type,
                        }
                    }
                }

        logger.info(
            "Updating OS disk",
            extra={"disk_id": disk_identity.id, "operation": operation.kind.value},
        )
        await self._lro(
            f"os disk {operation.kind.value}",
            self._disks.begin_update,
            disk_identity,
            payload,
            rejection=SubResourceRejectionError,
        ).run(deadline)

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete(self, identity: ResourceIdentity, options: DeleteOptions | None = None) -> None:
        """Delete the virtual machine and, optionally, its OS disk.

        A VM that is already gone is treated as deleted.

        Raises:
            RemoteRejectionError: If the API rejects a VM call.
            SubResourceRejectionError: If deleting the OS disk fails.
            OperationTimeoutError: If the delete timeout expires, including
                while waiting for the VM to disappear.
        """
        options = options or self._config.delete_options
        tracker = _PassTracker("delete", identity, self._observer)
        try:
            async with self._locks.hold(identity.name, VIRTUAL_MACHINE_RESOURCE_KIND):
                await self._delete(identity, options, tracker)
        except Exception as e:
            tracker.fail(e)
            raise

    async def _delete(
        self,
        identity: ResourceIdentity,
        options: DeleteOptions,
        tracker: _PassTracker,
    ) -> None:
        deadline = Deadline.after(self._config.delete_timeout_seconds)

        tracker.advance(ReconcilePhase.PRECHECK)
        existing, found = await self._get(identity, deadline)
        if not found or existing is None:
            logger.info("Virtual machine already absent", extra={"resource_id": identity.id})
            tracker.advance(ReconcilePhase.IDLE)
            return

        if options.power_off_first:
            provisioning_state = (existing.get("properties") or {}).get("provisioningState")
            if str(provisioning_state or "").lower() == "failed":
                logger.info(
                    "Skipping power off for virtual machine in Failed provisioning state",
                    extra={"resource_id": identity.id},
                )
            else:
                tracker.advance(ReconcilePhase.DISRUPTING)
                await self._lro(
                    "power_off",
                    self._vms.begin_power_off,
                    identity,
                    skip_shutdown=not options.graceful_shutdown,
                ).run(deadline)

        tracker.advance(ReconcilePhase.DELETING)
        await self._lro(
            "delete", self._vms.begin_delete, identity, force_deletion=options.force_deletion
        ).run(deadline)

        tracker.advance(ReconcilePhase.POST_DELETE_CLEANUP)
        if options.delete_os_disk:
            await self._delete_os_disk(existing, deadline)

        tracker.advance(ReconcilePhase.VERIFYING_ABSENCE)
        await self._wait_for_absence(identity, deadline)
        tracker.advance(ReconcilePhase.IDLE)
        logger.info("Deleted virtual machine", extra={"resource_id": identity.id})

    async def _delete_os_disk(self, existing: dict[str, Any], deadline: Deadline) -> None:
        disk_identity = os_disk_identity(existing)
        if disk_identity is None:
            logger.info(
                "Skipping OS disk deletion, no managed disk ID found",
                extra={"resource_id": existing.get("id")},
            )
            return

        try:
            await self._lro(
                "delete os disk",
                self._disks.begin_delete,
                disk_identity,
                rejection=SubResourceRejectionError,
            ).run(deadline)
        except SubResourceRejectionError as e:
            if e.status_code != 404:
                raise
            logger.info("OS disk already absent", extra={"disk_id": disk_identity.id})

    async def _wait_for_absence(self, identity: ResourceIdentity, deadline: Deadline) -> None:
        interval = self._config.delete_verify_interval_seconds
        while not deadline.expired:
            try:
                _, found = await self._get(identity, deadline)
            except OperationTimeoutError:
                break
            if not found:
                return
            logger.debug(
                "Virtual machine still present, waiting for deletion",
                extra={"resource_id": identity.id},
            )
            await asyncio.sleep(min(interval, deadline.remaining()))
        raise OperationTimeoutError("delete verification", deadline.timeout_seconds)

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply(self, spec: WindowsVirtualMachineSpec) -> ApplyResult:
        """Create the VM when absent, otherwise diff against it and update.

        When nothing differs, no mutating call is made.
        """
        identity = self._config.identity_for(spec.resource_group_name, spec.name)
        result = await self.read(identity)

        if not result.found or result.state is None:
            state = await self.create(DesiredState(spec))
            return ApplyResult(action=ApplyAction.CREATED, state=state)

        desired = DesiredState.against_observed(spec, result.state.attributes)
        changed = desired.changed_paths()
        if not changed:
            logger.info("Virtual machine is up to date", extra={"resource_id": identity.id})
            return ApplyResult(action=ApplyAction.UNCHANGED, state=result.state)

        state = await self.update(identity, desired)
        return ApplyResult(action=ApplyAction.UPDATED, state=state, changed_paths=changed)
