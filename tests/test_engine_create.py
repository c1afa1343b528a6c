"""Tests for the create pass of the reconciliation engine."""

import pytest

from factories import (
    RESOURCE_GROUP,
    VM_NAME,
    make_config,
    make_reconciler,
    make_spec,
    seed_vm,
)
from vmreconciler.desired_state import DesiredState
from vmreconciler.errors import (
    AlreadyExistsError,
    AttributeValidationError,
    OperationTimeoutError,
    RemoteRejectionError,
)
from vmreconciler.engine import ReconcilePhase


class TestCreate:
    """Tests for VirtualMachineReconciler.create()."""

    @pytest.mark.asyncio
    async def test_create(self, state, reconciler, recorder) -> None:
        """Test creating a new virtual machine."""
        observed = await reconciler.create(DesiredState(make_spec()))

        assert state.mutating_operations() == ["vm.create_or_update"]
        assert state.power_state(RESOURCE_GROUP, VM_NAME) == "running"
        assert observed.get("name") == VM_NAME
        assert observed.get("size") == "Standard_D2s_v3"
        assert observed.get("os_disk.disk_size_gb") == 127
        assert recorder.phases() == [
            "Planning",
            "Precheck",
            "BuildPayload",
            "Creating",
            "Verifying",
            "Idle",
        ]

    @pytest.mark.asyncio
    async def test_create_body(self, state, reconciler) -> None:
        """Test the body sent for a Spot VM."""
        spec = make_spec(priority="Spot", eviction_policy="Deallocate", max_bid_price=0.1)

        await reconciler.create(DesiredState(spec))

        body = state.calls_of("vm.create_or_update")[0].kwargs["body"]
        assert body["properties"]["priority"] == "Spot"
        assert body["properties"]["evictionPolicy"] == "Deallocate"
        assert body["properties"]["billingProfile"] == {"maxPrice": 0.1}

    @pytest.mark.asyncio
    async def test_create_ephemeral_os_disk(self, state, reconciler) -> None:
        """Test that a VM with an ephemeral OS disk reads back without a disk resource."""
        spec = make_spec(os_disk={"caching": "ReadOnly", "diff_disk_settings": {"option": "Local"}})

        observed = await reconciler.create(DesiredState(spec))

        assert observed.get("os_disk.diff_disk_settings.option") == "Local"
        assert state.disks == {}


class TestCreateFailures:
    """Failure handling during create."""

    @pytest.mark.asyncio
    async def test_spot_without_eviction_policy(self, state, reconciler, recorder) -> None:
        """Test that invalid Spot settings fail before any remote call."""
        with pytest.raises(AttributeValidationError) as exc_info:
            await reconciler.create(DesiredState(make_spec(priority="Spot")))

        assert "eviction_policy" in str(exc_info.value)
        assert state.calls == []
        assert recorder.phases() == ["Planning", "Failed"]

    @pytest.mark.asyncio
    async def test_already_exists(self, state, reconciler) -> None:
        """Test that an existing VM must be imported."""
        seed_vm(state)

        with pytest.raises(AlreadyExistsError) as exc_info:
            await reconciler.create(DesiredState(make_spec()))

        assert VM_NAME in exc_info.value.resource_id
        assert "imported" in str(exc_info.value)
        assert state.mutating_operations() == []

    @pytest.mark.asyncio
    async def test_remote_rejection(self, state, reconciler, recorder) -> None:
        """Test that a rejected create is reported with its status code."""
        state.fail("vm.create_or_update", status_code=400, code="InvalidParameter")

        with pytest.raises(RemoteRejectionError) as exc_info:
            await reconciler.create(DesiredState(make_spec()))

        assert exc_info.value.status_code == 400
        assert recorder.transitions[-1].from_phase is ReconcilePhase.CREATING
        assert recorder.transitions[-1].to_phase is ReconcilePhase.FAILED

    @pytest.mark.asyncio
    async def test_timeout(self, state, recorder) -> None:
        """Test that a never-finishing create times out."""
        state.poll_delays["vm.create_or_update"] = None
        reconciler = make_reconciler(
            state, config=make_config(create_timeout_seconds=1), observer=recorder
        )

        with pytest.raises(OperationTimeoutError) as exc_info:
            await reconciler.create(DesiredState(make_spec()))

        assert exc_info.value.operation == "create_or_update"
        assert recorder.phases()[-1] == "Failed"
