"""Tests for desired-state access and change-set computation."""

import pytest

from factories import make_spec, nic_id
from vmreconciler.desired_state import DesiredState, flatten_attributes


class TestDesiredStateAccess:
    """Tests for reading attribute paths."""

    def test_get_top_level_and_nested(self) -> None:
        """Test reading flat and nested paths."""
        state = DesiredState(make_spec())

        assert state.get("size") == "Standard_D2s_v3"
        assert state.get("os_disk.caching") == "ReadWrite"
        assert state.get("source_image_reference") == {
            "publisher": "MicrosoftWindowsServer",
            "offer": "WindowsServer",
            "sku": "2022-datacenter",
            "version": "latest",
        }

    def test_get_through_unset_block(self) -> None:
        """Test that paths below an unset block read as None."""
        state = DesiredState(make_spec())

        assert state.get("boot_diagnostics") is None
        assert state.get("boot_diagnostics.storage_account_uri") is None

    def test_get_unknown_path(self) -> None:
        """Test that an unknown path raises KeyError."""
        with pytest.raises(KeyError):
            DesiredState(make_spec()).get("os_disk.bogus")

    def test_has_value(self) -> None:
        """Test that empty strings, lists and None have no value."""
        state = DesiredState(make_spec(license_type=""))

        assert state.has_value("size") is True
        assert state.has_value("license_type") is False
        assert state.has_value("secret") is False
        assert state.has_value("zone") is False
        assert state.has_value("os_disk.write_accelerator_enabled") is True

    def test_has_change_matches_ancestors_and_children(self) -> None:
        """Test prefix matching in both directions."""
        state = DesiredState(make_spec(), ["os_disk.disk_size_gb", "identity"])

        assert state.has_change("os_disk.disk_size_gb")
        assert state.has_change("os_disk")
        assert state.has_change("identity.identity_ids")
        assert not state.has_change("os_disk.caching")
        assert not state.has_change("os")

    def test_with_changes(self) -> None:
        """Test that with_changes keeps the configuration."""
        state = DesiredState(make_spec(), ["tags"])

        other = state.with_changes(["size"])

        assert other.spec is state.spec
        assert other.changed_paths() == frozenset({"size"})
        assert state.changed_paths() == frozenset({"tags"})


class TestFlattenAttributes:
    """Tests for flattening models into leaf paths."""

    def test_nested_blocks_flattened(self) -> None:
        """Test that blocks are walked and lists stay leaves."""
        flat = flatten_attributes(make_spec())

        assert flat["os_disk.caching"] == "ReadWrite"
        assert flat["source_image_reference.sku"] == "2022-datacenter"
        assert flat["network_interface_ids"] == [nic_id()]
        assert flat["tags"] == {"env": "test"}

    def test_unset_block_is_single_leaf(self) -> None:
        """Test that an unset block yields one None leaf."""
        flat = flatten_attributes(make_spec())

        assert flat["identity"] is None
        assert not any(path.startswith("identity.") for path in flat)


class TestAgainstObserved:
    """Tests for diffing desired against observed attributes."""

    def _observed(self, **overrides):
        observed = {
            path: value
            for path, value in flatten_attributes(make_spec()).items()
            if value is not None
        }
        observed.update(overrides)
        return observed

    def test_identical_has_no_changes(self) -> None:
        """Test that identical attributes yield an empty change set."""
        state = DesiredState.against_observed(make_spec(), self._observed())

        assert state.changed_paths() == frozenset()

    def test_changed_leaves(self) -> None:
        """Test that differing leaves are reported."""
        observed = self._observed(size="Standard_D4s_v3", tags={"env": "prod"})

        state = DesiredState.against_observed(make_spec(), observed)

        assert state.changed_paths() == frozenset({"size", "tags"})

    def test_case_insensitive_identifiers(self) -> None:
        """Test that identifier case differences are not changes."""
        observed = self._observed(
            location="WestEurope",
            network_interface_ids=[nic_id().upper()],
        )

        state = DesiredState.against_observed(make_spec(), observed)

        assert state.changed_paths() == frozenset()

    def test_location_display_name(self) -> None:
        """Test that a display-name location matches the ARM region name."""
        observed = self._observed(location="West Europe")

        state = DesiredState.against_observed(make_spec(), observed)

        assert state.changed_paths() == frozenset()

    def test_unordered_identity_ids(self) -> None:
        """Test that user-assigned identity order does not matter."""
        ids = [
            f"/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/rg-vms"
            f"/providers/Microsoft.ManagedIdentity/userAssignedIdentities/{name}"
            for name in ("a", "b")
        ]
        spec = make_spec(identity={"type": "UserAssigned", "identity_ids": ids})
        observed = self._observed(
            **{"identity.type": "UserAssigned", "identity.identity_ids": list(reversed(ids))}
        )

        state = DesiredState.against_observed(spec, observed)

        assert state.changed_paths() == frozenset()

    def test_license_none_equivalents(self) -> None:
        """Test that an empty license type equals the literal None."""
        state = DesiredState.against_observed(
            make_spec(license_type=""), self._observed(license_type="None")
        )

        assert "license_type" not in state.changed_paths()

    def test_unset_desired_has_no_opinion(self) -> None:
        """Test that unset desired attributes never produce changes."""
        observed = self._observed(**{"os_disk.disk_size_gb": 127, "zone": "1"})

        state = DesiredState.against_observed(make_spec(), observed)

        assert state.changed_paths() == frozenset()

    def test_unreturned_attributes_skipped(self) -> None:
        """Test that attributes missing from observed state are skipped."""
        observed = self._observed()
        del observed["admin_password"]

        state = DesiredState.against_observed(make_spec(admin_password="N3wP@ssword!"), observed)

        assert state.changed_paths() == frozenset()
