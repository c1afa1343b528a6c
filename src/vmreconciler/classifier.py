"""Field change classification and multi-attribute validation.

Each attribute path maps to a FieldRule in FIELD_RULES. A generic walker
resolves a changed path to the most specific rule: deeper paths fall back to
their nearest ancestor, and container paths expand to their updatable
children. The union of the resolved rules yields the DisruptionPlan.

Multi-attribute constraints are declared in CROSS_FIELD_RULES and evaluated
by validate() before any remote call is made.

Everything in this module is pure: no I/O, no logging side effects beyond
debug output.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import AttributeValidationError
from .models import HOTPATCH_IMAGE_SKUS, windows_computer_name_error

if TYPE_CHECKING:
    from .desired_state import DesiredStateProvider

logger = logging.getLogger(__name__)


class DisruptionClass(str, Enum):
    """Minimum interruption needed before a change can be applied."""

    NONE = "none"
    POWER_OFF = "power_off"
    DEALLOCATE = "deallocate"
    POWER_OFF_AND_DEALLOCATE = "power_off_and_deallocate"

    @property
    def powers_off(self) -> bool:
        return self in (DisruptionClass.POWER_OFF, DisruptionClass.POWER_OFF_AND_DEALLOCATE)

    @property
    def deallocates(self) -> bool:
        return self in (DisruptionClass.DEALLOCATE, DisruptionClass.POWER_OFF_AND_DEALLOCATE)


class DeferredKind(str, Enum):
    """Sub-resource operations issued against the disk API, not the VM API."""

    DISK_RESIZE = "disk_resize"
    DISK_ENCRYPTION = "disk_encryption"


# Deferred operations run in this order
_DEFERRED_ORDER = (DeferredKind.DISK_RESIZE, DeferredKind.DISK_ENCRYPTION)


class Operation(str, Enum):
    """Engine operations a cross-field rule can apply to."""

    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class FieldRule:
    """Classification of one attribute path.

    Attributes:
        path: Dotted attribute path.
        disruption: Disruption needed when the attribute changes.
        create_only: Changing the attribute after creation is rejected.
        deferred: Sub-resource operation issued instead of the VM update.
        case_insensitive: Compare values case-insensitively when diffing.
        unordered: Compare list values irrespective of order when diffing.
        container: The path is a block whose children have their own rules.
    """

    path: str
    disruption: DisruptionClass = DisruptionClass.NONE
    create_only: bool = False
    deferred: DeferredKind | None = None
    case_insensitive: bool = False
    unordered: bool = False
    container: bool = False


def _rules(*rules: FieldRule) -> dict[str, FieldRule]:
    return {rule.path: rule for rule in rules}


_NONE = DisruptionClass.NONE
_DEALLOCATE = DisruptionClass.DEALLOCATE
_POWER_OFF = DisruptionClass.POWER_OFF
_FULL = DisruptionClass.POWER_OFF_AND_DEALLOCATE

FIELD_RULES: dict[str, FieldRule] = _rules(
    # Create-only
    FieldRule("name", create_only=True),
    FieldRule("resource_group_name", create_only=True),
    FieldRule("location", create_only=True, case_insensitive=True),
    FieldRule("admin_username", create_only=True),
    FieldRule("admin_password", create_only=True),
    FieldRule("additional_unattend_content", create_only=True),
    FieldRule("availability_set_id", create_only=True, case_insensitive=True),
    FieldRule("computer_name", create_only=True),
    FieldRule("custom_data", create_only=True),
    FieldRule("edge_zone", create_only=True, case_insensitive=True),
    FieldRule("enable_automatic_updates", create_only=True),
    FieldRule("eviction_policy", create_only=True),
    FieldRule("plan", create_only=True),
    FieldRule("platform_fault_domain", create_only=True),
    FieldRule("priority", create_only=True),
    FieldRule("provision_vm_agent", create_only=True),
    FieldRule("secure_boot_enabled", create_only=True),
    FieldRule("source_image_id", create_only=True, case_insensitive=True),
    FieldRule("source_image_reference", create_only=True),
    FieldRule("timezone", create_only=True),
    FieldRule("virtual_machine_scale_set_id", create_only=True, case_insensitive=True),
    FieldRule("vtpm_enabled", create_only=True),
    FieldRule("winrm_listener", create_only=True),
    FieldRule("zone", create_only=True),
    # Updatable in place
    FieldRule("tags"),
    FieldRule("boot_diagnostics"),
    FieldRule("secret"),
    FieldRule("identity", container=True),
    FieldRule("identity.identity_ids", case_insensitive=True, unordered=True),
    FieldRule("allow_extension_operations"),
    FieldRule("patch_mode"),
    FieldRule("patch_assessment_mode"),
    FieldRule("bypass_platform_safety_checks_on_user_schedule_enabled"),
    FieldRule("reboot_setting"),
    FieldRule("hotpatching_enabled"),
    FieldRule("extensions_time_budget"),
    FieldRule("gallery_application"),
    FieldRule("termination_notification"),
    FieldRule("license_type"),
    FieldRule("user_data"),
    # Need the VM deallocated
    FieldRule("capacity_reservation_group_id", _DEALLOCATE, case_insensitive=True),
    FieldRule("dedicated_host_id", _DEALLOCATE, case_insensitive=True),
    FieldRule("dedicated_host_group_id", _DEALLOCATE, case_insensitive=True),
    FieldRule("encryption_at_host_enabled", _DEALLOCATE),
    # Need the VM powered off and deallocated
    FieldRule("max_bid_price", _FULL),
    FieldRule("network_interface_ids", _FULL, case_insensitive=True),
    FieldRule("proximity_placement_group_id", _FULL, case_insensitive=True),
    FieldRule("additional_capabilities", container=True),
    FieldRule("additional_capabilities.ultra_ssd_enabled", _FULL),
    # Escalated to deallocation when the target size is unavailable on the
    # current hardware cluster
    FieldRule("size", _POWER_OFF),
    # OS disk
    FieldRule("os_disk", _FULL, container=True),
    FieldRule("os_disk.caching", _FULL),
    FieldRule("os_disk.write_accelerator_enabled", _FULL),
    FieldRule("os_disk.disk_size_gb", _FULL, deferred=DeferredKind.DISK_RESIZE),
    FieldRule(
        "os_disk.disk_encryption_set_id",
        _FULL,
        deferred=DeferredKind.DISK_ENCRYPTION,
        case_insensitive=True,
    ),
    FieldRule("os_disk.storage_account_type", create_only=True),
    FieldRule("os_disk.diff_disk_settings", create_only=True),
    FieldRule("os_disk.name", create_only=True),
    FieldRule("os_disk.secure_vm_disk_encryption_set_id", create_only=True, case_insensitive=True),
    FieldRule("os_disk.security_encryption_type", create_only=True),
)


def rule_for(path: str) -> FieldRule | None:
    """Find the most specific rule governing a path.

    Walks up the dotted path until a rule is found, so that
    ``termination_notification.timeout`` resolves to the
    ``termination_notification`` rule.
    """
    candidate = path
    while candidate:
        rule = FIELD_RULES.get(candidate)
        if rule is not None:
            return rule
        if "." not in candidate:
            return None
        candidate = candidate.rsplit(".", 1)[0]
    return None


def resolve_rules(path: str) -> list[FieldRule]:
    """Resolve a changed path to the rules it activates.

    Raises:
        AttributeValidationError: If no rule covers the path.
    """
    rule = rule_for(path)
    if rule is None:
        raise AttributeValidationError([f"unknown attribute path {path!r}"])

    if rule.path != path or not rule.container:
        return [rule]

    # A whole block changed: the block itself plus every child that can be
    # changed in place
    prefix = f"{path}."
    children = [
        child
        for child_path, child in FIELD_RULES.items()
        if child_path.startswith(prefix) and not child.create_only
    ]
    return [rule, *children]


# =============================================================================
# Disruption planning
# =============================================================================


@dataclass(frozen=True)
class DeferredOperation:
    """A sub-resource change that cannot ride along in the VM update payload.

    Attributes:
        kind: What to do against the disk API.
        path: Attribute path the operation applies.
        value: Desired value (size in GB, or disk encryption set ID).
    """

    kind: DeferredKind
    path: str
    value: Any


@dataclass(frozen=True)
class DisruptionPlan:
    """Power-off and deallocation flags plus ordered deferred operations."""

    must_power_off: bool = False
    must_deallocate: bool = False
    deferred: tuple[DeferredOperation, ...] = field(default_factory=tuple)

    @property
    def is_disruptive(self) -> bool:
        return self.must_power_off or self.must_deallocate


def size_is_available(size: str, available_sizes: Iterable[str]) -> bool:
    """Whether a size is offered on the VM's current hardware cluster."""
    return any(size.lower() == candidate.lower() for candidate in available_sizes)


def plan_disruption(
    state: DesiredStateProvider,
    available_sizes: Iterable[str] | None = None,
) -> DisruptionPlan:
    """Build the disruption plan for the changed attributes.

    Args:
        state: Desired state with its change set.
        available_sizes: Sizes the VM can be resized to without deallocation.
            When None, a size change only requires power-off.

    Returns:
        The union of every activated rule's disruption, plus deferred
        operations in execution order.

    Raises:
        AttributeValidationError: If a changed path is unknown.
    """
    must_power_off = False
    must_deallocate = False
    deferred: dict[DeferredKind, DeferredOperation] = {}

    for path in sorted(state.changed_paths()):
        for rule in resolve_rules(path):
            must_power_off = must_power_off or rule.disruption.powers_off
            must_deallocate = must_deallocate or rule.disruption.deallocates

            if rule.path == "size" and available_sizes is not None:
                size = state.get("size")
                if size and not size_is_available(size, available_sizes):
                    logger.debug(
                        "Target size not available on current cluster, deallocation required",
                        extra={"size": size},
                    )
                    must_deallocate = True

            if rule.deferred is not None and state.has_value(rule.path):
                deferred[rule.deferred] = DeferredOperation(
                    kind=rule.deferred,
                    path=rule.path,
                    value=state.get(rule.path),
                )

    return DisruptionPlan(
        must_power_off=must_power_off,
        must_deallocate=must_deallocate,
        deferred=tuple(deferred[kind] for kind in _DEFERRED_ORDER if kind in deferred),
    )


# =============================================================================
# Multi-attribute rules
# =============================================================================

_BOTH = frozenset({Operation.CREATE, Operation.UPDATE})
_CREATE = frozenset({Operation.CREATE})


@dataclass(frozen=True)
class CrossFieldRule:
    """A constraint spanning several attributes.

    Attributes:
        message: Violation message shown to the user.
        violated: Predicate returning True when the constraint is broken.
        operations: Operations the rule applies to.
        when_changed: On update, only evaluate when one of these paths changed.
            Empty means always evaluate.
    """

    message: str
    violated: Callable[[DesiredStateProvider], bool]
    operations: frozenset[Operation] = _BOTH
    when_changed: tuple[str, ...] = ()

    def applies_to(self, state: DesiredStateProvider, operation: Operation) -> bool:
        if operation not in self.operations:
            return False
        if operation is Operation.UPDATE and self.when_changed:
            return any(state.has_change(path) for path in self.when_changed)
        return True


def _conflicts(first: str, second: str) -> CrossFieldRule:
    return CrossFieldRule(
        message=f"{first!r} conflicts with {second!r}",
        violated=lambda s: s.has_value(first) and s.has_value(second),
    )


def _is_true(state: DesiredStateProvider, path: str) -> bool:
    return state.get(path) is True


def _automatic_by_platform(state: DesiredStateProvider) -> bool:
    return state.get("patch_mode") == "AutomaticByPlatform"


def _is_spot(state: DesiredStateProvider) -> bool:
    return state.get("priority") == "Spot"


def _hotpatch_image(state: DesiredStateProvider) -> bool:
    if state.has_value("source_image_id"):
        return False
    return (
        state.get("source_image_reference.publisher") == "MicrosoftWindowsServer"
        and state.get("source_image_reference.offer") == "WindowsServer"
        and state.get("source_image_reference.sku") in HOTPATCH_IMAGE_SKUS
    )


CROSS_FIELD_RULES: tuple[CrossFieldRule, ...] = (
    # Spot pricing
    CrossFieldRule(
        message="an 'eviction_policy' can only be specified when 'priority' is set to 'Spot'",
        violated=lambda s: s.has_value("eviction_policy") and not _is_spot(s),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="an 'eviction_policy' must be specified when 'priority' is set to 'Spot'",
        violated=lambda s: _is_spot(s) and not s.has_value("eviction_policy"),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'max_bid_price' can only be configured when 'priority' is set to 'Spot'",
        violated=lambda s: (s.get("max_bid_price") or -1) > 0 and not _is_spot(s),
        when_changed=("max_bid_price",),
    ),
    # VM agent
    CrossFieldRule(
        message="'allow_extension_operations' cannot be set to 'true' "
        "when 'provision_vm_agent' is set to 'false'",
        violated=lambda s: _is_true(s, "allow_extension_operations")
        and not _is_true(s, "provision_vm_agent"),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'provision_vm_agent' must be set to 'true' "
        "when 'patch_mode' is set to 'AutomaticByPlatform'",
        violated=lambda s: _automatic_by_platform(s) and not _is_true(s, "provision_vm_agent"),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'provision_vm_agent' must be set to 'true' "
        "when 'patch_assessment_mode' is set to 'AutomaticByPlatform'",
        violated=lambda s: s.get("patch_assessment_mode") == "AutomaticByPlatform"
        and not _is_true(s, "provision_vm_agent"),
        when_changed=("patch_assessment_mode",),
    ),
    # Platform patching
    CrossFieldRule(
        message="'bypass_platform_safety_checks_on_user_schedule_enabled' can only be set "
        "to 'true' when 'patch_mode' is set to 'AutomaticByPlatform'",
        violated=lambda s: _is_true(s, "bypass_platform_safety_checks_on_user_schedule_enabled")
        and not _automatic_by_platform(s),
        when_changed=("bypass_platform_safety_checks_on_user_schedule_enabled", "patch_mode"),
    ),
    CrossFieldRule(
        message="'reboot_setting' can only be set when 'patch_mode' is set to "
        "'AutomaticByPlatform'",
        violated=lambda s: s.has_value("reboot_setting") and not _automatic_by_platform(s),
        when_changed=("reboot_setting", "patch_mode"),
    ),
    CrossFieldRule(
        message="'patch_mode' must be set to 'AutomaticByPlatform' "
        "when 'hotpatching_enabled' is set to 'true'",
        violated=lambda s: _is_true(s, "hotpatching_enabled") and not _automatic_by_platform(s),
        when_changed=("hotpatching_enabled", "patch_mode"),
    ),
    CrossFieldRule(
        message="'provision_vm_agent' must be set to 'true' "
        "when 'hotpatching_enabled' is set to 'true'",
        violated=lambda s: _is_true(s, "hotpatching_enabled")
        and not _is_true(s, "provision_vm_agent"),
        when_changed=("hotpatching_enabled",),
    ),
    CrossFieldRule(
        message="'hotpatching_enabled' can only be set to 'true' when "
        "'source_image_reference' points to a hotpatch-capable image",
        violated=lambda s: _is_true(s, "hotpatching_enabled") and not _hotpatch_image(s),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'patch_mode' must always be set to 'AutomaticByPlatform' "
        "when 'source_image_reference' points to a hotpatch-capable image",
        violated=lambda s: _hotpatch_image(s) and not _automatic_by_platform(s),
        operations=_CREATE,
    ),
    # Confidential VM
    CrossFieldRule(
        message="'encryption_at_host_enabled' cannot be set to 'true' when "
        "'os_disk.security_encryption_type' is set to 'DiskWithVMGuestState'",
        violated=lambda s: _is_true(s, "encryption_at_host_enabled")
        and s.get("os_disk.security_encryption_type") == "DiskWithVMGuestState",
        when_changed=("encryption_at_host_enabled",),
    ),
    CrossFieldRule(
        message="'secure_boot_enabled' must be set to 'true' when "
        "'os_disk.security_encryption_type' is set to 'DiskWithVMGuestState'",
        violated=lambda s: s.get("os_disk.security_encryption_type") == "DiskWithVMGuestState"
        and not _is_true(s, "secure_boot_enabled"),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'vtpm_enabled' must be set to 'true' when "
        "'os_disk.security_encryption_type' is specified",
        violated=lambda s: s.has_value("os_disk.security_encryption_type")
        and not _is_true(s, "vtpm_enabled"),
        operations=_CREATE,
    ),
    CrossFieldRule(
        message="'os_disk.secure_vm_disk_encryption_set_id' can only be specified when "
        "'os_disk.security_encryption_type' is set to 'DiskWithVMGuestState'",
        violated=lambda s: s.has_value("os_disk.secure_vm_disk_encryption_set_id")
        and s.get("os_disk.security_encryption_type") != "DiskWithVMGuestState",
        operations=_CREATE,
    ),
    _conflicts("os_disk.secure_vm_disk_encryption_set_id", "os_disk.disk_encryption_set_id"),
    # OS disk
    CrossFieldRule(
        message="'os_disk.caching' must be set to 'ReadOnly' "
        "when 'os_disk.diff_disk_settings' is specified",
        violated=lambda s: s.has_value("os_disk.diff_disk_settings.option")
        and s.get("os_disk.caching") != "ReadOnly",
    ),
    # Placement
    _conflicts("availability_set_id", "capacity_reservation_group_id"),
    _conflicts("availability_set_id", "virtual_machine_scale_set_id"),
    _conflicts("availability_set_id", "zone"),
    _conflicts("capacity_reservation_group_id", "proximity_placement_group_id"),
    _conflicts("dedicated_host_id", "dedicated_host_group_id"),
    CrossFieldRule(
        message="'platform_fault_domain' can only be set when "
        "'virtual_machine_scale_set_id' is specified",
        violated=lambda s: s.get("platform_fault_domain") not in (None, -1)
        and not s.has_value("virtual_machine_scale_set_id"),
        operations=_CREATE,
    ),
    # Image
    CrossFieldRule(
        message="exactly one of 'source_image_id' or 'source_image_reference' must be specified",
        violated=lambda s: s.has_value("source_image_id") == s.has_value("source_image_reference"),
        operations=_CREATE,
    ),
)


def _computer_name_violation(state: DesiredStateProvider) -> str | None:
    if state.has_value("computer_name"):
        return None
    error = windows_computer_name_error(state.get("name") or "")
    if error is None:
        return None
    return (
        f"unable to assume default computer name: {error}; "
        "please adjust the 'name', or specify an explicit 'computer_name'"
    )


def validate(state: DesiredStateProvider, operation: Operation) -> None:
    """Check the desired state against every applicable rule.

    All violations are collected so the user sees every problem at once.

    Raises:
        AttributeValidationError: If any constraint is violated.
    """
    violations: list[str] = []

    if operation is Operation.UPDATE:
        for path in sorted(state.changed_paths()):
            try:
                rules = resolve_rules(path)
            except AttributeValidationError as e:
                violations.extend(e.violations)
                continue
            for rule in rules:
                if rule.create_only:
                    violations.append(
                        f"{path!r} cannot be changed in place; "
                        "the virtual machine must be recreated"
                    )

        if "os_disk.disk_encryption_set_id" in state.changed_paths() and not state.has_value(
            "os_disk.disk_encryption_set_id"
        ):
            violations.append(
                "once a customer-managed key is used, you can't change the selection "
                "back to a platform-managed key"
            )

    if operation is Operation.CREATE:
        computer_name_error = _computer_name_violation(state)
        if computer_name_error:
            violations.append(computer_name_error)

    for rule in CROSS_FIELD_RULES:
        if rule.applies_to(state, operation) and rule.violated(state):
            violations.append(rule.message)

    if violations:
        raise AttributeValidationError(violations)
