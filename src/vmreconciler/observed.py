"""Flattening of remote virtual machine state into attribute paths.

The remote API returns a nested REST document. Read flattens it into the
same dotted paths the desired configuration uses, so the two can be diffed
leaf by leaf. Defaults are filled in where the API omits a value that the
configuration always carries.
"""

from __future__ import annotations

from typing import Any

from .identity import DISK_PROVIDER, ResourceIdentity

DEFAULT_EXTENSIONS_TIME_BUDGET = "PT1H30M"
DEFAULT_MAX_BID_PRICE = -1.0
DEFAULT_PRIORITY = "Regular"
DEFAULT_PATCH_ASSESSMENT_MODE = "ImageDefault"
DEFAULT_TERMINATION_TIMEOUT = "PT5M"
DEFAULT_PLATFORM_FAULT_DOMAIN = -1


def _dig(data: dict[str, Any] | None, path: str, default: Any = None) -> Any:
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return default
        current = current.get(key)
    return default if current is None else current


def _sub_resource_id(data: dict[str, Any], path: str) -> str | None:
    return _dig(data, f"{path}.id")


def os_disk_identity(vm: dict[str, Any]) -> ResourceIdentity | None:
    """Identity of the VM's managed OS disk, or None when it has no disk ID."""
    disk_id = _dig(vm, "properties.storageProfile.osDisk.managedDisk.id")
    if not disk_id:
        return None
    return ResourceIdentity.parse(disk_id, provider=DISK_PROVIDER)


def _flatten_os_disk(vm: dict[str, Any], disk: dict[str, Any] | None) -> dict[str, Any]:
    os_disk = _dig(vm, "properties.storageProfile.osDisk", {})
    managed_disk = os_disk.get("managedDisk") or {}
    security_profile = managed_disk.get("securityProfile") or {}

    storage_account_type = managed_disk.get("storageAccountType")
    disk_size_gb = os_disk.get("diskSizeGB")
    disk_encryption_set_id = _sub_resource_id(managed_disk, "diskEncryptionSet")

    # The managed disk is authoritative for size, SKU and encryption
    if disk is not None:
        storage_account_type = _dig(disk, "sku.name", storage_account_type)
        disk_size_gb = _dig(disk, "properties.diskSizeGB", disk_size_gb)
        disk_encryption_set_id = _dig(
            disk, "properties.encryption.diskEncryptionSetId", disk_encryption_set_id
        )

    flat: dict[str, Any] = {
        "os_disk.caching": os_disk.get("caching"),
        "os_disk.name": os_disk.get("name"),
        "os_disk.storage_account_type": storage_account_type,
        "os_disk.disk_size_gb": disk_size_gb,
        "os_disk.disk_encryption_set_id": disk_encryption_set_id,
        "os_disk.write_accelerator_enabled": bool(os_disk.get("writeAcceleratorEnabled")),
        "os_disk.security_encryption_type": security_profile.get("securityEncryptionType"),
        "os_disk.secure_vm_disk_encryption_set_id": _sub_resource_id(
            security_profile, "diskEncryptionSet"
        ),
    }
    diff_disk_settings = os_disk.get("diffDiskSettings")
    if diff_disk_settings:
        flat["os_disk.diff_disk_settings.option"] = diff_disk_settings.get("option")
        flat["os_disk.diff_disk_settings.placement"] = diff_disk_settings.get("placement")
    return flat


def _flatten_identity(vm: dict[str, Any]) -> dict[str, Any]:
    identity = vm.get("identity")
    if not identity or identity.get("type") in (None, "None"):
        return {"identity.type": None, "identity.identity_ids": []}
    return {
        "identity.type": identity.get("type"),
        "identity.identity_ids": list((identity.get("userAssignedIdentities") or {}).keys()),
    }


def _flatten_patch_settings(windows: dict[str, Any]) -> dict[str, Any]:
    patch_settings = windows.get("patchSettings") or {}
    platform = patch_settings.get("automaticByPlatformSettings") or {}
    return {
        "patch_mode": patch_settings.get("patchMode"),
        "patch_assessment_mode": patch_settings.get("assessmentMode", DEFAULT_PATCH_ASSESSMENT_MODE),
        "hotpatching_enabled": bool(patch_settings.get("enableHotpatching")),
        "bypass_platform_safety_checks_on_user_schedule_enabled": bool(
            platform.get("bypassPlatformSafetyChecksOnUserSchedule")
        ),
        "reboot_setting": platform.get("rebootSetting"),
    }


def _flatten_secrets(os_profile: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {
            "key_vault_id": _sub_resource_id(secret, "sourceVault"),
            "certificate": [
                {"store": cert.get("certificateStore"), "url": cert.get("certificateUrl")}
                for cert in secret.get("vaultCertificates") or []
            ],
        }
        for secret in os_profile.get("secrets") or []
    ]


def _flatten_gallery_applications(properties: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {
            "version_id": app.get("packageReferenceId"),
            "configuration_blob_uri": app.get("configurationReference"),
            "order": app.get("order", 0),
            "tag": app.get("tags"),
        }
        for app in _dig(properties, "applicationProfile.galleryApplications", [])
    ]


def flatten_virtual_machine(
    vm: dict[str, Any],
    identity: ResourceIdentity,
    disk: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Flatten a REST virtual machine document into attribute paths.

    Args:
        vm: Virtual machine as returned by the API (userData expanded).
        identity: Identity the VM was read under.
        disk: The managed OS disk, when it could be read.

    Returns:
        Attribute path to observed value.
    """
    properties = vm.get("properties") or {}
    os_profile = properties.get("osProfile") or {}
    windows = os_profile.get("windowsConfiguration") or {}
    zones = vm.get("zones") or []
    boot_diagnostics = _dig(properties, "diagnosticsProfile.bootDiagnostics", {})
    termination = _dig(properties, "scheduledEventsProfile.terminateNotificationProfile", {})
    nics = _dig(properties, "networkProfile.networkInterfaces", [])
    image_reference = _dig(properties, "storageProfile.imageReference", {})

    flat: dict[str, Any] = {
        "id": vm.get("id") or identity.id,
        "name": vm.get("name") or identity.name,
        "resource_group_name": identity.resource_group,
        "location": vm.get("location"),
        "tags": dict(vm.get("tags") or {}),
        "zone": zones[0] if zones else None,
        "edge_zone": _dig(vm, "extendedLocation.name"),
        "size": _dig(properties, "hardwareProfile.vmSize"),
        "admin_username": os_profile.get("adminUsername"),
        "computer_name": os_profile.get("computerName"),
        "allow_extension_operations": os_profile.get("allowExtensionOperations", True),
        "enable_automatic_updates": windows.get("enableAutomaticUpdates", True),
        "provision_vm_agent": windows.get("provisionVMAgent", True),
        "timezone": windows.get("timeZone"),
        "secret": _flatten_secrets(os_profile),
        "winrm_listener": [
            {"protocol": listener.get("protocol"), "certificate_url": listener.get("certificateUrl")}
            for listener in _dig(windows, "winRM.listeners", [])
        ],
        "license_type": properties.get("licenseType"),
        "priority": properties.get("priority") or DEFAULT_PRIORITY,
        "eviction_policy": properties.get("evictionPolicy"),
        "max_bid_price": float(_dig(properties, "billingProfile.maxPrice", DEFAULT_MAX_BID_PRICE)),
        "extensions_time_budget": properties.get(
            "extensionsTimeBudget", DEFAULT_EXTENSIONS_TIME_BUDGET
        ),
        "network_interface_ids": [nic.get("id") for nic in nics],
        "availability_set_id": _sub_resource_id(properties, "availabilitySet"),
        "proximity_placement_group_id": _sub_resource_id(properties, "proximityPlacementGroup"),
        "virtual_machine_scale_set_id": _sub_resource_id(properties, "virtualMachineScaleSet"),
        "platform_fault_domain": properties.get(
            "platformFaultDomain", DEFAULT_PLATFORM_FAULT_DOMAIN
        ),
        "capacity_reservation_group_id": _sub_resource_id(
            properties, "capacityReservation.capacityReservationGroup"
        ),
        "dedicated_host_id": _sub_resource_id(properties, "host"),
        "dedicated_host_group_id": _sub_resource_id(properties, "hostGroup"),
        "encryption_at_host_enabled": _dig(properties, "securityProfile.encryptionAtHost"),
        "secure_boot_enabled": _dig(properties, "securityProfile.uefiSettings.secureBootEnabled"),
        "vtpm_enabled": _dig(properties, "securityProfile.uefiSettings.vTpmEnabled"),
        "additional_capabilities.ultra_ssd_enabled": bool(
            _dig(properties, "additionalCapabilities.ultraSSDEnabled")
        ),
        "termination_notification.enabled": bool(termination.get("enable", False)),
        "termination_notification.timeout": termination.get(
            "notBeforeTimeout", DEFAULT_TERMINATION_TIMEOUT
        ),
        "user_data": properties.get("userData"),
        "gallery_application": _flatten_gallery_applications(properties),
        "source_image_id": image_reference.get("id"),
    }

    flat["boot_diagnostics.storage_account_uri"] = (
        boot_diagnostics.get("storageUri") if boot_diagnostics.get("enabled") else None
    )

    if not image_reference.get("id"):
        for key in ("publisher", "offer", "sku", "version"):
            flat[f"source_image_reference.{key}"] = image_reference.get(key)

    plan = vm.get("plan")
    if plan:
        for key in ("name", "product", "publisher"):
            flat[f"plan.{key}"] = plan.get(key)

    flat.update(_flatten_patch_settings(windows))
    flat.update(_flatten_identity(vm))
    flat.update(_flatten_os_disk(vm, disk))
    return flat
