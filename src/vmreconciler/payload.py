"""Request bodies for the virtual machine API.

Payloads are plain dicts in the REST (camelCase) shape the compute API
documents; the client adapter turns them into SDK models. The update payload
only carries changed attributes and is built by walking the change set
through per-attribute expanders.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .classifier import resolve_rules
from .desired_state import DesiredStateProvider

logger = logging.getLogger(__name__)


class UpdatePayload:
    """Nested partial-update body built incrementally."""

    def __init__(self) -> None:
        self.body: dict[str, Any] = {}

    def __bool__(self) -> bool:
        return bool(self.body)

    def __repr__(self) -> str:
        return f"UpdatePayload({self.body!r})"

    def ensure(self, path: str) -> dict[str, Any]:
        """Return the nested object at a dotted path, creating it as needed."""
        current = self.body
        for key in path.split("."):
            current = current.setdefault(key, {})
        return current

    def set(self, path: str, value: Any) -> None:
        """Set a value at a dotted path."""
        parent, _, key = path.rpartition(".")
        target = self.ensure(parent) if parent else self.body
        target[key] = value

    def to_dict(self) -> dict[str, Any]:
        return self.body


# =============================================================================
# Block builders shared by create and update
# =============================================================================


def _sub_resource(resource_id: str | None) -> dict[str, Any]:
    return {"id": resource_id or None}


def _boot_diagnostics(state: DesiredStateProvider) -> dict[str, Any]:
    if state.get("boot_diagnostics") is None:
        return {"bootDiagnostics": {"enabled": False}}
    return {
        "bootDiagnostics": {
            "enabled": True,
            "storageUri": state.get("boot_diagnostics.storage_account_uri") or None,
        }
    }


def _secrets(state: DesiredStateProvider) -> list[dict[str, Any]]:
    return [
        {
            "sourceVault": {"id": secret["key_vault_id"]},
            "vaultCertificates": [
                {"certificateUrl": cert["url"], "certificateStore": cert["store"]}
                for cert in secret["certificate"]
            ],
        }
        for secret in state.get("secret") or []
    ]


def _identity(state: DesiredStateProvider) -> dict[str, Any]:
    identity = state.get("identity")
    if identity is None:
        return {"type": "None"}
    body: dict[str, Any] = {"type": identity["type"]}
    if identity["identity_ids"]:
        body["userAssignedIdentities"] = {
            identity_id: {} for identity_id in identity["identity_ids"]
        }
    return body


def _patch_settings(state: DesiredStateProvider) -> dict[str, Any]:
    patch_mode = state.get("patch_mode")
    settings: dict[str, Any] = {
        "patchMode": patch_mode,
        "assessmentMode": state.get("patch_assessment_mode"),
        "enableHotpatching": bool(state.get("hotpatching_enabled")),
    }
    if patch_mode == "AutomaticByPlatform":
        platform: dict[str, Any] = {
            "bypassPlatformSafetyChecksOnUserSchedule": bool(
                state.get("bypass_platform_safety_checks_on_user_schedule_enabled")
            ),
        }
        if state.has_value("reboot_setting"):
            platform["rebootSetting"] = state.get("reboot_setting")
        settings["automaticByPlatformSettings"] = platform
    return settings


def _gallery_applications(state: DesiredStateProvider) -> list[dict[str, Any]]:
    applications = []
    for app in state.get("gallery_application") or []:
        reference: dict[str, Any] = {"packageReferenceId": app["version_id"], "order": app["order"]}
        if app["configuration_blob_uri"]:
            reference["configurationReference"] = app["configuration_blob_uri"]
        if app["tag"]:
            reference["tags"] = app["tag"]
        applications.append(reference)
    return applications


def _termination_notification(state: DesiredStateProvider) -> dict[str, Any]:
    notification = state.get("termination_notification")
    if notification is None:
        return {"terminateNotificationProfile": {"enable": False}}
    return {
        "terminateNotificationProfile": {
            "enable": notification["enabled"],
            "notBeforeTimeout": notification["timeout"],
        }
    }


def _network_interfaces(state: DesiredStateProvider) -> list[dict[str, Any]]:
    # The first interface is the primary one
    return [
        {"id": nic_id, "properties": {"primary": index == 0}}
        for index, nic_id in enumerate(state.get("network_interface_ids") or [])
    ]


# =============================================================================
# Update expanders
# =============================================================================

Expander = Callable[[DesiredStateProvider, UpdatePayload], None]


def _expand_tags(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("tags", state.get("tags") or {})


def _expand_boot_diagnostics(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.diagnosticsProfile", _boot_diagnostics(state))


def _expand_secrets(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.osProfile.secrets", _secrets(state))


def _expand_identity(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("identity", _identity(state))


def _expand_allow_extension_operations(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.osProfile.allowExtensionOperations",
        bool(state.get("allow_extension_operations")),
    )


def _expand_patch_settings(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.osProfile.windowsConfiguration.patchSettings",
        _patch_settings(state),
    )


def _expand_extensions_time_budget(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.extensionsTimeBudget", state.get("extensions_time_budget"))


def _expand_gallery_applications(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.applicationProfile.galleryApplications",
        _gallery_applications(state),
    )


def _expand_termination_notification(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.scheduledEventsProfile", _termination_notification(state))


def _expand_license_type(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    # The API accepts an empty license type on create but rejects it on update
    payload.set("properties.licenseType", state.get("license_type") or "None")


def _expand_user_data(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.userData", state.get("user_data") or "")


def _expand_capacity_reservation(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.capacityReservation.capacityReservationGroup",
        _sub_resource(state.get("capacity_reservation_group_id")),
    )


def _expand_dedicated_host(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.host", _sub_resource(state.get("dedicated_host_id")))


def _expand_dedicated_host_group(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.hostGroup", _sub_resource(state.get("dedicated_host_group_id")))


def _expand_encryption_at_host(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.securityProfile.encryptionAtHost",
        bool(state.get("encryption_at_host_enabled")),
    )


def _expand_max_bid_price(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.billingProfile.maxPrice", state.get("max_bid_price"))


def _expand_network_interfaces(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.networkProfile.networkInterfaces", _network_interfaces(state))


def _expand_proximity_placement_group(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.proximityPlacementGroup",
        _sub_resource(state.get("proximity_placement_group_id")),
    )


def _expand_additional_capabilities(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set(
        "properties.additionalCapabilities.ultraSSDEnabled",
        bool(state.get("additional_capabilities.ultra_ssd_enabled")),
    )


def _expand_os_disk(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    # Size and encryption set go through the disk API as deferred operations
    os_disk = payload.ensure("properties.storageProfile.osDisk")
    os_disk["caching"] = state.get("os_disk.caching")
    os_disk["writeAcceleratorEnabled"] = bool(state.get("os_disk.write_accelerator_enabled"))


def _expand_size(state: DesiredStateProvider, payload: UpdatePayload) -> None:
    payload.set("properties.hardwareProfile.vmSize", state.get("size"))


UPDATE_EXPANDERS: dict[str, Expander] = {
    "tags": _expand_tags,
    "boot_diagnostics": _expand_boot_diagnostics,
    "secret": _expand_secrets,
    "identity": _expand_identity,
    "identity.identity_ids": _expand_identity,
    "allow_extension_operations": _expand_allow_extension_operations,
    "patch_mode": _expand_patch_settings,
    "patch_assessment_mode": _expand_patch_settings,
    "bypass_platform_safety_checks_on_user_schedule_enabled": _expand_patch_settings,
    "reboot_setting": _expand_patch_settings,
    "hotpatching_enabled": _expand_patch_settings,
    "extensions_time_budget": _expand_extensions_time_budget,
    "gallery_application": _expand_gallery_applications,
    "termination_notification": _expand_termination_notification,
    "license_type": _expand_license_type,
    "user_data": _expand_user_data,
    "capacity_reservation_group_id": _expand_capacity_reservation,
    "dedicated_host_id": _expand_dedicated_host,
    "dedicated_host_group_id": _expand_dedicated_host_group,
    "encryption_at_host_enabled": _expand_encryption_at_host,
    "max_bid_price": _expand_max_bid_price,
    "network_interface_ids": _expand_network_interfaces,
    "proximity_placement_group_id": _expand_proximity_placement_group,
    "additional_capabilities": _expand_additional_capabilities,
    "additional_capabilities.ultra_ssd_enabled": _expand_additional_capabilities,
    "os_disk": _expand_os_disk,
    "os_disk.caching": _expand_os_disk,
    "os_disk.write_accelerator_enabled": _expand_os_disk,
    "size": _expand_size,
}


def build_update_payload(state: DesiredStateProvider) -> UpdatePayload:
    """Build the partial update body for the changed attributes.

    Each expander runs at most once, however many of its paths changed.
    Paths handled by deferred disk operations contribute nothing here, so a
    change set made only of those yields an empty payload.
    """
    payload = UpdatePayload()
    applied: set[Expander] = set()

    for path in sorted(state.changed_paths()):
        for rule in resolve_rules(path):
            expander = UPDATE_EXPANDERS.get(rule.path)
            if expander is None or expander in applied:
                continue
            expander(state, payload)
            applied.add(expander)

    return payload


# =============================================================================
# Create payload
# =============================================================================


def _os_disk(state: DesiredStateProvider) -> dict[str, Any]:
    managed_disk: dict[str, Any] = {"storageAccountType": state.get("os_disk.storage_account_type")}
    if state.has_value("os_disk.disk_encryption_set_id"):
        managed_disk["diskEncryptionSet"] = {"id": state.get("os_disk.disk_encryption_set_id")}
    if state.has_value("os_disk.security_encryption_type"):
        security_profile: dict[str, Any] = {
            "securityEncryptionType": state.get("os_disk.security_encryption_type"),
        }
        if state.has_value("os_disk.secure_vm_disk_encryption_set_id"):
            security_profile["diskEncryptionSet"] = {
                "id": state.get("os_disk.secure_vm_disk_encryption_set_id")
            }
        managed_disk["securityProfile"] = security_profile

    os_disk: dict[str, Any] = {
        "createOption": "FromImage",
        "osType": "Windows",
        "caching": state.get("os_disk.caching"),
        "writeAcceleratorEnabled": bool(state.get("os_disk.write_accelerator_enabled")),
        "managedDisk": managed_disk,
    }
    if state.has_value("os_disk.diff_disk_settings"):
        os_disk["diffDiskSettings"] = {
            "option": state.get("os_disk.diff_disk_settings.option"),
            "placement": state.get("os_disk.diff_disk_settings.placement"),
        }
    if state.has_value("os_disk.name"):
        os_disk["name"] = state.get("os_disk.name")
    if state.get("os_disk.disk_size_gb"):
        os_disk["diskSizeGB"] = state.get("os_disk.disk_size_gb")
    return os_disk


def _image_reference(state: DesiredStateProvider) -> dict[str, Any]:
    if state.has_value("source_image_id"):
        return {"id": state.get("source_image_id")}
    reference = state.get("source_image_reference") or {}
    return {
        "publisher": reference.get("publisher"),
        "offer": reference.get("offer"),
        "sku": reference.get("sku"),
        "version": reference.get("version"),
    }


def _windows_configuration(state: DesiredStateProvider) -> dict[str, Any]:
    configuration: dict[str, Any] = {
        "provisionVMAgent": bool(state.get("provision_vm_agent")),
        "enableAutomaticUpdates": bool(state.get("enable_automatic_updates")),
        "patchSettings": _patch_settings(state),
    }
    if state.has_value("timezone"):
        configuration["timeZone"] = state.get("timezone")
    if state.has_value("winrm_listener"):
        configuration["winRM"] = {
            "listeners": [
                {
                    "protocol": listener["protocol"],
                    **(
                        {"certificateUrl": listener["certificate_url"]}
                        if listener["certificate_url"]
                        else {}
                    ),
                }
                for listener in state.get("winrm_listener")
            ]
        }
    if state.has_value("additional_unattend_content"):
        configuration["additionalUnattendContent"] = [
            {
                "passName": "OobeSystem",
                "componentName": "Microsoft-Windows-Shell-Setup",
                "settingName": content["setting"],
                "content": content["content"],
            }
            for content in state.get("additional_unattend_content")
        ]
    return configuration


def _security_profile(state: DesiredStateProvider) -> dict[str, Any]:
    profile: dict[str, Any] = {}
    if state.get("encryption_at_host_enabled") is not None:
        profile["encryptionAtHost"] = state.get("encryption_at_host_enabled")

    uefi: dict[str, Any] = {}
    if state.get("secure_boot_enabled") is not None:
        uefi["secureBootEnabled"] = state.get("secure_boot_enabled")
    if state.get("vtpm_enabled") is not None:
        uefi["vTpmEnabled"] = state.get("vtpm_enabled")

    if state.has_value("os_disk.security_encryption_type"):
        profile["securityType"] = "ConfidentialVM"
        profile["uefiSettings"] = uefi
    elif state.get("secure_boot_enabled") or state.get("vtpm_enabled"):
        profile["securityType"] = "TrustedLaunch"
        profile["uefiSettings"] = uefi
    elif uefi:
        profile["uefiSettings"] = uefi
    return profile


def build_create_payload(state: DesiredStateProvider) -> dict[str, Any]:
    """Build the full create body for a new virtual machine.

    Tri-state booleans are only sent when explicitly set.
    """
    os_profile: dict[str, Any] = {
        "adminUsername": state.get("admin_username"),
        "adminPassword": state.get("admin_password"),
        "computerName": state.get("computer_name") or state.get("name"),
        "allowExtensionOperations": bool(state.get("allow_extension_operations")),
        "windowsConfiguration": _windows_configuration(state),
        "secrets": _secrets(state),
    }
    if state.has_value("custom_data"):
        os_profile["customData"] = state.get("custom_data")

    properties: dict[str, Any] = {
        "hardwareProfile": {"vmSize": state.get("size")},
        "osProfile": os_profile,
        "networkProfile": {"networkInterfaces": _network_interfaces(state)},
        "storageProfile": {
            "imageReference": _image_reference(state),
            "osDisk": _os_disk(state),
            "dataDisks": [],
        },
        "diagnosticsProfile": _boot_diagnostics(state),
        "extensionsTimeBudget": state.get("extensions_time_budget"),
        "priority": state.get("priority"),
    }

    if state.has_value("additional_capabilities"):
        properties["additionalCapabilities"] = {
            "ultraSSDEnabled": bool(state.get("additional_capabilities.ultra_ssd_enabled"))
        }
    if state.get("priority") == "Spot":
        properties["evictionPolicy"] = state.get("eviction_policy")
        properties["billingProfile"] = {"maxPrice": state.get("max_bid_price")}
    if state.has_value("license_type"):
        properties["licenseType"] = state.get("license_type")
    if state.get("platform_fault_domain") not in (None, -1):
        properties["platformFaultDomain"] = state.get("platform_fault_domain")
    if state.has_value("user_data"):
        properties["userData"] = state.get("user_data")
    if state.has_value("gallery_application"):
        properties["applicationProfile"] = {"galleryApplications": _gallery_applications(state)}
    if state.has_value("termination_notification"):
        properties["scheduledEventsProfile"] = _termination_notification(state)

    security_profile = _security_profile(state)
    if security_profile:
        properties["securityProfile"] = security_profile

    sub_resources = {
        "availability_set_id": "availabilitySet",
        "proximity_placement_group_id": "proximityPlacementGroup",
        "virtual_machine_scale_set_id": "virtualMachineScaleSet",
        "dedicated_host_id": "host",
        "dedicated_host_group_id": "hostGroup",
    }
    for path, key in sub_resources.items():
        if state.has_value(path):
            properties[key] = {"id": state.get(path)}
    if state.has_value("capacity_reservation_group_id"):
        properties["capacityReservation"] = {
            "capacityReservationGroup": {"id": state.get("capacity_reservation_group_id")}
        }

    body: dict[str, Any] = {
        "location": state.get("location"),
        "tags": state.get("tags") or {},
        "properties": properties,
    }
    if state.has_value("zone"):
        body["zones"] = [state.get("zone")]
    if state.has_value("edge_zone"):
        body["extendedLocation"] = {"name": state.get("edge_zone"), "type": "EdgeZone"}
    if state.has_value("identity"):
        body["identity"] = _identity(state)
    if state.has_value("plan"):
        plan = state.get("plan")
        body["plan"] = {
            "name": plan["name"],
            "product": plan["product"],
            "publisher": plan["publisher"],
        }
    return body
