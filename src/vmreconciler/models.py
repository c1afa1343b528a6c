"""Pydantic models for virtual machine desired state with validation.

These models provide:
1. Type-safe YAML parsing
2. Single-attribute validation at the boundary (fail fast, fail loudly)
3. A nested structure the desired-state provider flattens into attribute paths

Constraints spanning several attributes are not checked here; they live in
the classifier's rule table so they can run per operation.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

from .identity import ResourceIdentity

# =============================================================================
# Shared validation helpers
# =============================================================================

ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

WINDOWS_COMPUTER_NAME_MAX_LENGTH = 15
WINDOWS_COMPUTER_NAME_FORBIDDEN = set("`~!@#$%^&*()=+_[]{}\\|;:.'\",<>/?")

# Images which support hotpatching
HOTPATCH_IMAGE_SKUS = frozenset(
    {
        "2022-datacenter-azure-edition-core",
        "2022-datacenter-azure-edition-core-smalldisk",
        "2022-datacenter-azure-edition-hotpatch",
        "2022-datacenter-azure-edition-hotpatch-smalldisk",
    }
)


def iso8601_duration_seconds(value: str) -> int:
    """Convert an ISO-8601 duration such as PT1H30M into seconds.

    Raises:
        ValueError: If the value is not a supported ISO-8601 duration.
    """
    match = ISO8601_DURATION_PATTERN.match(value or "")
    if match is None or value in ("P", "PT"):
        raise ValueError(f"{value!r} is not a valid ISO-8601 duration")
    parts = {k: int(v) if v else 0 for k, v in match.groupdict().items()}
    return parts["days"] * 86400 + parts["hours"] * 3600 + parts["minutes"] * 60 + parts["seconds"]


def _duration_between(value: str, lower: str, upper: str) -> str:
    seconds = iso8601_duration_seconds(value)
    if not (iso8601_duration_seconds(lower) <= seconds <= iso8601_duration_seconds(upper)):
        raise ValueError(f"duration must be between {lower} and {upper}, got {value}")
    return value


def _resource_id_of(value: str, provider: str) -> str:
    ResourceIdentity.parse(value, provider=provider)
    return value


def normalize_location(location: str) -> str:
    """Normalize an Azure region name, so "West Europe" becomes "westeurope"."""
    return location.replace(" ", "").lower()


def windows_computer_name_error(name: str) -> str | None:
    """Return why a name cannot be used as a Windows computer name, if it can't."""
    if not name:
        return "computer name cannot be empty"
    if len(name) > WINDOWS_COMPUTER_NAME_MAX_LENGTH:
        return f"computer name can be at most {WINDOWS_COMPUTER_NAME_MAX_LENGTH} characters"
    if name.isdigit():
        return "computer name cannot contain only numbers"
    if name.startswith("_") or name.endswith((".", "-")):
        return "computer name cannot begin with an underscore or end with a period or hyphen"
    if any(c in WINDOWS_COMPUTER_NAME_FORBIDDEN for c in name):
        return "computer name cannot contain special characters"
    return None


# =============================================================================
# Nested blocks
# =============================================================================


class DiffDiskSettings(BaseModel):
    """Ephemeral OS disk placement."""

    model_config = {"extra": "forbid"}

    option: Literal["Local"]
    placement: Literal["CacheDisk", "ResourceDisk"] = "CacheDisk"


class OSDiskConfig(BaseModel):
    """OS disk configuration.

    disk_size_gb and name are computed remotely when not set.
    """

    model_config = {"extra": "forbid"}

    caching: Literal["None", "ReadOnly", "ReadWrite"]
    storage_account_type: Literal[
        "Premium_LRS", "Standard_LRS", "StandardSSD_LRS", "StandardSSD_ZRS", "Premium_ZRS"
    ]
    diff_disk_settings: DiffDiskSettings | None = None
    disk_encryption_set_id: str | None = None
    disk_size_gb: Annotated[int, Field(ge=0, le=4095)] | None = None
    name: str | None = None
    secure_vm_disk_encryption_set_id: str | None = None
    security_encryption_type: Literal["VMGuestStateOnly", "DiskWithVMGuestState"] | None = None
    write_accelerator_enabled: bool = False

    @field_validator("disk_encryption_set_id", "secure_vm_disk_encryption_set_id")
    @classmethod
    def validate_disk_encryption_set_id(cls, v: str | None) -> str | None:
        if v:
            return _resource_id_of(v, "Microsoft.Compute/diskEncryptionSets")
        return v


class AdditionalCapabilities(BaseModel):
    model_config = {"extra": "forbid"}

    ultra_ssd_enabled: bool = False


class AdditionalUnattendContent(BaseModel):
    model_config = {"extra": "forbid"}

    content: str
    setting: Literal["AutoLogon", "FirstLogonCommands"]


class BootDiagnostics(BaseModel):
    """Boot diagnostics; no storage URI means a managed storage account."""

    model_config = {"extra": "forbid"}

    storage_account_uri: str | None = None


class GalleryApplication(BaseModel):
    model_config = {"extra": "forbid"}

    version_id: str
    configuration_blob_uri: str | None = None
    order: Annotated[int, Field(ge=0, le=2147483647)] = 0
    tag: str | None = None

    @field_validator("configuration_blob_uri")
    @classmethod
    def validate_uri(cls, v: str | None) -> str | None:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("configuration_blob_uri must be an http or https URL")
        return v


class IdentityConfig(BaseModel):
    """Managed identity block."""

    model_config = {"extra": "forbid"}

    type: Literal["SystemAssigned", "UserAssigned", "SystemAssigned, UserAssigned"]
    identity_ids: list[str] = Field(default_factory=list)

    @field_validator("identity_ids")
    @classmethod
    def validate_identity_ids(cls, v: list[str]) -> list[str]:
        for identity_id in v:
            _resource_id_of(identity_id, "Microsoft.ManagedIdentity/userAssignedIdentities")
        return v


class PlanConfig(BaseModel):
    model_config = {"extra": "forbid"}

    name: str
    product: str
    publisher: str


class SecretCertificate(BaseModel):
    model_config = {"extra": "forbid"}

    store: str
    url: str


class SecretConfig(BaseModel):
    """Key Vault certificates installed on the machine."""

    model_config = {"extra": "forbid"}

    key_vault_id: str
    certificate: list[SecretCertificate] = Field(min_length=1)


class SourceImageReference(BaseModel):
    model_config = {"extra": "forbid"}

    publisher: str
    offer: str
    sku: str
    version: str


class TerminationNotification(BaseModel):
    model_config = {"extra": "forbid"}

    enabled: bool
    timeout: str = "PT5M"

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: str) -> str:
        return _duration_between(v, "PT5M", "PT15M")


class WinRMListener(BaseModel):
    model_config = {"extra": "forbid"}

    protocol: Literal["Http", "Https"]
    certificate_url: str | None = None


# =============================================================================
# Virtual machine
# =============================================================================


class WindowsVirtualMachineSpec(BaseModel):
    """Desired state of a Windows virtual machine.

    Booleans typed ``bool | None`` are tri-state: None means "not set", which
    is distinct from an explicit False when building the create payload.
    """

    model_config = {"extra": "forbid"}

    # Required
    name: Annotated[str, Field(min_length=1, max_length=64)]
    resource_group_name: Annotated[str, Field(min_length=1, max_length=90)]
    location: Annotated[str, Field(min_length=1)]
    admin_username: Annotated[str, Field(min_length=1, max_length=20)]
    admin_password: Annotated[str, Field(min_length=8, max_length=123, repr=False)]
    network_interface_ids: list[str] = Field(min_length=1)
    os_disk: OSDiskConfig
    size: Annotated[str, Field(min_length=1)]

    # Optional
    additional_capabilities: AdditionalCapabilities | None = None
    additional_unattend_content: list[AdditionalUnattendContent] = Field(default_factory=list)
    allow_extension_operations: bool = True
    availability_set_id: str | None = None
    boot_diagnostics: BootDiagnostics | None = None
    bypass_platform_safety_checks_on_user_schedule_enabled: bool = False
    capacity_reservation_group_id: str | None = None
    computer_name: str | None = None
    custom_data: str | None = Field(None, repr=False)
    dedicated_host_id: str | None = None
    dedicated_host_group_id: str | None = None
    edge_zone: str | None = None
    enable_automatic_updates: bool = True
    encryption_at_host_enabled: bool | None = None
    eviction_policy: Literal["Deallocate", "Delete"] | None = None
    extensions_time_budget: str = "PT1H30M"
    gallery_application: list[GalleryApplication] = Field(default_factory=list, max_length=100)
    hotpatching_enabled: bool = False
    identity: IdentityConfig | None = None
    license_type: Literal["None", "Windows_Client", "Windows_Server", ""] | None = None
    max_bid_price: Annotated[float, Field(ge=-1.0)] = -1.0
    patch_assessment_mode: Literal["AutomaticByPlatform", "ImageDefault"] = "ImageDefault"
    patch_mode: Literal["AutomaticByOS", "AutomaticByPlatform", "Manual"] = "AutomaticByOS"
    plan: PlanConfig | None = None
    platform_fault_domain: Annotated[int, Field(ge=-1)] = -1
    priority: Literal["Regular", "Spot"] = "Regular"
    provision_vm_agent: bool = True
    proximity_placement_group_id: str | None = None
    reboot_setting: Literal["Always", "IfRequired", "Never"] | None = None
    secret: list[SecretConfig] = Field(default_factory=list)
    secure_boot_enabled: bool | None = None
    source_image_id: str | None = None
    source_image_reference: SourceImageReference | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    termination_notification: TerminationNotification | None = None
    timezone: str | None = None
    user_data: str | None = None
    virtual_machine_scale_set_id: str | None = None
    vtpm_enabled: bool | None = None
    winrm_listener: list[WinRMListener] = Field(default_factory=list)
    zone: str | None = None

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        return normalize_location(v)

    @field_validator("network_interface_ids")
    @classmethod
    def validate_network_interface_ids(cls, v: list[str]) -> list[str]:
        for nic_id in v:
            _resource_id_of(nic_id, "Microsoft.Network/networkInterfaces")
        return v

    @field_validator("extensions_time_budget")
    @classmethod
    def validate_extensions_time_budget(cls, v: str) -> str:
        return _duration_between(v, "PT15M", "PT2H")

    @field_validator("user_data", "custom_data")
    @classmethod
    def validate_base64(cls, v: str | None) -> str | None:
        if v:
            try:
                base64.b64decode(v, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError("must be base64 encoded") from e
        return v

    @field_validator("computer_name")
    @classmethod
    def validate_computer_name(cls, v: str | None) -> str | None:
        if v:
            error = windows_computer_name_error(v)
            if error:
                raise ValueError(error)
        return v

    @field_validator("availability_set_id")
    @classmethod
    def validate_availability_set_id(cls, v: str | None) -> str | None:
        return _resource_id_of(v, "Microsoft.Compute/availabilitySets") if v else v

    @field_validator("capacity_reservation_group_id")
    @classmethod
    def validate_capacity_reservation_group_id(cls, v: str | None) -> str | None:
        return _resource_id_of(v, "Microsoft.Compute/capacityReservationGroups") if v else v

    @field_validator("proximity_placement_group_id")
    @classmethod
    def validate_proximity_placement_group_id(cls, v: str | None) -> str | None:
        return _resource_id_of(v, "Microsoft.Compute/proximityPlacementGroups") if v else v

    @field_validator("virtual_machine_scale_set_id")
    @classmethod
    def validate_virtual_machine_scale_set_id(cls, v: str | None) -> str | None:
        return _resource_id_of(v, "Microsoft.Compute/virtualMachineScaleSets") if v else v

    @field_validator("dedicated_host_group_id")
    @classmethod
    def validate_dedicated_host_group_id(cls, v: str | None) -> str | None:
        return _resource_id_of(v, "Microsoft.Compute/hostGroups") if v else v
