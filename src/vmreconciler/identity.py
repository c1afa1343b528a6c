"""Resource identities for virtual machines and their OS disks."""

from __future__ import annotations

import re
from dataclasses import dataclass

VIRTUAL_MACHINE_PROVIDER = "Microsoft.Compute/virtualMachines"
DISK_PROVIDER = "Microsoft.Compute/disks"
DISK_ENCRYPTION_SET_PROVIDER = "Microsoft.Compute/diskEncryptionSets"

# Lock kind tag for virtual machines; keeps same-named resources of other
# kinds from sharing a lock
VIRTUAL_MACHINE_RESOURCE_KIND = "azurerm_virtual_machine"

_RESOURCE_ID_PATTERN = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)"
    r"/resourceGroups/(?P<group>[^/]+)"
    r"/providers/(?P<namespace>[^/]+)/(?P<type>[^/]+)/(?P<name>[^/]+)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ResourceIdentity:
    """Addressing triple for one ARM resource.

    Attributes:
        subscription_id: Subscription containing the resource.
        resource_group: Resource group name.
        name: Resource name.
        provider: Provider namespace and type, e.g. Microsoft.Compute/disks.
    """

    subscription_id: str
    resource_group: str
    name: str
    provider: str = VIRTUAL_MACHINE_PROVIDER

    def __post_init__(self) -> None:
        if not self.subscription_id:
            raise ValueError("subscription_id cannot be empty")
        if not self.resource_group:
            raise ValueError("resource_group cannot be empty")
        if not self.name:
            raise ValueError("name cannot be empty")

    @property
    def id(self) -> str:
        """Full ARM resource ID."""
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/{self.provider}/{self.name}"
        )

    def disk(self, disk_name: str) -> ResourceIdentity:
        """Identity of a managed disk in the same resource group."""
        return ResourceIdentity(
            subscription_id=self.subscription_id,
            resource_group=self.resource_group,
            name=disk_name,
            provider=DISK_PROVIDER,
        )

    @classmethod
    def parse(cls, resource_id: str, provider: str | None = None) -> ResourceIdentity:
        """Parse an ARM resource ID.

        Args:
            resource_id: Full ARM resource ID.
            provider: Expected provider (compared case-insensitively). When
                None any provider is accepted.

        Raises:
            ValueError: If the ID is malformed or of the wrong provider.
        """
        match = _RESOURCE_ID_PATTERN.match(resource_id or "")
        if match is None:
            raise ValueError(f"Invalid resource ID: {resource_id!r}")

        parsed_provider = f"{match.group('namespace')}/{match.group('type')}"
        if provider is not None and parsed_provider.lower() != provider.lower():
            raise ValueError(
                f"Resource ID {resource_id!r} is not a {provider} ID "
                f"(got {parsed_provider})"
            )

        return cls(
            subscription_id=match.group("subscription"),
            resource_group=match.group("group"),
            name=match.group("name"),
            provider=provider or parsed_provider,
        )

    def __str__(self) -> str:
        kind = self.provider.rsplit("/", 1)[-1]
        return f"{kind} {self.name!r} (Resource Group {self.resource_group!r})"
