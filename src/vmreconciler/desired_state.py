"""Desired-state access and change-set computation.

The engine never reads the pydantic model directly. It goes through a
DesiredStateProvider, which exposes the configuration as dotted attribute
paths (``os_disk.disk_size_gb``) together with the set of paths that changed
since the last observed state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from pydantic import BaseModel

from .classifier import rule_for
from .models import WindowsVirtualMachineSpec, normalize_location

logger = logging.getLogger(__name__)


class DesiredStateProvider(Protocol):
    """Read-only view of the desired configuration and its change set."""

    def changed_paths(self) -> frozenset[str]:
        """Attribute paths whose desired value differs from the observed one."""
        ...

    def get(self, path: str) -> Any:
        """Desired value at a dotted path; None when unset."""
        ...

    def has_value(self, path: str) -> bool:
        """Whether the path is set to something other than empty."""
        ...

    def has_change(self, path: str) -> bool:
        """Whether the path, one of its ancestors or one of its children changed."""
        ...


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    return value


def flatten_attributes(model: BaseModel, prefix: str = "") -> dict[str, Any]:
    """Flatten a model into dotted leaf paths.

    Nested blocks are walked; lists and mappings are leaves. An unset block
    yields a single ``None`` leaf at its own path.
    """
    flat: dict[str, Any] = {}
    for name in type(model).model_fields:
        path = f"{prefix}{name}"
        value = getattr(model, name)
        if isinstance(value, BaseModel):
            flat.update(flatten_attributes(value, prefix=f"{path}."))
        else:
            flat[path] = _plain(value)
    return flat


def _normalize(path: str, value: Any) -> Any:
    rule = rule_for(path)

    if path == "license_type" and value in (None, "", "None"):
        return None

    if path == "location" and isinstance(value, str):
        return normalize_location(value)

    if rule is not None and rule.case_insensitive:
        if isinstance(value, str):
            value = value.lower()
        elif isinstance(value, list):
            value = [item.lower() if isinstance(item, str) else item for item in value]

    if rule is not None and rule.unordered and isinstance(value, list):
        value = sorted(value, key=str)

    return value


class DesiredState:
    """DesiredStateProvider over a WindowsVirtualMachineSpec.

    Args:
        spec: Validated desired configuration.
        changed: Attribute paths that differ from the last observed state.
    """

    def __init__(self, spec: WindowsVirtualMachineSpec, changed: Iterable[str] = ()) -> None:
        self.spec = spec
        self._changed = frozenset(changed)

    def __repr__(self) -> str:
        return f"DesiredState(name={self.spec.name!r}, changed={sorted(self._changed)!r})"

    def changed_paths(self) -> frozenset[str]:
        return self._changed

    def get(self, path: str) -> Any:
        """Return the plain value at a dotted path.

        Raises:
            KeyError: If the path does not name an attribute.
        """
        current: Any = self.spec
        for segment in path.split("."):
            if current is None:
                return None
            if not isinstance(current, BaseModel) or segment not in type(current).model_fields:
                raise KeyError(path)
            current = getattr(current, segment)
        return _plain(current)

    def has_value(self, path: str) -> bool:
        value = self.get(path)
        if value is None:
            return False
        if isinstance(value, (str, list, dict)) and not value:
            return False
        return True

    def has_change(self, path: str) -> bool:
        for changed in self._changed:
            if changed == path:
                return True
            if changed.startswith(f"{path}.") or path.startswith(f"{changed}."):
                return True
        return False

    def with_changes(self, changed: Iterable[str]) -> DesiredState:
        """Same configuration with a different change set."""
        return DesiredState(self.spec, changed)

    @classmethod
    def against_observed(
        cls,
        spec: WindowsVirtualMachineSpec,
        observed: Mapping[str, Any],
    ) -> DesiredState:
        """Compute the change set by comparing desired leaves to observed attributes.

        Desired values that are None express no opinion and are skipped, as
        are attributes the remote API never returns (passwords, custom data).
        Identifiers compare case-insensitively and an empty license type is
        equivalent to ``"None"``.
        """
        changed: set[str] = set()
        for path, desired_value in flatten_attributes(spec).items():
            if desired_value is None or path not in observed:
                continue
            if _normalize(path, desired_value) != _normalize(path, observed[path]):
                changed.add(path)

        logger.debug(
            "Computed change set",
            extra={"vm_name": spec.name, "changed_paths": sorted(changed)},
        )
        return cls(spec, changed)
