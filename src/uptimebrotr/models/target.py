"""Monitored endpoint model.

A [Target][uptimebrotr.models.target.Target] is created either from the
service configuration (gateways, routers, relays, resolvers, pages) or from
a descriptor document refreshed by the
[TargetRegistry][uptimebrotr.core.registry.TargetRegistry]. It is
immutable for the duration of a probe cycle.

See Also:
    [TargetCategory][uptimebrotr.models.constants.TargetCategory]: The
        category enum.
    [ProbeOutcome][uptimebrotr.models.outcome.ProbeOutcome]: The result of
        probing a target.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ._validation import (
    deep_freeze,
    thaw,
    validate_instance,
    validate_mapping,
    validate_str_not_empty,
)
from .constants import TargetCategory


if TYPE_CHECKING:
    from collections.abc import Mapping


_IDENTITY_KEYS = ("address", "identity", "url", "name")


@dataclass(frozen=True, slots=True)
class Target:
    """A monitored external endpoint or network identity.

    Attributes:
        identity: URL, network address, or symbolic name. Unique within a
            category; trailing slashes are removed from URLs.
        category: The endpoint [TargetCategory][uptimebrotr.models.constants.TargetCategory].
        metadata: Category-specific, deep-frozen metadata (expected public
            key, regex pattern, record name, ...).

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If ``identity`` is empty or contains null bytes.

    Examples:
        ```python
        gateway = Target("https://ipfs.io/", TargetCategory.GATEWAY)
        gateway.identity  # 'https://ipfs.io'

        node = Target.from_descriptor(
            {"address": "plebtoken.eth", "tags": ["crypto"]},
            TargetCategory.APPLICATION_NODE,
        )
        node.metadata["tags"]  # ('crypto',)
        ```
    """

    identity: str
    category: TargetCategory
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        validate_str_not_empty(self.identity, "identity")
        validate_instance(self.category, TargetCategory, "category")
        validate_mapping(self.metadata, "metadata")
        identity = self.identity.strip()
        if "://" in identity:
            identity = identity.rstrip("/")
        object.__setattr__(self, "identity", identity)
        object.__setattr__(self, "metadata", deep_freeze(self.metadata))

    def get(self, key: str, default: Any = None) -> Any:
        """Return a metadata value, or *default* if the key is absent."""
        return self.metadata.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "identity": self.identity,
            "category": self.category.value,
            "metadata": thaw(self.metadata),
        }

    @classmethod
    def from_descriptor(cls, descriptor: Mapping[str, Any], category: TargetCategory) -> Target:
        """Build a target from a descriptor document entry.

        The identity is taken from the first present key among
        ``address``, ``identity``, ``url`` and ``name``; every other key
        becomes metadata.

        Raises:
            TypeError: If *descriptor* is not a mapping.
            ValueError: If no identity key is present.
        """
        validate_mapping(descriptor, "descriptor")
        for key in _IDENTITY_KEYS:
            value = descriptor.get(key)
            if isinstance(value, str) and value.strip():
                metadata = {k: v for k, v in descriptor.items() if k != key}
                return cls(identity=value, category=category, metadata=metadata)
        raise ValueError(f"descriptor has no identity: {dict(descriptor)!r}")
