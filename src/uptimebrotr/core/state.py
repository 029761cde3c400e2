"""
In-memory health state store with atomic JSON persistence.

The store holds one document shaped as:

```text
{
  "schema_version": 8,
  "gateway": {
    "https://ipfs.io": {
      "comment_fetch_count": 12,
      "last_comment_fetch_success": true,
      ...
      "snapshot_fetches": {"plebtoken.eth": {...}}
    }
  },
  "application_node": {...},
  ...
}
```

Every update is a read-merge-write on a single target entry (or on a nested
per-target map addressed by ``path``). Merges take no lock: concurrent
writers to the same field race with last-write-wins semantics, which is
acceptable because fields are point-in-time observations. True counters go
through [increment()][uptimebrotr.core.state.StateStore.increment] and never
decrease.

See Also:
    [apply_migrations][uptimebrotr.core.migrations.apply_migrations]: Run
        by [load()][uptimebrotr.core.state.StateStore.load] before the
        document is served.
    [Archiver][uptimebrotr.services.archiver.Archiver]: Calls
        [save()][uptimebrotr.core.state.StateStore.save] periodically.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

from uptimebrotr.exceptions import PersistenceError
from uptimebrotr.models.constants import TargetCategory

from .migrations import SCHEMA_VERSION, apply_migrations


if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


def empty_document() -> dict[str, Any]:
    """Return a fresh document with every category present and empty."""
    doc: dict[str, Any] = {"schema_version": SCHEMA_VERSION}
    for category in TargetCategory:
        doc[category.value] = {}
    return doc


class StateStore:
    """Per-target latest known fields, merged non-destructively.

    The store is an explicitly owned object handed to probes and services
    through the [Ledger][uptimebrotr.core.ledger.Ledger]; nothing accesses
    it as a module global.

    Examples:
        ```python
        store = StateStore()
        store.merge(TargetCategory.GATEWAY, "https://ipfs.io", {"a": 1})
        store.merge(TargetCategory.GATEWAY, "https://ipfs.io", {"b": 2})
        store.get(TargetCategory.GATEWAY, "https://ipfs.io")  # {'a': 1, 'b': 2}
        ```
    """

    def __init__(self, document: Mapping[str, Any] | None = None) -> None:
        self._doc: dict[str, Any] = empty_document()
        if document is not None:
            self._doc = apply_migrations(copy.deepcopy(dict(document)))

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def _find(
        self, category: TargetCategory, identity: str, path: Sequence[str]
    ) -> dict[str, Any] | None:
        node = self._doc.get(category.value)
        for key in (identity, *path):
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node if isinstance(node, dict) else None

    def _ensure(
        self, category: TargetCategory, identity: str, path: Sequence[str]
    ) -> dict[str, Any]:
        node = self._doc.setdefault(category.value, {})
        for key in (identity, *path):
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        return node

    def merge(
        self,
        category: TargetCategory,
        identity: str,
        fields: Mapping[str, Any],
        *,
        path: Sequence[str] = (),
    ) -> None:
        """Shallow-merge *fields* on top of a target's current state.

        New values win; fields absent from *fields* keep their value.

        Args:
            category: Target category.
            identity: Target identity.
            fields: Fields to write.
            path: Keys of a nested per-target map, e.g.
                ``("snapshot_fetches", node_address)``.
        """
        entry = self._ensure(category, identity, path)
        entry.update(fields)

    def increment(
        self,
        category: TargetCategory,
        identity: str,
        field: str,
        amount: int = 1,
        *,
        path: Sequence[str] = (),
    ) -> int:
        """Increase a counter field by *amount* and return the new value.

        Raises:
            ValueError: If *amount* is negative.
        """
        if amount < 0:
            raise ValueError(f"counters never decrease, got amount={amount}")
        entry = self._ensure(category, identity, path)
        current = entry.get(field)
        value = (current if isinstance(current, int) else 0) + amount
        entry[field] = value
        return value

    def get(
        self,
        category: TargetCategory,
        identity: str,
        *,
        path: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Return a copy of a target's fields (empty if unknown)."""
        entry = self._find(category, identity, path)
        return copy.deepcopy(entry) if entry is not None else {}

    def category(self, category: TargetCategory) -> dict[str, Any]:
        """Return a copy of every target entry of *category*."""
        return copy.deepcopy(self._doc.get(category.value, {}))

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the whole document."""
        return copy.deepcopy(self._doc)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> StateStore:
        """Load a store from *path*, migrating the document.

        A missing file yields an empty store.

        Raises:
            PersistenceError: If the file cannot be read or is not a JSON
                object. Callers log it and continue with an empty store.
        """
        file = Path(path)
        if not file.exists():
            return cls()
        try:
            data = json.loads(file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"failed reading state file '{file}': {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(
                f"state file '{file}' must contain an object, got {type(data).__name__}"
            )
        return cls(data)

    def save(self, path: str | Path) -> None:
        """Write the document atomically to *path*.

        The JSON is written to a temporary file in the same directory then
        moved over the destination with ``os.replace``, so readers only ever
        see a complete document.

        Raises:
            PersistenceError: If the write fails.
        """
        file = Path(path)
        payload = json.dumps(self._doc, separators=(",", ":"), default=str)
        tmp_name: str | None = None
        try:
            file.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=file.parent,
                prefix=f".{file.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
            os.replace(tmp_name, file)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PersistenceError(f"failed writing state file '{file}': {e}") from e
