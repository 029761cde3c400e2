"""
Ordered schema migrations for the persisted state document.

Each migration is a pure, idempotent function ``(doc) -> doc`` that may be
run on a document of any prior shape, including one it already migrated.
[apply_migrations][uptimebrotr.core.migrations.apply_migrations] runs all
of them in order and stamps ``schema_version``.

The order mirrors the history of the on-disk format:

```text
1. gateway_history_arrays       array entries become {**last, history}
2. add_content_routers
3. add_previewers
4. drop_gateway_fetch_history   entries still carrying history are dropped
5. add_name_services
6. add_static_pages
7. rename_legacy_categories     camelCase categories to current names
8. add_relays                   every current category exists
```

Note:
    Documents written before migration 7 use camelCase category keys
    (``ipfsGateways``, ``subplebbits``, ...). Migrations 1 to 6 therefore
    look at both the legacy and the current key of the category they touch.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from uptimebrotr.models.constants import TargetCategory


Migration = Callable[[dict[str, Any]], dict[str, Any]]

LEGACY_CATEGORY_KEYS: dict[str, TargetCategory] = {
    "subplebbits": TargetCategory.APPLICATION_NODE,
    "ipfsGateways": TargetCategory.GATEWAY,
    "pubsubProviders": TargetCategory.RELAY,
    "httpRouters": TargetCategory.CONTENT_ROUTER,
    "plebbitPreviewers": TargetCategory.PREVIEWER,
    "chainProviders": TargetCategory.NAME_SERVICE,
    "webpages": TargetCategory.STATIC_PAGE,
}

_HISTORY_KEYS = ("commentFetchHistory", "comment_fetch_history")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _category_keys(category: TargetCategory) -> list[str]:
    keys = [legacy for legacy, current in LEGACY_CATEGORY_KEYS.items() if current is category]
    keys.append(category.value)
    return keys


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _ensure_category(doc: dict[str, Any], category: TargetCategory) -> dict[str, Any]:
    if not any(isinstance(doc.get(key), dict) for key in _category_keys(category)):
        doc[category.value] = {}
    return doc


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


def gateway_history_arrays(doc: dict[str, Any]) -> dict[str, Any]:
    """Turn gateway entries stored as run arrays into the last run plus history."""
    for key in _category_keys(TargetCategory.GATEWAY):
        gateways = doc.get(key)
        if not isinstance(gateways, dict):
            continue
        for url, entry in list(gateways.items()):
            if isinstance(entry, list):
                last = entry[-1] if entry and isinstance(entry[-1], dict) else {}
                gateways[url] = {**last, "comment_fetch_history": entry}
    return doc


def add_content_routers(doc: dict[str, Any]) -> dict[str, Any]:
    return _ensure_category(doc, TargetCategory.CONTENT_ROUTER)


def add_previewers(doc: dict[str, Any]) -> dict[str, Any]:
    return _ensure_category(doc, TargetCategory.PREVIEWER)


def drop_gateway_fetch_history(doc: dict[str, Any]) -> dict[str, Any]:
    """Remove gateway entries still carrying a run history.

    Such entries predate the per-field format and are rebuilt from scratch
    by the next probe run.
    """
    for key in _category_keys(TargetCategory.GATEWAY):
        gateways = doc.get(key)
        if not isinstance(gateways, dict):
            continue
        for url in [
            url
            for url, entry in gateways.items()
            if isinstance(entry, dict) and any(entry.get(h) for h in _HISTORY_KEYS)
        ]:
            del gateways[url]
    return doc


def add_name_services(doc: dict[str, Any]) -> dict[str, Any]:
    return _ensure_category(doc, TargetCategory.NAME_SERVICE)


def add_static_pages(doc: dict[str, Any]) -> dict[str, Any]:
    return _ensure_category(doc, TargetCategory.STATIC_PAGE)


def rename_legacy_categories(doc: dict[str, Any]) -> dict[str, Any]:
    """Move legacy camelCase categories under their current names.

    Entry field names are converted to snake_case. When both the legacy and
    the current category hold the same identity, current fields win.
    """
    for legacy, category in LEGACY_CATEGORY_KEYS.items():
        entries = doc.pop(legacy, None)
        if not isinstance(entries, dict):
            continue
        current = doc.get(category.value)
        if not isinstance(current, dict):
            current = doc[category.value] = {}
        for identity, entry in entries.items():
            if not isinstance(entry, dict):
                continue
            renamed = {_snake_case(k): v for k, v in entry.items()}
            existing = current.get(identity)
            current[identity] = {**renamed, **existing} if isinstance(existing, dict) else renamed
    return doc


def add_relays(doc: dict[str, Any]) -> dict[str, Any]:
    """Ensure every current category key exists."""
    for category in TargetCategory:
        if not isinstance(doc.get(category.value), dict):
            doc[category.value] = {}
    return doc


MIGRATIONS: tuple[Migration, ...] = (
    gateway_history_arrays,
    add_content_routers,
    add_previewers,
    drop_gateway_fetch_history,
    add_name_services,
    add_static_pages,
    rename_legacy_categories,
    add_relays,
)

SCHEMA_VERSION = len(MIGRATIONS)


def apply_migrations(doc: dict[str, Any]) -> dict[str, Any]:
    """Run every migration in order and stamp ``schema_version``.

    Migrations are idempotent, so the full sequence runs regardless of the
    stored version.
    """
    for migration in MIGRATIONS:
        doc = migration(doc)
    doc["schema_version"] = SCHEMA_VERSION
    return doc
