"""
Target registry: the current set of monitored endpoints per category.

Static categories (gateways, routers, relays, resolvers, pages, previewers)
are seeded from configuration. Application nodes come from descriptor
documents, JSON objects with a list of descriptors under ``list_key``:

```json
{"subplebbits": [{"address": "plebtoken.eth"}, {"address": "12D3KooW..."}]}
```

A source starting with ``http`` is fetched over HTTP; anything else is read
as a local file. Sources are fetched concurrently. A document that does not
match the expected shape is rejected wholesale, logged and skipped; the
refresh succeeds as long as one source does.

Each category's targets are held as a tuple and replaced in one assignment,
so readers iterating a tuple obtained from
[targets()][uptimebrotr.core.registry.TargetRegistry.targets] never observe
a partial update.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import BaseModel, Field, model_validator

from uptimebrotr.exceptions import ConnectivityError, RegistryError
from uptimebrotr.models import Target, TargetCategory
from uptimebrotr.utils.http import excerpt, fetch_json

from .logger import Logger


if TYPE_CHECKING:
    from collections.abc import Callable


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RegistryConfig(BaseModel):
    """Where targets come from.

    Attributes:
        sources: Descriptor document URLs or file paths, in priority order.
        list_key: Key of the descriptor list inside each document.
        refresh_interval: Seconds between steady-state refreshes.
        retry_interval: Seconds between attempts until the first success.
        timeout: Per-source fetch timeout in seconds.
        targets: Static targets per category. Each item is an identity
            string or a descriptor mapping (identity under ``url``,
            ``address``, ``identity`` or ``name``; other keys are metadata).
    """

    sources: list[str] = Field(default_factory=list, description="Descriptor sources")
    list_key: str = Field(default="subplebbits", min_length=1)
    refresh_interval: float = Field(default=3600.0, ge=60.0, description="Refresh interval")
    retry_interval: float = Field(default=10.0, ge=0.1, description="Startup retry interval")
    timeout: float = Field(default=60.0, ge=0.1, description="Fetch timeout")
    targets: dict[TargetCategory, list[str | dict[str, Any]]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_targets(self) -> RegistryConfig:
        if TargetCategory.APPLICATION_NODE in self.targets:
            raise ValueError("application_node targets come from sources, not static targets")
        for category, items in self.targets.items():
            for item in items:
                _build_target(item, category)
        return self


def _build_target(item: str | dict[str, Any], category: TargetCategory) -> Target:
    if isinstance(item, str):
        return Target(identity=item, category=category)
    return Target.from_descriptor(item, category)


def _dedupe(targets: list[Target]) -> tuple[Target, ...]:
    seen: dict[str, Target] = {}
    for target in targets:
        seen.setdefault(target.identity, target)
    return tuple(seen.values())


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TargetRegistry:
    """Owns the ordered, deduplicated target tuple of every category.

    Args:
        config: Registry configuration.
        session: HTTP session used for ``http`` sources. May be assigned
            later (the [Ledger][uptimebrotr.core.ledger.Ledger] does so when
            it opens its session).
    """

    def __init__(
        self,
        config: RegistryConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config or RegistryConfig()
        self.session = session
        self._logger = Logger("registry")
        self._targets: dict[TargetCategory, tuple[Target, ...]] = {
            category: () for category in TargetCategory
        }
        for category, items in self._config.targets.items():
            self._targets[category] = _dedupe([_build_target(i, category) for i in items])
        self._ready = not self._config.sources
        self._refresh_count = 0
        # Last good node list of each source, kept across failed fetches
        self._source_results: dict[str, list[Target]] = {}

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def ready(self) -> bool:
        """True once the first refresh succeeded (or no sources are configured)."""
        return self._ready

    @property
    def refresh_count(self) -> int:
        """Number of successful refreshes."""
        return self._refresh_count

    def targets(self, category: TargetCategory) -> tuple[Target, ...]:
        """Return the current targets of *category* (a read-only snapshot)."""
        return self._targets[category]

    def get(self, category: TargetCategory, identity: str) -> Target | None:
        for target in self._targets[category]:
            if target.identity == identity:
                return target
        return None

    def set_targets(self, category: TargetCategory, targets: list[Target]) -> None:
        """Replace a category's targets, deduplicated with first-seen winning."""
        self._targets[category] = _dedupe(targets)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def _read_source(self, source: str) -> Any:
        if not source.startswith("http"):
            try:
                text = await asyncio.to_thread(Path(source).read_text, encoding="utf-8")
                return json.loads(text)
            except (OSError, ValueError) as e:
                raise RegistryError(f"failed reading descriptor file '{source}': {e}") from e
        if self.session is None:
            raise RegistryError(f"no HTTP session to fetch '{source}'")
        self._logger.debug("source_fetching", source=source)
        try:
            return await fetch_json(self.session, source, timeout=self._config.timeout)
        except (aiohttp.ClientError, ConnectivityError, OSError, ValueError, TimeoutError) as e:
            raise RegistryError(f"failed fetching descriptor list from '{source}': {e}") from e

    async def fetch_source(self, source: str) -> list[Target]:
        """Fetch one descriptor document and return its node targets.

        Raises:
            RegistryError: If the source is unreachable or the document is
                malformed (the whole document is rejected).
        """
        document = await self._read_source(source)
        descriptors = document.get(self._config.list_key) if isinstance(document, dict) else None
        if not isinstance(descriptors, list):
            raise RegistryError(
                f"failed fetching descriptor list from '{source}' got response "
                f"'{excerpt(json.dumps(document, default=str))}'"
            )
        try:
            return [
                Target.from_descriptor(descriptor, TargetCategory.APPLICATION_NODE)
                for descriptor in descriptors
            ]
        except (TypeError, ValueError) as e:
            raise RegistryError(f"invalid descriptor in '{source}': {e}") from e

    async def refresh(self) -> int:
        """Fetch every source and publish the merged application nodes.

        A source that fails keeps contributing the nodes of its last good
        document, so one unreachable source never drops its nodes.

        Returns:
            Number of application nodes published.

        Raises:
            RegistryError: If every source failed, or the merge is empty;
                the previous set is kept.
        """
        sources = self._config.sources
        if not sources:
            self._ready = True
            return len(self._targets[TargetCategory.APPLICATION_NODE])

        results = await asyncio.gather(
            *(self.fetch_source(source) for source in sources),
            return_exceptions=True,
        )

        errors: list[str] = []
        succeeded = 0
        for source, result in zip(sources, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self._logger.warning("source_failed", source=source, error=str(result))
                errors.append(str(result))
                continue
            succeeded += 1
            self._source_results[source] = result

        if not succeeded:
            raise RegistryError(f"all descriptor sources failed: {', '.join(errors)}")

        merged = [
            target for source in sources for target in self._source_results.get(source, [])
        ]
        if not merged:
            raise RegistryError("descriptor sources returned no nodes")

        self.set_targets(TargetCategory.APPLICATION_NODE, merged)
        self._refresh_count += 1
        self._ready = True
        count = len(self._targets[TargetCategory.APPLICATION_NODE])
        self._logger.info(
            "registry_refreshed",
            nodes=count,
            sources_ok=succeeded,
            sources_failed=len(errors),
        )
        return count

    async def wait_until_ready(
        self,
        retry_interval: float | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> bool:
        """Refresh until the first success.

        Args:
            retry_interval: Seconds between attempts; defaults to the
                configured ``retry_interval``.
            should_stop: Polled between attempts; returning True aborts.

        Returns:
            True if the registry is ready, False if aborted.
        """
        interval = self._config.retry_interval if retry_interval is None else retry_interval
        while not self._ready:
            try:
                await self.refresh()
            except RegistryError as e:
                self._logger.warning("registry_not_ready", error=str(e), retry_in=interval)
            if self._ready:
                break
            if should_stop is not None and should_stop():
                return False
            await asyncio.sleep(interval)
        return True
