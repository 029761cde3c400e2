"""
Provider discovery through delegated routers and node DHTs.

Two lookup strategies are shared by the probes and the persistent
listener:

- [fetch_providers_with_fallback][uptimebrotr.probes.routing.fetch_providers_with_fallback]
  tries sources in order and stops at the first success;
- [fetch_providers_fan_out][uptimebrotr.probes.routing.fetch_providers_fan_out]
  queries every source concurrently and merges what came back.

A source URL containing ``api/v0`` is a node RPC endpoint queried with
``routing/findprovs``; anything else is a delegated router answering
``/routing/v1/providers/{cid}``.

[ContentRoutingProbe][uptimebrotr.probes.routing.ContentRoutingProbe]
checks that a router accepts and serves back a provider record, and
[NodeProvidersProbe][uptimebrotr.probes.routing.NodeProvidersProbe] counts
the providers a router knows for an application node's record topic.
"""

from __future__ import annotations

import asyncio
import base64
import secrets
import time
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from uptimebrotr.core.view import peer_key
from uptimebrotr.exceptions import RoutingError, VerificationError
from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.http import excerpt, fetch_json
from uptimebrotr.utils.keys import (
    identity_to_routing_topic,
    public_key_to_address,
    random_peer_id,
    string_to_cid,
    topic_to_routing_key,
)
from uptimebrotr.utils.kubo import KuboClient

from .base import PROBE_ERRORS, BaseProbe, describe_error, elapsed, random_string


if TYPE_CHECKING:
    from collections.abc import Sequence

    import aiohttp

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


RPC_MARKER = "api/v0"
PROVIDERS_PATH = "/routing/v1/providers"
# 24h in nanoseconds, as delegated routers expect
ADVISORY_TTL_NS = 86_400_000_000_000


def _dedupe_providers(providers: list[Any]) -> list[Any]:
    seen: dict[str, Any] = {}
    for provider in providers:
        seen.setdefault(peer_key(provider), provider)
    return list(seen.values())


def parse_providers(document: Any) -> list[Any]:
    """Extract the provider list of a ``/routing/v1/providers`` answer.

    ``null`` or absent ``Providers`` count as zero results.

    Raises:
        VerificationError: If the document is not an object or ``Providers``
            is neither a list nor null.
    """
    if not isinstance(document, dict):
        raise VerificationError(f"unexpected providers response '{excerpt(repr(document))}'")
    providers = document.get("Providers")
    if providers is None:
        return []
    if not isinstance(providers, list):
        raise VerificationError(f"unexpected providers list '{excerpt(repr(providers))}'")
    return providers


async def fetch_providers(
    session: aiohttp.ClientSession,
    source: str,
    cid: str,
    *,
    timeout: float | None = None,  # noqa: ASYNC109
) -> list[Any]:
    """Query one source for the providers of *cid*."""
    source = source.rstrip("/")
    if RPC_MARKER in source:
        return await KuboClient(source, session).find_providers(cid)
    document = await fetch_json(session, f"{source}{PROVIDERS_PATH}/{cid}", timeout=timeout)
    return parse_providers(document)


async def fetch_providers_with_fallback(
    session: aiohttp.ClientSession,
    sources: Sequence[str],
    cid: str,
    *,
    timeout: float | None = None,  # noqa: ASYNC109
) -> list[Any]:
    """Try *sources* in order and return the first successful answer.

    Raises:
        RoutingError: If *sources* is empty.
        Exception: The last source's error if every source failed.
    """
    if not sources:
        raise RoutingError("no routing sources configured")
    for source in sources[:-1]:
        try:
            return await fetch_providers(session, source, cid, timeout=timeout)
        except PROBE_ERRORS:
            continue
    return await fetch_providers(session, sources[-1], cid, timeout=timeout)


async def fetch_providers_fan_out(
    session: aiohttp.ClientSession,
    sources: Sequence[str],
    cid: str,
    *,
    timeout: float | None = None,  # noqa: ASYNC109
) -> list[Any]:
    """Query every source concurrently and merge the answers.

    Providers are deduplicated by ``ID`` (or the string itself). The lookup
    succeeds if at least one source answered, even with zero providers.

    Raises:
        RoutingError: If no source answered; the message joins every
            source's reason with ``", "``.
    """
    if not sources:
        raise RoutingError("no routing sources configured")
    results = await asyncio.gather(
        *(fetch_providers(session, source, cid, timeout=timeout) for source in sources),
        return_exceptions=True,
    )
    merged: list[Any] = []
    errors: list[str] = []
    answered = False
    for source, result in zip(sources, results, strict=True):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            errors.append(f"{source}: {describe_error(result)}")
            continue
        answered = True
        merged.extend(result)
    if not answered:
        raise RoutingError(", ".join(errors))
    return _dedupe_providers(merged)


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class ContentRoutingConfig(BaseModel):
    """Settings of router probes."""

    propagation_delay: float = Field(
        default=10.0, ge=0.0, description="Seconds between the announce and the lookup"
    )
    timeout: float = Field(default=60.0, ge=1.0, description="Timeout of each router request")
    announce_addrs: list[str] = Field(
        default_factory=list,
        description="Multiaddrs announced in the synthetic provider record",
    )


def fake_provider_record(cid: str, peer_id: str, addrs: Sequence[str]) -> dict[str, Any]:
    """Unsigned bitswap provider record announcing *peer_id* for *cid*."""
    return {
        "Providers": [
            {
                "Schema": "bitswap",
                "Protocol": "transport-bitswap",
                "Signature": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
                "Payload": {
                    "Keys": [cid],
                    "Timestamp": int(time.time() * 1000),
                    "AdvisoryTTL": ADVISORY_TTL_NS,
                    "ID": peer_id,
                    "Addrs": list(addrs),
                },
            }
        ]
    }


class ContentRoutingProbe(BaseProbe):
    """Announce a fake provider record to a router and read it back."""

    CATEGORY = TargetCategory.CONTENT_ROUTER
    PROBE = "get_providers_fetch"
    PAYLOAD_DEFAULTS = MappingProxyType({"last_post_providers_fetch_time": 0})

    def __init__(self, ledger: Ledger, config: ContentRoutingConfig | None = None) -> None:
        super().__init__(ledger)
        self._config = config or ContentRoutingConfig()

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        session = self._ledger.session
        url = f"{target.identity}{PROVIDERS_PATH}"
        cid = string_to_cid(random_string(32))
        peer_id = random_peer_id()

        put_start = time.monotonic()
        answer = await fetch_json(
            session,
            url,
            method="PUT",
            payload=fake_provider_record(cid, peer_id, self._config.announce_addrs),
            timeout=self._config.timeout,
        )
        put_time = elapsed(put_start)
        results = answer.get("ProvideResults") if isinstance(answer, dict) else None
        ttl = results[0].get("AdvisoryTTL") if results and isinstance(results[0], dict) else None
        if not isinstance(ttl, int | float) or isinstance(ttl, bool):
            raise VerificationError(f"failed put providers got response '{excerpt(repr(answer))}'")

        await asyncio.sleep(self._config.propagation_delay)

        start = time.monotonic()
        document = await fetch_json(session, f"{url}/{cid}", timeout=self._config.timeout)
        providers = parse_providers(document)
        if not providers or peer_key(providers[0]) != peer_id:
            raise VerificationError(
                f"failed get providers got response '{excerpt(repr(document))}'"
            )
        return ProbeOutcome.ok(
            target.identity,
            self.PROBE,
            elapsed(start),
            payload={"last_post_providers_fetch_time": put_time},
        )


class NodeProvidersProbe(BaseProbe):
    """Count the providers a router knows for one node's record topic.

    Bound to one router; the probed target is the application node.
    """

    CATEGORY = TargetCategory.CONTENT_ROUTER
    PROBE = "node_providers_fetch"
    PAYLOAD_DEFAULTS = MappingProxyType({"last_provider_count": 0})
    PATH_KEY = "node_fetches"

    def __init__(
        self,
        ledger: Ledger,
        router: Target,
        config: ContentRoutingConfig | None = None,
    ) -> None:
        super().__init__(ledger)
        self._router = router
        self._config = config or ContentRoutingConfig()

    def prerequisites(self, target: Target) -> None:
        self.require_public_key(target)

    def state_location(self, target: Target) -> tuple[TargetCategory, str, tuple[str, ...]]:
        return self.CATEGORY, self._router.identity, (self.PATH_KEY, target.identity)

    def labels(self, target: Target) -> tuple[str, ...]:
        return (self._router.identity, target.identity)

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        address = public_key_to_address(self.require_public_key(target))
        cid = topic_to_routing_key(identity_to_routing_topic(address))
        start = time.monotonic()
        providers = await fetch_providers(
            self._ledger.session, self._router.identity, cid, timeout=self._config.timeout
        )
        return ProbeOutcome.ok(
            target.identity,
            self.PROBE,
            elapsed(start),
            payload={"last_provider_count": len(providers)},
        )
