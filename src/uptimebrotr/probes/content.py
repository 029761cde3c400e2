"""
Content storage and gateway round trip.

A synthetic comment is written through the reference node, then fetched
back through the gateway under test by its content identifier. The run
only succeeds once the fetched document's distinguishing field equals the
one written in the same run; the content is unpinned afterwards whatever
the outcome.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import VerificationError
from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.http import excerpt, fetch_json
from uptimebrotr.utils.kubo import KuboClient

from .base import BaseProbe, elapsed, fetch_with_retries, random_string


if TYPE_CHECKING:
    from collections.abc import Callable

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


class ContentRoundTripConfig(BaseModel):
    """Timings of the write-then-fetch round trip."""

    propagation_delay: float = Field(
        default=10.0, ge=0.0, description="Seconds between the write and the first fetch"
    )
    retries: int = Field(default=3, ge=0, le=20, description="Fetch retries after the first try")
    add_timeout: float = Field(default=60.0, ge=1.0, description="Timeout of the content write")
    fetch_timeout: float = Field(default=60.0, ge=1.0, description="Timeout of each fetch try")


def synthetic_comment() -> dict[str, Any]:
    """Random comment-shaped document; ``author.address`` distinguishes it."""
    return {
        "author": {"address": random_string()},
        "signature": {"signature": random_string(), "publicKey": random_string()},
        "title": random_string(),
        "content": random_string(),
    }


def lookup_field(document: Any, dotted: str) -> Any:
    """Return ``document[a][b]`` for ``"a.b"``, or ``None`` when any step is missing."""
    value = document
    for key in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


class ContentRoundTripProbe(BaseProbe):
    """Write through the reference node, read back through a gateway.

    Args:
        ledger: Shared ledger (session, state, metrics).
        kubo: Write-capable node the content is added to.
        config: Round trip timings.
        payload_factory: Builds the document written each run.
        match_field: Dotted path of the field compared after the fetch.
    """

    CATEGORY = TargetCategory.GATEWAY
    PROBE = "comment_fetch"

    def __init__(
        self,
        ledger: Ledger,
        kubo: KuboClient,
        config: ContentRoundTripConfig | None = None,
        *,
        payload_factory: Callable[[], dict[str, Any]] = synthetic_comment,
        match_field: str = "author.address",
    ) -> None:
        super().__init__(ledger)
        self._kubo = kubo
        self._config = config or ContentRoundTripConfig()
        self._payload_factory = payload_factory
        self._match_field = match_field

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        payload = self._payload_factory()
        expected = lookup_field(payload, self._match_field)

        async with asyncio.timeout(self._config.add_timeout):
            cid = await self._kubo.add(json.dumps(payload).encode("utf-8"))
        try:
            await asyncio.sleep(self._config.propagation_delay)

            url = f"{target.identity}/ipfs/{cid}"
            start = time.monotonic()

            async def fetch() -> Any:
                document = await fetch_json(
                    self._ledger.session,
                    url,
                    max_size=self._ledger.config.http.max_response_size,
                    timeout=self._config.fetch_timeout,
                )
                if lookup_field(document, self._match_field) != expected:
                    raise VerificationError(
                        f"failed fetching got response '{excerpt(json.dumps(document))}'"
                    )
                return document

            _, tries = await fetch_with_retries(fetch, self._config.retries, attempts)
            return ProbeOutcome.ok(target.identity, self.PROBE, elapsed(start), attempts=tries)
        finally:
            await self._unpin(cid)

    async def _unpin(self, cid: str) -> None:
        try:
            await self._kubo.pin_rm(cid)
        except Exception as e:  # Intentionally broad: cleanup errors are logged only
            self._logger.warning("unpin_failed", cid=cid, error=str(e))
