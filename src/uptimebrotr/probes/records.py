"""
Application node record fetch.

[NameRecordProbe][uptimebrotr.probes.records.NameRecordProbe] fetches the
latest signed record of every application node through the reference
gateway and stores the fields the other node probes depend on:

- ``public_key`` and ``signer_address`` (from ``signature.publicKey``);
- ``pubsub_topic`` (``pubsubTopic``, defaulting to the node identity);
- ``last_update_timestamp`` (``updatedAt``);
- ``last_post_cid`` (``lastPostCid``), used by the previewer probe;
- ``stats``, fetched from ``statsCid`` when present.

It is the prerequisite producer: probes needing a public key or topic skip
a node until this probe has succeeded once for it.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import DecodingError, VerificationError
from uptimebrotr.models import PUBLIC_KEY_FIELD, PUBSUB_TOPIC_FIELD, ProbeOutcome, TargetCategory
from uptimebrotr.utils.http import excerpt, fetch_json
from uptimebrotr.utils.keys import parse_peer_id, public_key_to_address

from .base import PROBE_ERRORS, BaseProbe, elapsed, fetch_with_retries


if TYPE_CHECKING:
    import aiohttp

    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


class NameRecordConfig(BaseModel):
    """Settings of node record fetches."""

    gateway_url: str = Field(
        default="https://ipfs.io", min_length=1, description="Reference gateway for record fetches"
    )
    retries: int = Field(default=3, ge=0, le=20)
    timeout: float = Field(default=60.0, ge=1.0, description="Timeout of each fetch try")
    fetch_stats: bool = Field(default=True, description="Also fetch the document at statsCid")


def is_peer_address(identity: str) -> bool:
    """Whether *identity* is a peer-id address rather than a domain name."""
    try:
        parse_peer_id(identity)
    except DecodingError:
        return False
    return True


def record_public_key(record: Any) -> str:
    """Return ``signature.publicKey`` of a signed record.

    Raises:
        VerificationError: If the record carries no public key.
    """
    signature = record.get("signature") if isinstance(record, dict) else None
    public_key = signature.get("publicKey") if isinstance(signature, dict) else None
    if not isinstance(public_key, str) or not public_key:
        raise VerificationError(f"failed fetching got response '{excerpt(repr(record))}'")
    return public_key


def record_updated_at(record: dict[str, Any]) -> int:
    """Return the record's self-declared ``updatedAt`` (unix seconds).

    Raises:
        VerificationError: If ``updatedAt`` is missing or not a number.
    """
    updated_at = record.get("updatedAt")
    if not isinstance(updated_at, int | float) or isinstance(updated_at, bool):
        raise VerificationError(f"record has no updatedAt: '{excerpt(repr(record))}'")
    return int(updated_at)


async def fetch_record(
    session: aiohttp.ClientSession,
    gateway_url: str,
    address: str,
    *,
    retries: int,
    attempts: AttemptCounter,
    timeout: float,  # noqa: ASYNC109
    max_size: int,
) -> tuple[dict[str, Any], int]:
    """Fetch ``{gateway}/ipns/{address}`` with retries.

    A body without a signing key counts as a failed try.

    Returns:
        ``(record, attempts)``.
    """

    async def fetch() -> dict[str, Any]:
        record = await fetch_json(
            session, f"{gateway_url}/ipns/{address}", timeout=timeout, max_size=max_size
        )
        record_public_key(record)
        return record

    return await fetch_with_retries(fetch, retries, attempts)


class NameRecordProbe(BaseProbe):
    """Fetch each node's latest record through the reference gateway."""

    CATEGORY = TargetCategory.APPLICATION_NODE
    PROBE = "record_fetch"

    def __init__(self, ledger: Ledger, config: NameRecordConfig | None = None) -> None:
        super().__init__(ledger)
        self._config = config or NameRecordConfig()

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        session = self._ledger.session
        max_size = self._ledger.config.http.max_response_size
        gateway_url = self._config.gateway_url.rstrip("/")

        start = time.monotonic()
        record, tries = await fetch_record(
            session,
            gateway_url,
            target.identity,
            retries=self._config.retries,
            attempts=attempts,
            timeout=self._config.timeout,
            max_size=max_size,
        )
        latency = elapsed(start)

        public_key = record_public_key(record)
        signer_address = public_key_to_address(public_key)
        if is_peer_address(target.identity) and signer_address != target.identity:
            raise VerificationError(
                f"record signed by '{signer_address}', expected '{target.identity}'"
            )

        payload: dict[str, Any] = {
            PUBLIC_KEY_FIELD: public_key,
            "signer_address": signer_address,
            PUBSUB_TOPIC_FIELD: record.get("pubsubTopic") or target.identity,
            "last_update_timestamp": record_updated_at(record),
        }
        if isinstance(record.get("lastPostCid"), str):
            payload["last_post_cid"] = record["lastPostCid"]
        stats_cid = record.get("statsCid")
        if self._config.fetch_stats and isinstance(stats_cid, str):
            stats = await self._fetch_stats(gateway_url, stats_cid, target)
            if stats is not None:
                payload["stats"] = stats

        return ProbeOutcome.ok(
            target.identity, self.PROBE, latency, attempts=tries, payload=payload
        )

    async def _fetch_stats(
        self, gateway_url: str, stats_cid: str, target: Target
    ) -> dict[str, Any] | None:
        try:
            stats = await fetch_json(
                self._ledger.session,
                f"{gateway_url}/ipfs/{stats_cid}",
                timeout=self._config.timeout,
                max_size=self._ledger.config.http.max_response_size,
            )
        except PROBE_ERRORS as e:
            self._logger.warning(
                "stats_fetch_failed", target=target.identity, cid=stats_cid, error=str(e)
            )
            return None
        return stats if isinstance(stats, dict) else None
