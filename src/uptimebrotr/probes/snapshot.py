"""Mutable record fetch through a gateway under test."""

from __future__ import annotations

import math
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import VerificationError
from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.keys import public_key_to_address

from .base import BaseProbe, elapsed
from .records import fetch_record, record_public_key, record_updated_at


if TYPE_CHECKING:
    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


UPDATED_AT_FIELD = "last_snapshot_updated_at"


class SnapshotConfig(BaseModel):
    """Settings of gateway record fetches."""

    retries: int = Field(default=3, ge=0, le=20)
    timeout: float = Field(default=60.0, ge=1.0, description="Timeout of each fetch try")


def seconds_since_updated_at(updated_at: int, now: float | None = None) -> int:
    """``ceil(now) - updated_at``: age of a record by its own clock."""
    return math.ceil(time.time() if now is None else now) - updated_at


class DomainSnapshotProbe(BaseProbe):
    """Fetch a node's latest record from one gateway and check its signer.

    Bound to one gateway; the probed target is the application node. The
    outcome is stored under ``gateway[url].snapshot_fetches[address]``.
    """

    CATEGORY = TargetCategory.GATEWAY
    PROBE = "snapshot_fetch"
    PATH_KEY = "snapshot_fetches"

    def __init__(
        self,
        ledger: Ledger,
        gateway: Target,
        config: SnapshotConfig | None = None,
    ) -> None:
        super().__init__(ledger)
        self._gateway = gateway
        self._config = config or SnapshotConfig()

    def prerequisites(self, target: Target) -> None:
        self.require_public_key(target)

    def state_location(self, target: Target) -> tuple[TargetCategory, str, tuple[str, ...]]:
        return self.CATEGORY, self._gateway.identity, (self.PATH_KEY, target.identity)

    def labels(self, target: Target) -> tuple[str, ...]:
        return (self._gateway.identity, target.identity)

    def derived_fields(self, outcome: ProbeOutcome) -> dict[str, Any]:
        updated_at = outcome.payload.get(UPDATED_AT_FIELD)
        if not outcome.success or not isinstance(updated_at, int):
            return {}
        return {"seconds_since_updated_at": seconds_since_updated_at(updated_at, outcome.timestamp)}

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        expected_key = self.require_public_key(target)
        address = public_key_to_address(expected_key)

        start = time.monotonic()
        record, tries = await fetch_record(
            self._ledger.session,
            self._gateway.identity,
            address,
            retries=self._config.retries,
            attempts=attempts,
            timeout=self._config.timeout,
            max_size=self._ledger.config.http.max_response_size,
        )
        latency = elapsed(start)

        public_key = record_public_key(record)
        if public_key != expected_key:
            raise VerificationError(
                f"record signed by public key '{public_key}', expected '{expected_key}'"
            )
        return ProbeOutcome.ok(
            target.identity,
            self.PROBE,
            latency,
            attempts=tries,
            payload={UPDATED_AT_FIELD: record_updated_at(record)},
        )
