"""
Name resolution through external resolvers.

A name-service target is a resolver: either a nameserver IP queried with
plain DNS, or a DNS-over-HTTPS JSON endpoint. Its metadata names what to
resolve:

```yaml
name_service:
  - identity: 1.1.1.1
    name: plebbit.eth.limo
  - identity: https://cloudflare-dns.com/dns-query
    kind: doh
    name: plebbit.eth.limo
    record: plebbit-author-address
    expected: 12D3KooW...
```

The text record must decode to a valid peer-id address: an answer that
parses as DNS but not as an address is a failure.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import ConfigurationError, DecodingError, VerificationError
from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.dns import find_text_record, resolve_txt, resolve_txt_over_https
from uptimebrotr.utils.keys import parse_peer_id

from .base import BaseProbe, elapsed


if TYPE_CHECKING:
    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


DEFAULT_RECORD = "plebbit-author-address"
KIND_DNS = "dns"
KIND_DOH = "doh"


class NameResolutionConfig(BaseModel):
    """Settings of name resolution probes."""

    timeout: float = Field(default=10.0, ge=0.5, description="Resolver timeout in seconds")


def resolver_kind(target: Target) -> str:
    """``doh`` for URL resolvers unless overridden by the ``kind`` metadata."""
    kind = target.get("kind")
    if kind in (KIND_DNS, KIND_DOH):
        return str(kind)
    return KIND_DOH if "://" in target.identity else KIND_DNS


class NameResolutionProbe(BaseProbe):
    """Resolve a well-known name's text record and check it is an address."""

    CATEGORY = TargetCategory.NAME_SERVICE
    PROBE = "resolve_address"

    def __init__(self, ledger: Ledger, config: NameResolutionConfig | None = None) -> None:
        super().__init__(ledger)
        self._config = config or NameResolutionConfig()

    def labels(self, target: Target) -> tuple[str, ...]:
        return (target.identity, str(target.get("name", "")))

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        name = target.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"name service '{target.identity}' has no name to resolve")
        record = str(target.get("record") or DEFAULT_RECORD)

        start = time.monotonic()
        if resolver_kind(target) == KIND_DOH:
            values = await resolve_txt_over_https(
                self._ledger.session, target.identity, name, timeout=self._config.timeout
            )
        else:
            values = await resolve_txt(
                name, nameserver=target.identity, timeout=self._config.timeout
            )
        latency = elapsed(start)

        address = find_text_record(values, record)
        if address is None:
            raise VerificationError(f"no '{record}' text record for '{name}' in {values!r}")
        try:
            parse_peer_id(address)
        except DecodingError as e:
            raise VerificationError(f"'{record}' of '{name}' is not an address: {e}") from e
        expected = target.get("expected")
        if expected and address != expected:
            raise VerificationError(f"'{record}' of '{name}' is '{address}', expected '{expected}'")

        return ProbeOutcome.ok(
            target.identity,
            self.PROBE,
            latency,
            payload={"last_resolved_address": address},
        )
