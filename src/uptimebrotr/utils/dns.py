"""Text-record resolution for human-readable names.

Two transports are supported, selected per name-service target:

- plain DNS against a given nameserver, using ``dnspython``;
- DNS-over-HTTPS JSON endpoints (``application/dns-json``).

Both return the raw TXT strings of a name.
[find_text_record][uptimebrotr.utils.dns.find_text_record]
then picks the ``key=value`` entry for a record key.

Note:
    ``dnspython``'s synchronous resolver is delegated to a thread with
    ``asyncio.to_thread`` so it never blocks the event loop.

See Also:
    [NameResolutionProbe][uptimebrotr.probes.names.NameResolutionProbe]:
        The probe built on these functions.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import dns.exception
import dns.resolver

from uptimebrotr.exceptions import ConnectivityError

from .http import fetch_json


if TYPE_CHECKING:
    import aiohttp


DNS_JSON_CONTENT_TYPE = "application/dns-json"


def _resolve_txt_sync(name: str, nameserver: str | None, timeout: float) -> list[str]:
    resolver = dns.resolver.Resolver(configure=nameserver is None)
    if nameserver is not None:
        resolver.nameservers = [nameserver]
    resolver.timeout = timeout
    resolver.lifetime = timeout
    answers = resolver.resolve(name, "TXT")
    values: list[str] = []
    for rdata in answers:
        values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
    return values


async def resolve_txt(
    name: str,
    *,
    nameserver: str | None = None,
    timeout: float = 10.0,  # noqa: ASYNC109
) -> list[str]:
    """Resolve the TXT strings of *name*.

    Args:
        name: Domain name to query.
        nameserver: IP of the nameserver under test; the system
            configuration is used when ``None``.
        timeout: Resolver timeout and lifetime in seconds.

    Raises:
        ConnectivityError: On any DNS failure (NXDOMAIN, no answer, timeout).
    """
    try:
        return await asyncio.to_thread(_resolve_txt_sync, name, nameserver, timeout)
    except (OSError, dns.exception.DNSException) as e:
        raise ConnectivityError(f"failed resolving TXT for '{name}': {e}") from e


async def resolve_txt_over_https(
    session: aiohttp.ClientSession,
    endpoint: str,
    name: str,
    *,
    timeout: float = 10.0,  # noqa: ASYNC109
) -> list[str]:
    """Resolve the TXT strings of *name* through a DNS-over-HTTPS JSON endpoint.

    Raises:
        ConnectivityError: If the endpoint answers with a non-zero status or
            an unexpected document.
    """
    separator = "&" if "?" in endpoint else "?"
    url = f"{endpoint}{separator}name={name}&type=TXT"
    result = await fetch_json(session, url, timeout=timeout)
    if not isinstance(result, dict) or result.get("Status") != 0:
        raise ConnectivityError(f"failed resolving TXT for '{name}' via '{endpoint}': {result!r}")
    values: list[str] = []
    for answer in result.get("Answer") or []:
        data = answer.get("data") if isinstance(answer, dict) else None
        if isinstance(data, str):
            # JSON answers quote each character-string
            values.append("".join(part.strip('"') for part in data.split('" "')))
    return values


def find_text_record(values: list[str], record: str) -> str | None:
    """Return the value of the ``record=value`` entry among TXT *values*.

    A lone entry without ``=`` is accepted as the value itself, which is how
    single-purpose names publish their record.
    """
    prefix = f"{record}="
    for value in values:
        if value.startswith(prefix):
            return value[len(prefix) :].strip()
    bare = [value.strip() for value in values if "=" not in value]
    if len(bare) == 1:
        return bare[0]
    return None
