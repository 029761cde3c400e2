"""Key derivation, HTTP helpers, node RPC client and TXT resolution.

The utils layer sits in the middle of the diamond DAG, depending only on
[uptimebrotr.models][uptimebrotr.models] and
[uptimebrotr.exceptions][uptimebrotr.exceptions].

Attributes:
    keys: Pure routing-key derivation (topic to CID, identity to record
        topic, public key to address). No I/O.
    http: Session construction, bounded reads, JSON/NDJSON fetches with
        readable failure excerpts.
    kubo: Node RPC client for content add/unpin, pub/sub and DHT provider
        lookups, with explicit subscriptions and one-shot message waits.
    dns: TXT record resolution over DNS (``dnspython``) or DNS-over-HTTPS.

Note:
    The utils layer has **zero** imports from ``uptimebrotr.core``,
    ``uptimebrotr.probes`` or ``uptimebrotr.services``.
"""
