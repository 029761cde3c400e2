"""Routing key derivation for identities, topics and public keys.

Pure, deterministic functions that turn application-level identifiers into
the routing keys third-party services index: content identifiers (CIDv1),
pub/sub topics for mutable records, and peer-id addresses derived from
Ed25519 public keys. The derivations byte-for-byte match the peer network's
own, so lookups against public routing services return real providers.

No function in this module performs I/O or retries. Malformed input raises
[DecodingError][uptimebrotr.exceptions.DecodingError].

Examples:
    ```python
    topic = identity_to_routing_topic("12D3KooWNMybS8JqELi38ZBX897PrjWbCrGoMKfw3bgoqzC2n1Dh")
    topic_to_routing_key(topic)
    # 'bafkreic2vguwwzo4dddbxjas4pzlpbujxxi7erqfkwhmm2pls6c4q6iizm'

    public_key_to_address("oqb9NJrUccHpOHqfi1daakTAFup2BB7tYNbpkOcFOyE")
    # '12D3KooW...'
    ```

See Also:
    [ContentRoutingProbe][uptimebrotr.probes.routing.ContentRoutingProbe]:
        Queries routers with the keys derived here.
    [DomainSnapshotProbe][uptimebrotr.probes.snapshot.DomainSnapshotProbe]:
        Fetches records by the address derived from a public key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from uptimebrotr.exceptions import DecodingError


# Multiformats codes
CID_VERSION = 0x01
CODEC_RAW = 0x55
CODEC_LIBP2P_KEY = 0x72
MULTIHASH_IDENTITY = 0x00
MULTIHASH_SHA2_256 = 0x12

# Namespace tags
PUBSUB_TOPIC_NAMESPACE = "floodsub:"
RECORD_TOPIC_PREFIX = "/record/"
RECORD_NAMESPACE = "/ipns/"

# Protobuf header of a libp2p PublicKey message: KeyType=Ed25519, Data length 32
_ED25519_PROTOBUF_HEADER = bytes([0x08, 0x01, 0x12, 0x20])
ED25519_KEY_LENGTH = 32


# ---------------------------------------------------------------------------
# Low-level encodings
# ---------------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned LEB128 varint."""
    if value < 0:
        raise DecodingError(f"varint must be non-negative, got {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode an unsigned varint at *offset*; returns ``(value, next_offset)``."""
    value = 0
    shift = 0
    for index in range(offset, min(len(data), offset + 9)):
        byte = data[index]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, index + 1
        shift += 7
    raise DecodingError("truncated or oversized varint")


def _base32_encode(data: bytes) -> str:
    return "b" + base64.b32encode(data).decode("ascii").rstrip("=").lower()


def _base32_decode(text: str) -> bytes:
    body = text.upper()
    try:
        return base64.b32decode(body + "=" * (-len(body) % 8))
    except binascii.Error as e:
        raise DecodingError(f"invalid base32 string: {text!r}") from e


def _base36_decode(text: str) -> bytes:
    try:
        number = int(text, 36)
    except ValueError as e:
        raise DecodingError(f"invalid base36 string: {text!r}") from e
    leading_zeros = len(text) - len(text.lstrip("0"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\x00" * leading_zeros + body


def _base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _sha256_multihash(data: bytes) -> bytes:
    digest = hashlib.sha256(data).digest()
    return encode_varint(MULTIHASH_SHA2_256) + encode_varint(len(digest)) + digest


def _validate_multihash(multihash: bytes) -> bytes:
    code, offset = decode_varint(multihash)
    length, offset = decode_varint(multihash, offset)
    if code not in (MULTIHASH_IDENTITY, MULTIHASH_SHA2_256):
        raise DecodingError(f"unsupported multihash code 0x{code:02x}")
    if len(multihash) - offset != length:
        raise DecodingError(
            f"multihash length mismatch: declared {length}, got {len(multihash) - offset}"
        )
    return multihash


def raw_cid(data: bytes) -> str:
    """Return the base32 CIDv1 (codec raw, sha2-256) of *data*."""
    cid = encode_varint(CID_VERSION) + encode_varint(CODEC_RAW) + _sha256_multihash(data)
    return _base32_encode(cid)


# ---------------------------------------------------------------------------
# Routing keys
# ---------------------------------------------------------------------------


def topic_to_routing_key(topic: str) -> str:
    """Derive the content identifier routers index for a pub/sub topic.

    The key is the CIDv1 (raw codec, sha2-256, base32) of
    ``"floodsub:" + topic``, the same derivation pub/sub peers use when they
    announce themselves as providers of a topic.

    Raises:
        DecodingError: If *topic* is not a string.
    """
    if not isinstance(topic, str):
        raise DecodingError(f"topic must be a str, got {type(topic).__name__}")
    return raw_cid((PUBSUB_TOPIC_NAMESPACE + topic).encode("utf-8"))


def string_to_cid(text: str) -> str:
    """Return the CIDv1 of the UTF-8 bytes of *text* (no namespace tag)."""
    if not isinstance(text, str):
        raise DecodingError(f"text must be a str, got {type(text).__name__}")
    return raw_cid(text.encode("utf-8"))


def parse_peer_id(identity: str) -> bytes:
    """Return the raw multihash bytes of a peer id.

    Accepts the base58btc form (``12D3Koo...``, ``Qm...``) and the CIDv1
    form with the libp2p-key codec, either base36 (``k51...``) or base32
    (``bafz...``).

    Raises:
        DecodingError: If *identity* is not a valid peer id.
    """
    if not isinstance(identity, str) or not identity:
        raise DecodingError(f"invalid peer id: {identity!r}")

    if identity[0] in "1Q":
        try:
            multihash = base58.b58decode(identity)
        except ValueError as e:
            raise DecodingError(f"invalid base58 peer id: {identity!r}") from e
        return _validate_multihash(multihash)

    if identity[0] == "k":
        cid = _base36_decode(identity[1:])
    elif identity[0] == "b":
        cid = _base32_decode(identity[1:])
    else:
        raise DecodingError(f"unsupported peer id encoding: {identity!r}")

    version, offset = decode_varint(cid)
    codec, offset = decode_varint(cid, offset)
    if version != CID_VERSION or codec != CODEC_LIBP2P_KEY:
        raise DecodingError(f"not a libp2p-key CIDv1: {identity!r}")
    return _validate_multihash(cid[offset:])


def identity_to_routing_topic(identity: str) -> str:
    """Build the pub/sub topic that carries mutable records for *identity*.

    The topic is ``"/record/" + base64url("/ipns/" + peer_id_bytes)``,
    unpadded. Feed it to
    [topic_to_routing_key()][uptimebrotr.utils.keys.topic_to_routing_key]
    to find peers subscribed to the record topic.

    Raises:
        DecodingError: If *identity* is not a valid peer id.
    """
    peer_id = parse_peer_id(identity)
    return RECORD_TOPIC_PREFIX + _base64url_encode(RECORD_NAMESPACE.encode("ascii") + peer_id)


def identity_to_fetch_key(identity: str) -> str:
    """Return the ``/ipns/<raw peer id bytes>`` key used by direct record fetches."""
    return RECORD_NAMESPACE + parse_peer_id(identity).decode("latin-1")


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------


def public_key_bytes_to_address(public_key: bytes) -> str:
    """Encode a raw Ed25519 public key as its base58btc peer-id address.

    Raises:
        DecodingError: If *public_key* is not exactly 32 bytes.
    """
    if len(public_key) != ED25519_KEY_LENGTH:
        raise DecodingError(
            f"public key must be {ED25519_KEY_LENGTH} bytes, got {len(public_key)}"
        )
    protobuf = _ED25519_PROTOBUF_HEADER + public_key
    multihash = encode_varint(MULTIHASH_IDENTITY) + encode_varint(len(protobuf)) + protobuf
    return base58.b58encode(multihash).decode("ascii")


def decode_public_key(public_key_b64: str) -> bytes:
    """Decode a base64 public key (padding optional).

    Raises:
        DecodingError: If the text is not valid base64.
    """
    if not isinstance(public_key_b64, str) or not public_key_b64:
        raise DecodingError(f"invalid public key: {public_key_b64!r}")
    padded = public_key_b64 + "=" * (-len(public_key_b64) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except binascii.Error as e:
        raise DecodingError(f"invalid base64 public key: {public_key_b64!r}") from e


def public_key_to_address(public_key_b64: str) -> str:
    """Derive the canonical human-addressable identity of a public key.

    Wraps the key in the libp2p protobuf envelope, frames it with an
    identity multihash (no-op hash, length prefix) and encodes the result
    in base58btc, yielding a ``12D3Koo...`` address. Re-deriving from the
    same key always yields the same address.

    Raises:
        DecodingError: If the key is not valid base64 or not 32 bytes long.
    """
    return public_key_bytes_to_address(decode_public_key(public_key_b64))


def encode_public_key(public_key: bytes) -> str:
    """Encode raw public key bytes as unpadded standard base64."""
    return base64.b64encode(public_key).decode("ascii").rstrip("=")


def random_peer_id() -> str:
    """Return the address of a freshly generated Ed25519 key.

    Used for throwaway topics and synthetic provider records, so that no
    two probe runs share routing state.
    """
    public_key = Ed25519PrivateKey.generate().public_key()
    raw = public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)
    return public_key_bytes_to_address(raw)
