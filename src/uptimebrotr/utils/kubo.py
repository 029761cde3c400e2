"""Node RPC client: content storage and pub/sub transport.

[KuboClient][uptimebrotr.utils.kubo.KuboClient] speaks the HTTP RPC API
(``/api/v0``) exposed by IPFS nodes and pub/sub providers. It covers the
handful of calls the probes need: adding and unpinning content, publishing,
subscribing, listing topic peers and asking the node's DHT for providers.

Subscriptions are explicit objects rather than long-lived callbacks: a
[Subscription][uptimebrotr.utils.kubo.Subscription] owns the streaming
request and is torn down exactly once with ``close()``. A
[MessageWaiter][uptimebrotr.utils.kubo.MessageWaiter] turns "receive this
exact message" into a one-shot awaitable with a timeout.

Note:
    Topics are multibase-encoded (``u`` + unpadded base64url) on the wire,
    as the RPC API requires; message data comes back encoded the same way.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from uptimebrotr.exceptions import ConnectivityError, DecodingError, ProbeTimeoutError

from .http import DEFAULT_MAX_SIZE, excerpt, fetch_ndjson, parse_json_body, read_bounded


logger = logging.getLogger(__name__)

MessageHandler = Callable[["PubSubMessage"], None]
ErrorHandler = Callable[[Exception], None]

_STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_read=None)


def encode_topic(topic: str) -> str:
    """Encode a topic as multibase base64url (``u`` prefix, unpadded)."""
    return "u" + base64.urlsafe_b64encode(topic.encode("utf-8")).decode("ascii").rstrip("=")


def decode_multibase(value: str) -> bytes:
    """Decode a ``u``-prefixed base64url string (as returned by the RPC API).

    Raises:
        ConnectivityError: If the value is not valid multibase base64url.
    """
    if not value.startswith("u"):
        raise ConnectivityError(f"unsupported multibase prefix: {value[:1]!r}")
    body = value[1:]
    try:
        return base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except (binascii.Error, ValueError) as e:
        raise ConnectivityError(f"invalid multibase value: {value[:40]!r}") from e


@dataclass(frozen=True, slots=True)
class PubSubMessage:
    """A message received on a subscription.

    Attributes:
        topic: The subscribed topic.
        data: Raw message payload.
        sender: Peer id of the publishing node, if reported.
    """

    topic: str
    data: bytes
    sender: str | None = None


class Subscription:
    """A live topic subscription backed by one streaming RPC request.

    Created by [KuboClient.subscribe()][uptimebrotr.utils.kubo.KuboClient.subscribe].
    ``close()`` cancels the stream; it is idempotent, and only the first
    call does any work.
    """

    def __init__(self, topic: str, task: asyncio.Task[None]) -> None:
        self.topic = topic
        self._task = task
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether ``close()`` was called or the stream ended."""
        return self._closed or self._task.done()

    async def close(self) -> None:
        """Stop receiving messages and release the streaming request."""
        if self._closed:
            return
        self._closed = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class MessageWaiter:
    """One-shot wait for an exact message on a subscription.

    At most one expected message may be outstanding at a time. Messages
    that do not match are ignored silently.

    Examples:
        ```python
        waiter = MessageWaiter()
        sub = await client.subscribe(topic, waiter.feed)
        waiter.expect(b"hello")
        message = await waiter.wait(timeout=300)
        ```
    """

    def __init__(self) -> None:
        self._expected: bytes | None = None
        self._future: asyncio.Future[PubSubMessage] | None = None

    @property
    def pending(self) -> bool:
        """Whether an expected message is outstanding."""
        return self._future is not None and not self._future.done()

    def expect(self, data: bytes) -> None:
        """Register the message to wait for.

        Raises:
            RuntimeError: If a message is already awaited.
        """
        if self.pending:
            raise RuntimeError("a message is already awaited on this subscription")
        self._expected = data
        self._future = asyncio.get_running_loop().create_future()

    def feed(self, message: PubSubMessage) -> None:
        """Offer a received message; resolves the wait on an exact match."""
        future = self._future
        if future is not None and not future.done() and message.data == self._expected:
            future.set_result(message)

    async def wait(self, timeout: float) -> PubSubMessage:  # noqa: ASYNC109
        """Wait for the expected message.

        Raises:
            RuntimeError: If ``expect()`` was not called first.
            ProbeTimeoutError: If the message did not arrive in time.
        """
        if self._future is None:
            raise RuntimeError("expect() must be called before wait()")
        try:
            async with asyncio.timeout(timeout):
                return await self._future
        except TimeoutError as e:
            raise ProbeTimeoutError(
                f"timed out after {timeout}s waiting for message "
                f"{excerpt(repr(self._expected), 80)}"
            ) from e
        finally:
            if self._future is not None and not self._future.done():
                self._future.cancel()
            self._future = None
            self._expected = None


class KuboClient:
    """Minimal async client for a node's HTTP RPC API.

    Args:
        api_url: Base RPC URL, e.g. ``http://127.0.0.1:5001/api/v0``.
        session: Shared ``aiohttp.ClientSession`` (owned by the caller).
        max_size: Maximum body size for non-streaming calls.
    """

    def __init__(
        self,
        api_url: str,
        session: aiohttp.ClientSession,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._session = session
        self._max_size = max_size

    def __repr__(self) -> str:
        return f"KuboClient({self.api_url!r})"

    async def _post(
        self,
        path: str,
        params: dict[str, str] | None = None,
        data: bytes | None = None,
    ) -> Any:
        form: aiohttp.FormData | None = None
        if data is not None:
            form = aiohttp.FormData()
            form.add_field("file", data, filename="data")
        async with self._session.post(
            f"{self.api_url}/{path}", params=params, data=form
        ) as response:
            body = await read_bounded(response, self._max_size)
            if response.status >= 400:  # noqa: PLR2004
                raise ConnectivityError(
                    f"{path} failed with status {response.status}: "
                    f"{excerpt(body.decode('utf-8', errors='replace'))}"
                )
        return parse_json_body(body) if body.strip() else None

    # -- content -------------------------------------------------------------

    async def add(self, data: bytes) -> str:
        """Add and pin *data*; returns its CID."""
        result = await self._post("add", params={"pin": "true"}, data=data)
        if not isinstance(result, dict) or not isinstance(result.get("Hash"), str):
            raise ConnectivityError(f"add returned no hash: {excerpt(json.dumps(result))}")
        return result["Hash"]

    async def pin_rm(self, cid: str) -> None:
        """Unpin *cid* so the node may garbage-collect it."""
        await self._post("pin/rm", params={"arg": cid})

    async def find_providers(self, cid: str) -> list[dict[str, Any]]:
        """Ask the node's DHT for providers of *cid* (``routing/findprovs``).

        Returns provider records deduplicated by ``ID``.

        Raises:
            DecodingError: If a response line is not a JSON object.
        """
        lines = await fetch_ndjson(
            self._session,
            f"{self.api_url}/routing/findprovs?arg={cid}",
            max_size=self._max_size,
        )
        providers: dict[str, dict[str, Any]] = {}
        for line in lines:
            if not isinstance(line, dict):
                raise DecodingError(f"malformed findprovs line '{excerpt(repr(line), 80)}'")
            for response in line.get("Responses") or []:
                if isinstance(response, dict) and response.get("ID"):
                    providers.setdefault(response["ID"], response)
        return list(providers.values())

    # -- pub/sub -------------------------------------------------------------

    async def publish(self, topic: str, data: bytes) -> None:
        """Publish *data* on *topic*."""
        await self._post("pubsub/pub", params={"arg": encode_topic(topic)}, data=data)

    async def peers(self, topic: str) -> list[str]:
        """List peer ids the node currently sees on *topic*.

        Raises:
            DecodingError: If the body is not an object with a ``Strings`` list.
        """
        result = await self._post("pubsub/peers", params={"arg": encode_topic(topic)})
        if result is None:
            return []
        peers = result.get("Strings") if isinstance(result, dict) else result
        if not isinstance(peers, list | None):
            raise DecodingError(f"malformed pubsub peers body '{excerpt(repr(result), 80)}'")
        return list(peers or [])

    async def subscribe(
        self,
        topic: str,
        on_message: MessageHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """Subscribe to *topic* and dispatch messages to *on_message*.

        Returns once the node has accepted the subscription. If the stream
        later fails or ends, *on_error* is called once with the cause.

        Raises:
            ConnectivityError: If the node rejects the subscription.
        """
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._consume(topic, on_message, on_error, ready))
        try:
            await ready
        except BaseException:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
            raise
        return Subscription(topic, task)

    async def _consume(
        self,
        topic: str,
        on_message: MessageHandler,
        on_error: ErrorHandler | None,
        ready: asyncio.Future[None],
    ) -> None:
        try:
            async with self._session.post(
                f"{self.api_url}/pubsub/sub",
                params={"arg": encode_topic(topic)},
                timeout=_STREAM_TIMEOUT,
            ) as response:
                if response.status >= 400:  # noqa: PLR2004
                    body = await read_bounded(response, self._max_size)
                    raise ConnectivityError(
                        f"subscribe failed with status {response.status}: "
                        f"{excerpt(body.decode('utf-8', errors='replace'))}"
                    )
                ready.set_result(None)
                async for line in response.content:
                    message = self._parse_message(topic, line)
                    if message is not None:
                        on_message(message)
            raise ConnectivityError(f"subscription stream for topic {topic!r} ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:  # Intentionally broad: stream error boundary, reported via on_error
            if not ready.done():
                ready.set_exception(
                    e if isinstance(e, ConnectivityError) else ConnectivityError(str(e))
                )
                return
            logger.debug("subscription_error topic=%s error=%s", topic, e)
            if on_error is not None:
                on_error(e)

    @staticmethod
    def _parse_message(topic: str, line: bytes) -> PubSubMessage | None:
        if not line.strip():
            return None
        try:
            raw = json.loads(line)
            data = decode_multibase(raw.get("data", "u"))
        except (json.JSONDecodeError, ConnectivityError, AttributeError) as e:
            logger.debug("subscription_message_invalid topic=%s error=%s", topic, e)
            return None
        return PubSubMessage(topic=topic, data=data, sender=raw.get("from"))
