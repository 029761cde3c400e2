"""
Plain web fetches: static pages and link-preview services.

Both probes fetch a page and match its body. Static pages are matched
against a regex from the target metadata (``match``) in a single try.
Previewers render a random recent post of a monitored application node and
must return the rendered preview text, with up to three tries each on a
different post.
"""

from __future__ import annotations

import random
import re
import time
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from uptimebrotr.exceptions import ConfigurationError, PrerequisiteMissing, VerificationError
from uptimebrotr.models import ProbeOutcome, TargetCategory
from uptimebrotr.utils.http import excerpt, fetch_text

from .base import BaseProbe, elapsed, fetch_with_retries


if TYPE_CHECKING:
    from uptimebrotr.core.ledger import Ledger
    from uptimebrotr.models import Target

    from .base import AttemptCounter


PREVIEW_MARKER = "osted by u/"
RECENT_POST_WINDOW = 24 * 60 * 60


class StaticContentConfig(BaseModel):
    """Settings of static page fetches."""

    timeout: float = Field(default=60.0, ge=1.0, description="Timeout of the page fetch")


class PreviewConfig(BaseModel):
    """Settings of previewer fetches."""

    retries: int = Field(default=2, ge=0, le=10, description="Retries, each on another post")
    timeout: float = Field(default=60.0, ge=1.0, description="Timeout of each fetch try")
    recent_window: int = Field(
        default=RECENT_POST_WINDOW,
        ge=60,
        description="Only nodes updated within this many seconds provide posts",
    )


class StaticContentProbe(BaseProbe):
    """Fetch a page once and require its ``match`` regex in the body."""

    CATEGORY = TargetCategory.STATIC_PAGE
    PROBE = "webpage_fetch"

    def __init__(self, ledger: Ledger, config: StaticContentConfig | None = None) -> None:
        super().__init__(ledger)
        self._config = config or StaticContentConfig()

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        attempts.count += 1
        match = target.get("match")
        if not isinstance(match, str) or not match:
            raise ConfigurationError(f"static page '{target.identity}' has no match pattern")
        try:
            pattern = re.compile(match)
        except re.error as e:
            raise ConfigurationError(f"invalid match pattern '{match}': {e}") from e

        start = time.monotonic()
        body = await fetch_text(
            self._ledger.session,
            target.identity,
            max_size=self._ledger.config.http.max_response_size,
            timeout=self._config.timeout,
        )
        latency = elapsed(start)
        if not pattern.search(body):
            raise VerificationError(
                f"not matching regex '/{match}/' got response '{excerpt(body)}'"
            )
        return ProbeOutcome.ok(target.identity, self.PROBE, latency)


class PreviewProbe(BaseProbe):
    """Render a random recent post through a previewer."""

    CATEGORY = TargetCategory.PREVIEWER
    PROBE = "preview_fetch"

    def __init__(self, ledger: Ledger, config: PreviewConfig | None = None) -> None:
        super().__init__(ledger)
        self._config = config or PreviewConfig()

    def post_paths(self, now: float | None = None) -> list[str]:
        """``/p/{address}/c/{cid}`` of the last post of every recently updated node."""
        now = time.time() if now is None else now
        paths: list[str] = []
        for node in self._ledger.registry.targets(TargetCategory.APPLICATION_NODE):
            fields = self.node_state(node)
            updated_at = fields.get("last_update_timestamp")
            post_cid = fields.get("last_post_cid")
            if not isinstance(updated_at, int | float) or not isinstance(post_cid, str):
                continue
            if updated_at > now - self._config.recent_window:
                paths.append(f"/p/{node.identity}/c/{post_cid}")
        return paths

    def random_post_path(self) -> str:
        """Pick one recent post path.

        Raises:
            PrerequisiteMissing: If no node has a recent post yet.
        """
        paths = self.post_paths()
        if not paths:
            raise PrerequisiteMissing("failed getting random post path, no recent node posts")
        return random.choice(paths)  # noqa: S311

    def prerequisites(self, target: Target) -> None:
        self.random_post_path()

    async def probe(self, target: Target, attempts: AttemptCounter) -> ProbeOutcome:
        session = self._ledger.session
        max_size = self._ledger.config.http.max_response_size
        latency = 0.0

        async def fetch() -> str:
            nonlocal latency
            url = f"{target.identity}{self.random_post_path()}"
            start = time.monotonic()
            body = await fetch_text(session, url, max_size=max_size, timeout=self._config.timeout)
            if PREVIEW_MARKER not in body:
                raise VerificationError(f"failed fetching '{url}' got response '{excerpt(body)}'")
            latency = elapsed(start)
            return body

        _, tries = await fetch_with_retries(fetch, self._config.retries, attempts)
        return ProbeOutcome.ok(target.identity, self.PROBE, latency, attempts=tries)
