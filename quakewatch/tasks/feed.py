"""Poll a GeoJSON earthquake feed through the guarded HTTP client.

Each run performs a single GET of the feed (USGS ``all_hour`` by default)
and reports how many features it contained.  The payload is checked for the
GeoJSON ``FeatureCollection`` shape with pydantic; anything else raises
:class:`~quakewatch.core.exceptions.PayloadValidationError` so the tick is
not retried against a feed that is answering with the wrong thing.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from quakewatch.core.exceptions import PayloadValidationError
from quakewatch.core.models import TaskResult
from quakewatch.core.settings import DEFAULT_FEED_URL
from quakewatch.resilience.http_client import GuardedHttpClient
from quakewatch.tasks.base import BaseTask

__all__ = ["FeedPollTask"]

logger = logging.getLogger(__name__)


class _FeedMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str | None = None
    count: int | None = None
    generated: int | None = None


class _FeatureCollection(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    metadata: _FeedMetadata | None = None


class FeedPollTask(BaseTask):
    """Count the features currently published by a GeoJSON feed.

    Args:
        client: Guarded HTTP client; closed together with the task.
        url: Feed URL.
        items_key: Top-level key holding the item list.
    """

    name = "feed"

    def __init__(
        self,
        client: GuardedHttpClient,
        url: str = DEFAULT_FEED_URL,
        *,
        items_key: str = "features",
    ) -> None:
        self._client = client
        self.url = url
        self.items_key = items_key
        self.name = f"feed:{client.source}"

    async def run(self, args: Sequence[str]) -> TaskResult:
        # Extra CLI args are accepted as query parameters of the form key=value.
        params = dict(a.split("=", 1) for a in args if "=" in a) or None
        payload = await self._client.get_json(self.url, params=params)
        items = self._extract_items(payload)

        try:
            collection = _FeatureCollection.model_validate(payload)
        except ValidationError as exc:
            raise PayloadValidationError(self._client.source, str(exc)) from exc
        title = collection.metadata.title if collection.metadata else None

        logger.info("Feed %s returned %d feature(s).", title or self.url, len(items))
        return TaskResult(items_produced=len(items), detail=title or "")

    def _extract_items(self, payload: Any) -> list[Any]:
        if not isinstance(payload, dict):
            raise PayloadValidationError(
                self._client.source, f"Expected a JSON object, got {type(payload).__name__}"
            )
        items = payload.get(self.items_key)
        if not isinstance(items, list):
            raise PayloadValidationError(
                self._client.source, f"Payload has no {self.items_key!r} list"
            )
        return items

    async def close(self) -> None:
        await self._client.close()
