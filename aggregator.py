"""Recent-update aggregation across a whole game library."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any

import requests

import config
import steam_api
from models import Cancelled, CancelToken, EventFilter, EventsResult, OwnedGame, UpdateEvent
from topk import TopKSelector

logger = logging.getLogger(__name__)


def parse_event(raw: dict[str, Any], game_id: int) -> UpdateEvent:
    """Map one raw partner-event record to an UpdateEvent.

    Raises KeyError/TypeError/ValueError on records without a usable id.
    A missing `announcement_body.posttime` yields recency_key 0.
    """
    body = raw.get("announcement_body") or {}
    event_id = raw.get("gid") or body.get("gid")
    if not event_id:
        raise KeyError("gid")
    return UpdateEvent(
        event_id=str(event_id),
        game_id=game_id,
        recency_key=int(body.get("posttime") or 0),
        title=body.get("headline") or raw.get("event_name") or "",
        body=body.get("body") or raw.get("event_notes") or "",
        event_type=raw.get("event_type"),
        title_image=steam_api.title_image_url(raw.get("jsondata"), body.get("clanid")),
    )


def annotate(events: Sequence[UpdateEvent], game: OwnedGame) -> list[UpdateEvent]:
    """Stamp each event with the display name and icon of the game it came from."""
    return [replace(e, source_game_name=game.name, source_game_icon=game.icon_ref) for e in events]


class EventSourceClient:
    """Fetch one game's update events; never raises.

    `fetch_events` is the boundary call (defaults to the store endpoint).
    Whatever goes wrong, the caller gets an empty list and a log line.
    """

    def __init__(self, fetch_events: Callable[[int, EventFilter], EventsResult] | None = None):
        self._fetch_events = fetch_events or steam_api.get_partner_events

    def fetch(self, game_id: int, event_filter: EventFilter | None = None) -> list[UpdateEvent]:
        event_filter = event_filter or EventFilter()
        try:
            result = self._fetch_events(game_id, event_filter)
        except requests.RequestException as e:
            logger.error("Event fetch failed for app %d: %s", game_id, e)
            return []
        except Exception as e:
            logger.exception("Event source raised for app %d: %s", game_id, e)
            return []
        if result.error:
            return []
        if not isinstance(result.events, list):
            logger.error("Malformed events payload for app %d: %r", game_id, type(result.events))
            return []

        events = []
        for raw in result.events:
            try:
                events.append(parse_event(raw, game_id))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error("Malformed event for app %d: %s", game_id, e)
        return events

    def fetch_for_game(self, game: OwnedGame, event_filter: EventFilter | None = None) -> list[UpdateEvent]:
        """Single-game listing, newest first, annotated with the game's name and icon."""
        events = annotate(self.fetch(game.id, event_filter), game)
        return sorted(events, key=lambda e: e.recency_key, reverse=True)


class UpdateAggregator:
    """Fan out one event request per owned game and keep the K most recent.

    Results are consumed in the calling thread as each request completes, so
    the dedup set and the selector are only ever touched by one thread.
    """

    def __init__(
        self,
        source: EventSourceClient | None = None,
        event_filter: EventFilter | None = None,
        max_workers: int = config.FANOUT_WORKERS,
    ):
        self.source = source or EventSourceClient()
        self.event_filter = event_filter or EventFilter()
        self.max_workers = max_workers

    def aggregate(
        self,
        games: Sequence[OwnedGame],
        capacity: int = config.RECENT_UPDATES_CAPACITY,
        cancel_token: CancelToken | None = None,
    ) -> list[UpdateEvent]:
        """Return up to `capacity` events across `games`, newest first.

        Events without a post time are dropped; an `(event_id, game_id)`
        pair is offered to the selector at most once. If `cancel_token` is
        triggered mid-pass, pending requests are cancelled and Cancelled is
        raised.
        """
        selector = TopKSelector(capacity)
        if not games:
            return []

        seen: set[tuple[str, int]] = set()
        workers = self.max_workers if self.max_workers > 0 else len(games)
        offered = dropped = duplicates = 0

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="patchwatch-events")
        try:
            futures = {pool.submit(self.source.fetch, g.id, self.event_filter): g for g in games}
            for future in as_completed(futures):
                if cancel_token is not None and cancel_token.cancelled:
                    raise Cancelled()

                fresh = []
                for event in future.result():
                    if not event.recency_key:
                        dropped += 1
                        continue
                    if event.key in seen:
                        duplicates += 1
                        continue
                    seen.add(event.key)
                    fresh.append(event)
                for event in annotate(fresh, futures[future]):
                    selector.offer(event)
                    offered += 1
        finally:
            # queued requests are dropped; in-flight ones finish on their own
            pool.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Aggregated %d games: %d offered, %d without post time, %d duplicates, kept %d",
            len(games), offered, dropped, duplicates, len(selector),
        )
        return selector.drain()
