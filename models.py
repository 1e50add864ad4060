"""Data types shared by the Patch Watch pipeline."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

import config


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PatchWatchError(Exception):
    """Base error; `message` is safe to show to the user."""

    default_message = "Something went wrong."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class IdentityNotFound(PatchWatchError):
    default_message = "SteamID not found."


class ProfileUnavailable(PatchWatchError):
    default_message = "Failed to fetch profile."


class LibraryUnavailable(PatchWatchError):
    default_message = "Failed to fetch your game library. Please try again later."


class Cancelled(PatchWatchError):
    default_message = "Superseded by a newer request."


class InvalidCapacity(PatchWatchError, ValueError):
    default_message = "Capacity must be a positive integer."


class AggregationFailed(PatchWatchError):
    default_message = "Failed to load recent updates."


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class OwnedGame:
    id: int
    name: str
    playtime_minutes: int = 0
    icon_ref: str = ""

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "OwnedGame":
        """Build from a GetOwnedGames `games[]` entry."""
        return cls(
            id=int(raw["appid"]),
            name=raw.get("name") or f"App {raw['appid']}",
            playtime_minutes=max(int(raw.get("playtime_forever") or 0), 0),
            icon_ref=raw.get("img_icon_url") or "",
        )


@dataclass(frozen=True, slots=True)
class UpdateEvent:
    event_id: str
    game_id: int
    recency_key: int
    title: str
    body: str = ""
    source_game_name: str = ""
    source_game_icon: str = ""
    event_type: int | None = None
    title_image: str | None = None

    @property
    def key(self) -> tuple[str, int]:
        """Composite identity used for deduplication."""
        return (self.event_id, self.game_id)


@dataclass(frozen=True, slots=True)
class PlayerProfile:
    steam_id: str
    persona_name: str
    avatar_url: str = ""
    profile_url: str = ""
    visibility_state: int | None = None
    persona_state: int | None = None
    time_created: int | None = None
    last_logoff: int | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "PlayerProfile":
        return cls(
            steam_id=str(raw["steamid"]),
            persona_name=raw.get("personaname", ""),
            avatar_url=raw.get("avatarfull") or raw.get("avatarmedium") or raw.get("avatar") or "",
            profile_url=raw.get("profileurl", ""),
            visibility_state=raw.get("communityvisibilitystate"),
            persona_state=raw.get("personastate"),
            time_created=raw.get("timecreated"),
            last_logoff=raw.get("lastlogoff"),
        )


@dataclass(frozen=True, slots=True)
class EventFilter:
    """Per-game event request parameters."""

    count_after: int = config.EVENT_COUNT_AFTER
    type_filter: str = config.EVENT_TYPE_FILTER


# ---------------------------------------------------------------------------
# Tagged results returned by the Steam boundary (steam_api.py)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LookupResult:
    success: bool
    steam_id: str | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ProfileResult:
    player: PlayerProfile | None = None
    error: str | None = None
    details: str | None = None


@dataclass(frozen=True, slots=True)
class LibraryResult:
    games: list[OwnedGame] | None = None
    error: str | None = None
    details: str | None = None


@dataclass(frozen=True, slots=True)
class EventsResult:
    events: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Write-once cancellation flag shared by one session sequence."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early if cancelled."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()
