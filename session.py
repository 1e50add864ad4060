"""Account session: resolve a handle, load profile + library, aggregate updates.

A `SessionController` runs one sequence at a time. Starting a new sequence
cancels the previous one's token; any state update carrying a stale token
is dropped, so a slow superseded sequence can never overwrite a newer one.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

import config
import steam_api
from aggregator import UpdateAggregator
from models import (
    AggregationFailed,
    Cancelled,
    CancelToken,
    IdentityNotFound,
    LibraryResult,
    LibraryUnavailable,
    LookupResult,
    OwnedGame,
    PatchWatchError,
    PlayerProfile,
    ProfileResult,
    ProfileUnavailable,
    UpdateEvent,
)

logger = logging.getLogger(__name__)

# SteamID64: always 17 digits
CANONICAL_ID_RE = re.compile(r"^\d{17}$")


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class IdentityResolver:
    def __init__(self, lookup: Callable[[str, str], LookupResult] | None = None):
        self._lookup = lookup or steam_api.resolve_vanity_url

    def resolve(self, handle: str, api_key: str) -> str:
        """SteamID64 for `handle`; canonical ids pass through without a lookup."""
        handle = (handle or "").strip()
        if CANONICAL_ID_RE.match(handle):
            return handle
        if not handle:
            raise IdentityNotFound("Please enter a SteamID64 or vanity name.")

        result = self._lookup(handle, api_key)
        if result.success and result.steam_id:
            logger.info("Resolved %r to %s", handle, result.steam_id)
            return result.steam_id
        raise IdentityNotFound(result.message)


# ---------------------------------------------------------------------------
# Library (retry + cancellation)
# ---------------------------------------------------------------------------

class _LibraryAttemptFailed(Exception):
    pass


class LibraryFetcher:
    """GetOwnedGames with a fixed-delay retry loop.

    Up to `max_attempts` attempts, `retry_delay` seconds apart. After a
    failed attempt the token is checked before anything else; once it is
    triggered the loop ends with Cancelled and no further sleep.
    """

    def __init__(
        self,
        get_games: Callable[[str, str], LibraryResult] | None = None,
        max_attempts: int = config.LIBRARY_MAX_ATTEMPTS,
        retry_delay: float = config.LIBRARY_RETRY_DELAY,
        sleep: Callable[[float], object] | None = None,
    ):
        self._get_games = get_games or steam_api.get_owned_games
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    def fetch_library(
        self,
        account_id: str,
        api_key: str,
        cancel_token: CancelToken,
        on_retry: Callable[[int], None] | None = None,
    ) -> list[OwnedGame]:
        def attempt() -> list[OwnedGame]:
            cancel_token.raise_if_cancelled()
            result = self._get_games(account_id, api_key)
            if result.games is None:
                raise _LibraryAttemptFailed(result.details or result.error or "no games in response")
            return result.games

        def before_sleep(retry_state: RetryCallState) -> None:
            n = retry_state.attempt_number
            logger.warning(
                "Library fetch for %s failed (attempt %d/%d): %s; retrying in %ss",
                account_id, n, self.max_attempts, retry_state.outcome.exception(), self.retry_delay,
            )
            if on_retry:
                on_retry(n + 1)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=(
                retry_if_exception(lambda _: not cancel_token.cancelled)
                & retry_if_exception_type((_LibraryAttemptFailed, requests.RequestException))
            ),
            before_sleep=before_sleep,
            sleep=self._sleep or cancel_token.wait,
            reraise=True,
        )
        try:
            return retrying(attempt)
        except (_LibraryAttemptFailed, requests.RequestException) as e:
            if cancel_token.cancelled:
                raise Cancelled() from e
            logger.error("Library fetch for %s gave up after %d attempts: %s", account_id, self.max_attempts, e)
            raise LibraryUnavailable() from e


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class SessionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    RESOLVING = "resolving"
    LOADING_PROFILE = "loading_profile"
    LOADING_LIBRARY = "loading_library"
    AGGREGATING = "aggregating"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SessionState:
    phase: SessionPhase
    attempt: int = 0  # LOADING_LIBRARY only
    reason: str | None = None  # FAILED only
    notice: str | None = None


DISCONNECTED = SessionState(SessionPhase.DISCONNECTED)


class SessionController:
    """Owns the session state machine and the active cancel token.

    `connect()` runs the whole sequence in the calling thread and returns the
    resulting state. Calling it again (from any thread) supersedes whatever
    sequence is still running.
    """

    def __init__(
        self,
        resolver: IdentityResolver | None = None,
        get_profile: Callable[[str, str], ProfileResult] | None = None,
        library: LibraryFetcher | None = None,
        aggregator: UpdateAggregator | None = None,
        capacity: int = config.RECENT_UPDATES_CAPACITY,
        default_api_key: str = config.STEAM_API_KEY,
        on_change: Callable[[SessionState], None] | None = None,
    ):
        self.resolver = resolver or IdentityResolver()
        self._get_profile = get_profile or steam_api.get_player_summary
        self.library = library or LibraryFetcher()
        self.aggregator = aggregator or UpdateAggregator()
        self.capacity = capacity
        self.default_api_key = default_api_key
        self.on_change = on_change

        self._lock = threading.RLock()
        self._token: CancelToken | None = None
        self._api_key: str | None = None
        self._state = DISCONNECTED
        self.profile: PlayerProfile | None = None
        self.games: list[OwnedGame] = []
        self.updates: list[UpdateEvent] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def total_playtime_minutes(self) -> int:
        return sum(g.playtime_minutes for g in self.games)

    # -- state plumbing ---------------------------------------------------

    def _start_sequence(self) -> CancelToken:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = CancelToken()
            self._api_key = None
            self.profile = None
            self.games = []
            self.updates = []
            self._set_state(SessionState(SessionPhase.RESOLVING))
            return self._token

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        logger.info("Session -> %s", state.phase.value)
        if self.on_change:
            self.on_change(state)

    def _publish(self, token: CancelToken, state: SessionState, **data) -> None:
        """Apply `state` (and any of profile/games/updates) if `token` is still active.

        Raises Cancelled when a newer sequence has taken over.
        """
        with self._lock:
            if token is not self._token or token.cancelled:
                logger.debug("Dropping %s from superseded sequence", state.phase.value)
                raise Cancelled()
            for name, value in data.items():
                setattr(self, name, value)
            self._set_state(state)

    # -- sequences --------------------------------------------------------

    def connect(self, handle: str, api_key: str | None = None) -> SessionState:
        """Resolve `handle`, then load profile, library and recent updates."""
        token = self._start_sequence()
        try:
            self._run(token, handle, api_key or self.default_api_key)
        except Cancelled:
            logger.debug("Sequence for %r superseded", handle)
        except PatchWatchError as e:
            logger.info("Sequence for %r failed: %s", handle, e.message)
            self._fail(token, e.message)
        except Exception as e:
            logger.exception("Sequence for %r failed unexpectedly: %s", handle, e)
            self._fail(token, PatchWatchError.default_message)
        return self.state

    def _fail(self, token: CancelToken, reason: str) -> None:
        try:
            self._publish(token, SessionState(SessionPhase.FAILED, reason=reason))
        except Cancelled:
            pass

    def _run(self, token: CancelToken, handle: str, api_key: str) -> None:
        if not api_key:
            raise PatchWatchError("A Steam Web API key is required.")

        steam_id = self.resolver.resolve(handle, api_key)
        self._publish(token, SessionState(SessionPhase.LOADING_PROFILE))

        result = self._get_profile(steam_id, api_key)
        if result.player is None:
            raise ProfileUnavailable(result.error)
        self._publish(token, SessionState(SessionPhase.LOADING_LIBRARY, attempt=1), profile=result.player)

        def on_retry(attempt: int) -> None:
            notice = f"Steam library request failed, retrying ({attempt}/{self.library.max_attempts})..."
            self._publish(token, SessionState(SessionPhase.LOADING_LIBRARY, attempt=attempt, notice=notice))

        games = self.library.fetch_library(steam_id, api_key, token, on_retry=on_retry)
        with self._lock:
            if token is self._token:
                self._api_key = api_key
        self._aggregate(token, games)

    def _aggregate(self, token: CancelToken, games: list[OwnedGame]) -> None:
        if not games or not self._api_key:
            self._publish(token, SessionState(SessionPhase.READY), games=games, updates=[])
            return

        self._publish(token, SessionState(SessionPhase.AGGREGATING), games=games)
        try:
            updates = self.aggregator.aggregate(games, self.capacity, cancel_token=token)
        except Cancelled:
            raise
        except Exception as e:
            logger.exception("Aggregation failed: %s", e)
            raise AggregationFailed() from e
        self._publish(token, SessionState(SessionPhase.READY), updates=updates)

    def refresh_updates(self) -> SessionState:
        """Re-run aggregation for the current library without reloading it."""
        with self._lock:
            token = self._token
            if token is None or self._state.phase is not SessionPhase.READY:
                return self._state
            games = list(self.games)
        try:
            self._aggregate(token, games)
        except Cancelled:
            logger.debug("Refresh superseded")
        except PatchWatchError as e:
            self._fail(token, e.message)
        except Exception as e:
            logger.exception("Refresh failed unexpectedly: %s", e)
            self._fail(token, PatchWatchError.default_message)
        return self.state

    def disconnect(self) -> None:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = None
            self._api_key = None
            self.profile = None
            self.games = []
            self.updates = []
            self._set_state(DISCONNECTED)
