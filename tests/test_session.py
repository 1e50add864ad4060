from __future__ import annotations

import threading
from unittest.mock import Mock

import pytest
import requests

from aggregator import EventSourceClient, UpdateAggregator
from models import (
    Cancelled,
    CancelToken,
    EventsResult,
    IdentityNotFound,
    LibraryResult,
    LibraryUnavailable,
    LookupResult,
    OwnedGame,
    PlayerProfile,
    ProfileResult,
)
from session import IdentityResolver, LibraryFetcher, SessionController, SessionPhase

STEAM_ID = "76561198123456789"
PLAYER = PlayerProfile(steam_id=STEAM_ID, persona_name="GamerTag123", profile_url="https://steamcommunity.com/profiles/76561198123456789/")
LIBRARY = [
    OwnedGame(id=730, name="Counter-Strike 2", playtime_minutes=2847, icon_ref="cs2"),
    OwnedGame(id=570, name="Dota 2", playtime_minutes=1523, icon_ref="dota"),
]


def _events(app_id, event_filter) -> EventsResult:
    return EventsResult(events=[{"gid": f"g{app_id}", "announcement_body": {"headline": "Patch", "posttime": app_id}}])


def _controller(**overrides) -> SessionController:
    kwargs = dict(
        resolver=IdentityResolver(lambda handle, key: LookupResult(success=True, steam_id=STEAM_ID)),
        get_profile=lambda steam_id, key: ProfileResult(player=PLAYER),
        library=LibraryFetcher(lambda steam_id, key: LibraryResult(games=list(LIBRARY)), retry_delay=0),
        aggregator=UpdateAggregator(source=EventSourceClient(_events)),
        capacity=75,
        default_api_key="KEY",
    )
    kwargs.update(overrides)
    return SessionController(**kwargs)


# ---------------------------------------------------------------------------
# IdentityResolver
# ---------------------------------------------------------------------------

def test_canonical_id_skips_lookup() -> None:
    lookup = Mock()
    assert IdentityResolver(lookup).resolve(STEAM_ID, "KEY") == STEAM_ID
    lookup.assert_not_called()


def test_vanity_name_is_looked_up_once() -> None:
    lookup = Mock(return_value=LookupResult(success=True, steam_id=STEAM_ID))
    assert IdentityResolver(lookup).resolve("  johndoe ", "KEY") == STEAM_ID
    lookup.assert_called_once_with("johndoe", "KEY")


@pytest.mark.parametrize("result", [
    LookupResult(success=False, message="No match"),
    LookupResult(success=True, steam_id=None),
])
def test_failed_lookup_raises_identity_not_found(result: LookupResult) -> None:
    with pytest.raises(IdentityNotFound):
        IdentityResolver(Mock(return_value=result)).resolve("johndoe", "KEY")


def test_lookup_message_is_passed_through() -> None:
    resolver = IdentityResolver(Mock(return_value=LookupResult(success=False, message="No match")))
    with pytest.raises(IdentityNotFound) as exc:
        resolver.resolve("johndoe", "KEY")
    assert exc.value.message == "No match"


def test_short_numeric_handle_is_treated_as_vanity_name() -> None:
    lookup = Mock(return_value=LookupResult(success=True, steam_id=STEAM_ID))
    IdentityResolver(lookup).resolve("12345", "KEY")
    lookup.assert_called_once()


# ---------------------------------------------------------------------------
# LibraryFetcher
# ---------------------------------------------------------------------------

def test_library_gives_up_after_exactly_five_attempts() -> None:
    get_games = Mock(return_value=LibraryResult(error="Steam API returned error"))
    sleeps: list[float] = []
    fetcher = LibraryFetcher(get_games, max_attempts=5, retry_delay=5, sleep=sleeps.append)

    with pytest.raises(LibraryUnavailable):
        fetcher.fetch_library(STEAM_ID, "KEY", CancelToken())

    assert get_games.call_count == 5
    assert sleeps == [5, 5, 5, 5]


def test_library_retries_transport_exceptions_too() -> None:
    get_games = Mock(side_effect=[requests.ConnectionError("reset"), LibraryResult(games=LIBRARY)])
    fetcher = LibraryFetcher(get_games, retry_delay=0)
    assert fetcher.fetch_library(STEAM_ID, "KEY", CancelToken()) == LIBRARY


def test_library_recovers_and_reports_each_retry() -> None:
    get_games = Mock(side_effect=[
        LibraryResult(error="boom"),
        LibraryResult(error="boom"),
        LibraryResult(games=LIBRARY),
    ])
    notices: list[int] = []
    fetcher = LibraryFetcher(get_games, retry_delay=0)

    assert fetcher.fetch_library(STEAM_ID, "KEY", CancelToken(), on_retry=notices.append) == LIBRARY
    assert notices == [2, 3]


def test_cancel_after_failed_attempt_ends_without_waiting() -> None:
    token = CancelToken()
    sleeps: list[float] = []

    def get_games(steam_id, key):
        token.cancel()
        return LibraryResult(error="boom")

    fetcher = LibraryFetcher(get_games, retry_delay=5, sleep=sleeps.append)
    with pytest.raises(Cancelled):
        fetcher.fetch_library(STEAM_ID, "KEY", token)
    assert sleeps == []


def test_already_cancelled_token_makes_no_request() -> None:
    token = CancelToken()
    token.cancel()
    get_games = Mock()
    with pytest.raises(Cancelled):
        LibraryFetcher(get_games, retry_delay=0).fetch_library(STEAM_ID, "KEY", token)
    get_games.assert_not_called()


def test_cancel_during_wait_wakes_the_default_sleep() -> None:
    token = CancelToken()
    get_games = Mock(return_value=LibraryResult(error="boom"))
    fetcher = LibraryFetcher(get_games, retry_delay=30)
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    try:
        with pytest.raises(Cancelled):
            fetcher.fetch_library(STEAM_ID, "KEY", token)
    finally:
        timer.cancel()
    assert get_games.call_count == 1


# ---------------------------------------------------------------------------
# SessionController
# ---------------------------------------------------------------------------

def test_connect_runs_full_sequence() -> None:
    phases: list[SessionPhase] = []
    controller = _controller(on_change=lambda s: phases.append(s.phase))

    state = controller.connect("johndoe")

    assert state.phase is SessionPhase.READY
    assert controller.profile == PLAYER
    assert controller.games == LIBRARY
    assert controller.total_playtime_minutes == 2847 + 1523
    assert [(u.event_id, u.source_game_name) for u in controller.updates] == [
        ("g730", "Counter-Strike 2"),
        ("g570", "Dota 2"),
    ]
    assert phases == [
        SessionPhase.RESOLVING,
        SessionPhase.LOADING_PROFILE,
        SessionPhase.LOADING_LIBRARY,
        SessionPhase.AGGREGATING,
        SessionPhase.READY,
    ]


def test_missing_api_key_fails_before_any_call() -> None:
    get_profile = Mock()
    controller = _controller(default_api_key="", get_profile=get_profile)
    state = controller.connect(STEAM_ID)
    assert state.phase is SessionPhase.FAILED
    assert "API key" in state.reason
    get_profile.assert_not_called()


def test_unresolvable_handle_fails_with_lookup_message() -> None:
    controller = _controller(resolver=IdentityResolver(lambda h, k: LookupResult(success=False, message="No match")))
    state = controller.connect("nobody")
    assert state.phase is SessionPhase.FAILED
    assert state.reason == "No match"


def test_profile_error_is_surfaced_verbatim() -> None:
    controller = _controller(get_profile=lambda steam_id, key: ProfileResult(error="Player not found"))
    state = controller.connect(STEAM_ID)
    assert state.phase is SessionPhase.FAILED
    assert state.reason == "Player not found"
    assert controller.games == []


def test_library_failure_after_retries_is_generic_and_notices_are_published() -> None:
    states = []
    controller = _controller(
        library=LibraryFetcher(lambda s, k: LibraryResult(error="secret upstream detail"), retry_delay=0),
        on_change=states.append,
    )
    state = controller.connect(STEAM_ID)

    assert state.phase is SessionPhase.FAILED
    assert state.reason == LibraryUnavailable.default_message
    attempts = [s.attempt for s in states if s.phase is SessionPhase.LOADING_LIBRARY]
    assert attempts == [1, 2, 3, 4, 5]
    assert all(s.notice for s in states if s.phase is SessionPhase.LOADING_LIBRARY and s.attempt > 1)
    assert sum(1 for s in states if s.phase is SessionPhase.FAILED) == 1


def test_empty_library_skips_aggregation() -> None:
    aggregator = Mock()
    controller = _controller(
        library=LibraryFetcher(lambda s, k: LibraryResult(games=[]), retry_delay=0),
        aggregator=aggregator,
    )
    assert controller.connect(STEAM_ID).phase is SessionPhase.READY
    assert controller.updates == []
    aggregator.aggregate.assert_not_called()


def test_aggregation_failure_is_generic() -> None:
    aggregator = Mock()
    aggregator.aggregate.side_effect = RuntimeError("internal detail")
    controller = _controller(aggregator=aggregator)
    state = controller.connect(STEAM_ID)
    assert state.phase is SessionPhase.FAILED
    assert state.reason == "Failed to load recent updates."
    assert "internal detail" not in state.reason


def test_new_connect_supersedes_a_running_one() -> None:
    release = threading.Event()
    entered = threading.Event()
    other = PlayerProfile(steam_id="76561198000000001", persona_name="Other")

    def get_profile(steam_id, key):
        if steam_id == STEAM_ID:
            entered.set()
            release.wait(5)
            return ProfileResult(player=PLAYER)
        return ProfileResult(player=other)

    states = []
    controller = _controller(resolver=IdentityResolver(), get_profile=get_profile, on_change=states.append)

    first = threading.Thread(target=controller.connect, args=(STEAM_ID,))
    first.start()
    assert entered.wait(5)

    assert controller.connect("76561198000000001").phase is SessionPhase.READY
    release.set()
    first.join(5)

    assert controller.state.phase is SessionPhase.READY
    assert controller.profile == other
    assert states[-1].phase is SessionPhase.READY
    assert not any(s.phase is SessionPhase.FAILED for s in states)


def test_disconnect_resets_everything() -> None:
    controller = _controller()
    controller.connect(STEAM_ID)
    controller.disconnect()

    assert controller.state.phase is SessionPhase.DISCONNECTED
    assert controller.profile is None
    assert controller.games == []
    assert controller.updates == []


def test_refresh_updates_reaggregates_current_library() -> None:
    calls = []

    def events(app_id, event_filter):
        calls.append(app_id)
        return _events(app_id, event_filter)

    controller = _controller(aggregator=UpdateAggregator(source=EventSourceClient(events)))
    controller.connect(STEAM_ID)
    assert controller.refresh_updates().phase is SessionPhase.READY
    assert sorted(calls) == [570, 570, 730, 730]


def test_refresh_is_a_no_op_when_not_ready() -> None:
    aggregator = Mock()
    controller = _controller(aggregator=aggregator)
    assert controller.refresh_updates().phase is SessionPhase.DISCONNECTED
    aggregator.aggregate.assert_not_called()


@pytest.mark.parametrize("boom", [AttributeError("'NoneType' object has no attribute 'get'"), RuntimeError("bug")])
def test_unexpected_profile_error_fails_generically(boom: Exception) -> None:
    def get_profile(steam_id, key):
        raise boom

    state = _controller(get_profile=get_profile).connect(STEAM_ID)

    assert state.phase is SessionPhase.FAILED
    assert state.reason == "Something went wrong."


def test_unexpected_library_error_is_not_retried_and_fails_generically() -> None:
    get_games = Mock(side_effect=TypeError("bad payload"))
    controller = _controller(library=LibraryFetcher(get_games, retry_delay=0))

    state = controller.connect(STEAM_ID)

    assert state.phase is SessionPhase.FAILED
    assert state.reason == "Something went wrong."
    assert get_games.call_count == 1


def test_unexpected_error_during_refresh_fails_generically() -> None:
    armed = False

    def on_change(state):
        if armed and state.phase is SessionPhase.AGGREGATING:
            raise RuntimeError("listener bug")

    controller = _controller(on_change=on_change)
    controller.connect(STEAM_ID)
    armed = True

    state = controller.refresh_updates()

    assert state.phase is SessionPhase.FAILED
    assert state.reason == "Something went wrong."


def test_superseded_aggregation_cannot_overwrite_newer_updates() -> None:
    other_id = "76561198000000001"
    release = threading.Event()
    entered = threading.Event()

    def events(app_id, event_filter):
        if app_id == 730:
            entered.set()
            release.wait(5)
        return _events(app_id, event_filter)

    def get_games(steam_id, key):
        if steam_id == STEAM_ID:
            return LibraryResult(games=list(LIBRARY))
        return LibraryResult(games=[OwnedGame(id=440, name="Team Fortress 2", playtime_minutes=654, icon_ref="tf2")])

    states = []
    controller = _controller(
        resolver=IdentityResolver(),
        library=LibraryFetcher(get_games, retry_delay=0),
        aggregator=UpdateAggregator(source=EventSourceClient(events)),
        on_change=states.append,
    )

    first = threading.Thread(target=controller.connect, args=(STEAM_ID,))
    first.start()
    assert entered.wait(5)

    assert controller.connect(other_id).phase is SessionPhase.READY
    release.set()
    first.join(5)
    assert not first.is_alive()

    assert controller.state.phase is SessionPhase.READY
    assert [u.key for u in controller.updates] == [("g440", 440)]
    assert [g.id for g in controller.games] == [440]
    assert states[-1].phase is SessionPhase.READY
    assert not any(s.phase is SessionPhase.FAILED for s in states)
