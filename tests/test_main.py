from __future__ import annotations

from datetime import datetime, timezone

import main
from models import OwnedGame, PlayerProfile, UpdateEvent
from session import SessionController

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
DAY = 86400


def test_format_playtime() -> None:
    assert main.format_playtime(0) == "0 hours"
    assert main.format_playtime(2847) == "47 hours"
    assert main.format_playtime(90000) == "1,500 hours"


def test_format_date_relative_then_absolute() -> None:
    ts = int(NOW.timestamp())
    assert main.format_date(ts - DAY, NOW) == "Yesterday"
    assert main.format_date(ts - 3 * DAY, NOW) == "3 days ago"
    assert main.format_date(ts - 30 * DAY, NOW) == "Dec 16"


def test_generate_markdown_lists_updates_with_plain_text() -> None:
    controller = SessionController(default_api_key="KEY")
    controller.profile = PlayerProfile(steam_id="1", persona_name="GamerTag123", profile_url="https://p/")
    controller.games = [OwnedGame(id=730, name="Counter-Strike 2", playtime_minutes=120, icon_ref="cs2")]
    controller.updates = [UpdateEvent(
        event_id="1", game_id=730, recency_key=int(NOW.timestamp()), title="[b]Release Notes[/b]",
        body="[list][*]Fixed &amp; improved[/list]", source_game_name="Counter-Strike 2", source_game_icon="cs2",
    )]

    md = main.generate_markdown(controller)

    assert md.startswith("# Patch Watch - GamerTag123")
    assert "| Counter-Strike 2 | 2 hours |" in md
    assert "### Release Notes" in md
    assert "Fixed & improved" in md
    assert "/apps/730/cs2.jpg" in md


def test_generate_markdown_without_updates() -> None:
    controller = SessionController(default_api_key="KEY")
    md = main.generate_markdown(controller)
    assert "*No games*" in md
    assert "*No recent updates found*" in md


def test_escaped_entities_are_decoded_only_once() -> None:
    controller = SessionController(default_api_key="KEY")
    controller.updates = [UpdateEvent(
        event_id="1", game_id=730, recency_key=int(NOW.timestamp()), title="R&amp;amp;D notes",
        body="Use &amp;amp; in configs", source_game_name="Counter-Strike 2",
    )]

    md = main.generate_markdown(controller)

    assert "### R&amp;D notes" in md
    assert "Use &amp; in configs" in md
