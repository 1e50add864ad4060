"""Patch Watch - recent updates for the games in a Steam library."""

import re
import math
import sys
import logging
from datetime import datetime, timezone

import config
from session import SessionController, SessionPhase, SessionState
from steam_api import icon_url, strip_bbcode

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.WARNING), format="%(message)s")
logger = logging.getLogger(__name__)

SUMMARY_CHARS = 200
TOP_GAMES = 10


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def _fmt(n: int | float | None) -> str:
    if n is None:
        return "-"
    if isinstance(n, float):
        return f"{int(n):,}"
    return f"{n:,}"


def format_playtime(minutes: int) -> str:
    return f"{_fmt(minutes // 60)} hours"


def format_date(ts: int, now: datetime | None = None) -> str:
    """'Yesterday', 'N days ago' within a week, otherwise 'Mon DD'."""
    now = now or datetime.now(timezone.utc)
    date = datetime.fromtimestamp(ts, tz=timezone.utc)
    diff_days = math.ceil(abs((now - date).total_seconds()) / 86400)
    if diff_days == 1:
        return "Yesterday"
    if diff_days <= 7:
        return f"{diff_days} days ago"
    return date.strftime("%b %d")


def _sanitize_text(text: str) -> str:
    """Plain, single-paragraph text for a markdown table cell or bullet."""
    if not text:
        return ""
    text = strip_bbcode(text)
    # Strip zero-width spaces and other invisible chars
    text = re.sub(r"[\u200b\u200c\u200d\ufeff]", "", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def _summary(text: str) -> str:
    text = _sanitize_text(text)
    if len(text) > SUMMARY_CHARS:
        text = text[:SUMMARY_CHARS - 3] + "..."
    return text


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def generate_markdown(controller: SessionController) -> str:
    profile = controller.profile
    games = controller.games
    now = datetime.now(timezone.utc)

    lines = [f"# Patch Watch - {profile.persona_name if profile else 'Unknown player'}", ""]
    if profile:
        lines.append(f"Profile: {profile.profile_url}")
        lines.append("")
    lines.append(f"- Games: {_fmt(len(games))}")
    lines.append(f"- Total playtime: {format_playtime(controller.total_playtime_minutes)}")
    lines += ["", "## Most played", ""]
    if games:
        lines.append("| Game | Playtime |")
        lines.append("|------|----------|")
        for g in games[:TOP_GAMES]:
            lines.append(f"| {g.name} | {format_playtime(g.playtime_minutes)} |")
    else:
        lines.append("*No games*")

    lines += ["", "## Latest updates", ""]
    if not controller.updates:
        lines.append("*No recent updates found*")
    for u in controller.updates:
        lines.append(f"### {_sanitize_text(u.title) or 'Untitled update'}")
        lines.append("")
        lines.append(f"*{u.source_game_name} - {format_date(u.recency_key, now)}*")
        icon = icon_url(u.game_id, u.source_game_icon)
        if u.title_image or icon:
            lines.append("")
            lines.append(f"![{u.source_game_name}]({u.title_image or icon})")
        summary = _summary(u.body)
        if summary:
            lines += ["", summary]
        lines.append("")

    return "\n".join(lines)


def _print_progress(state: SessionState) -> None:
    if state.notice:
        print(f"  {state.notice}")
    elif state.phase is not SessionPhase.FAILED:
        print(f"  {state.phase.value.replace('_', ' ')}...")


def main():
    if len(sys.argv) < 2:
        print("usage: main.py <steamid64-or-vanity-name> [api-key]")
        sys.exit(2)

    handle = sys.argv[1]
    api_key = sys.argv[2] if len(sys.argv) > 2 else None

    print()
    print(f"  Patch Watch - Connecting to {handle}...")
    print()

    controller = SessionController(on_change=_print_progress)
    state = controller.connect(handle, api_key)

    if state.phase is SessionPhase.FAILED:
        print()
        print(f"  ERROR: {state.reason}")
        sys.exit(1)

    print()
    print(f"  Done! {len(controller.updates)} updates across {len(controller.games)} games.")
    print()
    print(generate_markdown(controller))


if __name__ == "__main__":
    main()
