"""Steam Web API and store event calls for Patch Watch.

Every public function here is fail-soft: transport errors, bad status codes
and malformed JSON are logged and returned as a tagged result instead of
being raised.
"""

import re
import json
import html as html_module
import logging
import requests
from bs4 import BeautifulSoup
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

import config
from models import (
    EventFilter,
    EventsResult,
    LibraryResult,
    LookupResult,
    OwnedGame,
    PlayerProfile,
    ProfileResult,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.steampowered.com"
STORE_EVENTS_URL = "https://store.steampowered.com/events/ajaxgetadjacentpartnerevents/"
APP_ICON_URL = "https://media.steampowered.com/steamcommunity/public/images/apps/{appid}/{hash}.jpg"
CLAN_IMAGE_BASE = "https://clan.cloudflare.steamstatic.com/images"
CLAN_MEDIA_BASE = "https://media.steampowered.com/steamcommunity/public/images/clans"

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; PatchWatch/1.0)",
}


def _is_transient(exc: BaseException) -> bool:
    """Connection errors, timeouts and 5xx are worth retrying; 4xx are not."""
    if isinstance(exc, requests.HTTPError):
        resp = exc.response
        return resp is None or resp.status_code >= 500
    return isinstance(exc, requests.RequestException)


@retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def _http_get(url: str, params: dict | None = None, timeout: int = config.HTTP_TIMEOUT) -> requests.Response:
    """HTTP GET with automatic retry on transient failures."""
    resp = requests.get(url, params=params, headers=HEADERS, timeout=timeout)
    resp.raise_for_status()
    return resp


# Single attempt; callers that run their own retry loop use this one.
_http_get_once = _http_get.retry_with(stop=stop_after_attempt(1))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_details(exc: requests.RequestException) -> str:
    """Plain-text body of a failed response (Steam error pages are HTML)."""
    resp = getattr(exc, "response", None)
    if resp is None or not resp.text:
        return str(exc)
    text = BeautifulSoup(resp.text, "html.parser").get_text(" ", strip=True)
    text = re.sub(r"\s+", " ", html_module.unescape(text)).strip()
    if len(text) > 200:
        text = text[:197] + "..."
    return text


def _response_body(data) -> dict:
    """The `response` object of a Web API reply; {} when missing or not an object."""
    body = data.get("response") if isinstance(data, dict) else None
    return body if isinstance(body, dict) else {}


def icon_url(app_id: int, icon_hash: str) -> str | None:
    if not icon_hash:
        return None
    return APP_ICON_URL.format(appid=app_id, hash=icon_hash)


_HASH40 = re.compile(r"^[a-f0-9]{40}\.(png|jpg|jpeg)$", re.I)
_CLAN_HASH40 = re.compile(r"^[0-9]+/[a-f0-9]{40}\.(png|jpg|jpeg)$", re.I)
_HASH32 = re.compile(r"^[a-f0-9]{32}\.(png|jpg|jpeg)$", re.I)
_IMGUR = re.compile(r"^[a-zA-Z0-9]+\.(png|jpg|jpeg|gif)$", re.I)


def _image_ref_to_url(ref: str, clan_id: str | int | None) -> str:
    if re.match(r"^https?://", ref):
        return ref
    if clan_id and _HASH40.match(ref):
        return f"{CLAN_IMAGE_BASE}/{clan_id}/{ref}"
    if _CLAN_HASH40.match(ref) or _HASH40.match(ref):
        return f"{CLAN_IMAGE_BASE}/{ref}"
    if _HASH32.match(ref):
        return f"{CLAN_MEDIA_BASE}/{ref}"
    if _IMGUR.match(ref):
        return f"https://i.imgur.com/{ref}"
    return f"{CLAN_IMAGE_BASE}/{ref}"


def title_image_url(jsondata: str | None, clan_id: str | int | None = None) -> str | None:
    """Pick the header image for an event from its `jsondata` blob.

    Tries `localized_title_image` first, then `localized_capsule_image`.
    Returns None when neither is present or the blob does not parse.
    """
    if not jsondata:
        return None
    try:
        data = json.loads(jsondata)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    for field in ("localized_title_image", "localized_capsule_image"):
        refs = data.get(field)
        if isinstance(refs, list) and refs and isinstance(refs[0], str) and refs[0]:
            return _image_ref_to_url(refs[0], clan_id)
    return None


def strip_bbcode(text: str) -> str:
    """Strip Steam BBCode markup and return plain text."""
    if not text:
        return ""
    # [url=X]text[/url] -> text
    text = re.sub(r"\[url=[^\]]*\](.*?)\[/url\]", r"\1", text, flags=re.S)
    # [img]...[/img] and video embeds -> remove entirely
    text = re.sub(r"\[img\].*?\[/img\]", "", text, flags=re.S)
    text = re.sub(r"\[previewyoutube=[^\]]*\]\s*\[/previewyoutube\]", "", text)
    # [*] list bullets -> newline
    text = re.sub(r"\[\*\]", "\n", text)
    # Catch-all remaining [...] tags
    text = re.sub(r"\[/?[a-zA-Z][^\]]*\]", "", text)
    # Steam-specific placeholders: {STEAM_CLAN_IMAGE}, etc.
    text = re.sub(r"\{STEAM_CLAN_IMAGE\}[^\s]*", "", text)
    text = re.sub(r"\{[A-Z_]+\}", "", text)
    text = html_module.unescape(text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


# ---------------------------------------------------------------------------
# ISteamUser: vanity resolution + player summaries
# ---------------------------------------------------------------------------

def resolve_vanity_url(username: str, api_key: str) -> LookupResult:
    """Resolve a vanity name (steamcommunity.com/id/<name>) to a SteamID64."""
    if not username:
        return LookupResult(success=False, message="Missing username.")
    if not api_key:
        return LookupResult(success=False, message="Missing Steam API key.")

    url = f"{API_BASE}/ISteamUser/ResolveVanityURL/v1/"
    try:
        resp = _http_get(url, params={"key": api_key, "vanityurl": username})
        data = resp.json()
    except requests.RequestException as e:
        logger.error("ResolveVanityURL failed for %r: %s", username, e)
        return LookupResult(success=False, message="Failed to contact Steam API.")
    except ValueError as e:
        logger.error("ResolveVanityURL returned bad JSON for %r: %s", username, e)
        return LookupResult(success=False, message="Failed to contact Steam API.")

    body = _response_body(data)
    steam_id = body.get("steamid")
    if body.get("success") == 1 and steam_id:
        return LookupResult(success=True, steam_id=str(steam_id))
    return LookupResult(success=False, message=body.get("message") or "SteamID not found.")


def get_player_summary(steam_id: str, api_key: str) -> ProfileResult:
    """Fetch the public profile for one SteamID64."""
    url = f"{API_BASE}/ISteamUser/GetPlayerSummaries/v0002/"
    try:
        resp = _http_get(url, params={"key": api_key, "steamids": steam_id})
        data = resp.json()
    except requests.RequestException as e:
        logger.error("GetPlayerSummaries failed for %s: %s", steam_id, e)
        return ProfileResult(error="Steam API returned error", details=_error_details(e))
    except ValueError as e:
        logger.error("GetPlayerSummaries returned bad JSON for %s: %s", steam_id, e)
        return ProfileResult(error="Failed to fetch profile.")

    players = _response_body(data).get("players")
    if not isinstance(players, list) or not players:
        return ProfileResult(error="Player not found")
    try:
        return ProfileResult(player=PlayerProfile.from_raw(players[0]))
    except (AttributeError, KeyError, TypeError) as e:
        logger.error("Malformed player summary for %s: %s", steam_id, e)
        return ProfileResult(error="Player not found")


# ---------------------------------------------------------------------------
# IPlayerService: owned games
# ---------------------------------------------------------------------------

def get_owned_games(steam_id: str, api_key: str) -> LibraryResult:
    """Fetch the owned-game list, sorted by playtime (most played first).

    One transport attempt only; the library fetcher owns the retry policy.
    A response with no `games` key (private profile, upstream hiccup) is an
    error, not an empty library.
    """
    if not steam_id or not api_key:
        return LibraryResult(error="Missing steamid or API key")

    url = f"{API_BASE}/IPlayerService/GetOwnedGames/v1/"
    params = {"key": api_key, "steamid": steam_id, "include_appinfo": "true"}
    try:
        resp = _http_get_once(url, params=params)
        data = resp.json()
    except requests.RequestException as e:
        details = _error_details(e)
        logger.error("GetOwnedGames failed for %s: %s", steam_id, details)
        return LibraryResult(error="Steam API returned error", details=details)
    except ValueError as e:
        logger.error("GetOwnedGames returned bad JSON for %s: %s", steam_id, e)
        return LibraryResult(error="Steam API request failed.", details=str(e))

    raw_games = _response_body(data).get("games")
    if not isinstance(raw_games, list):
        return LibraryResult(error="No games in response")

    games = []
    for raw in raw_games:
        try:
            games.append(OwnedGame.from_raw(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed game record %r: %s", raw, e)
    games.sort(key=lambda g: g.playtime_minutes, reverse=True)
    return LibraryResult(games=games)


# ---------------------------------------------------------------------------
# Store: partner events (patch notes / update announcements)
# ---------------------------------------------------------------------------

def get_partner_events(app_id: int, event_filter: EventFilter | None = None) -> EventsResult:
    """Fetch the next few partner events for an app from the store endpoint."""
    event_filter = event_filter or EventFilter()
    params = {
        "appid": app_id,
        "count_before": 0,
        "count_after": event_filter.count_after,
        "event_type_filter": event_filter.type_filter,
    }
    try:
        resp = _http_get(STORE_EVENTS_URL, params=params)
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("Partner events failed for app %d: %s", app_id, e)
        return EventsResult(error=str(e))

    if isinstance(data, dict) and data.get("success") and isinstance(data.get("events"), list):
        return EventsResult(events=data["events"])
    return EventsResult()
