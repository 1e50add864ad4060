"""Runtime settings for Patch Watch, read once from the environment."""

import os

STEAM_API_KEY = os.environ.get("STEAM_API_KEY", "")

HTTP_TIMEOUT = int(os.environ.get("HTTP_TIMEOUT", 10))  # seconds

# How many recent updates the feed keeps across the whole library
RECENT_UPDATES_CAPACITY = int(os.environ.get("RECENT_UPDATES_CAPACITY", 75))

# Per-game event request: how many events after "now" and which event types.
# 13 = small update / patch notes, 14 = regular update.
EVENT_COUNT_AFTER = int(os.environ.get("EVENT_COUNT_AFTER", 3))
EVENT_TYPE_FILTER = os.environ.get("EVENT_TYPE_FILTER", "13,14")

# GetOwnedGames is flaky; fixed-delay retries
LIBRARY_MAX_ATTEMPTS = int(os.environ.get("LIBRARY_MAX_ATTEMPTS", 5))
LIBRARY_RETRY_DELAY = float(os.environ.get("LIBRARY_RETRY_DELAY", 5))  # seconds

# 0 = one worker per owned game
FANOUT_WORKERS = int(os.environ.get("FANOUT_WORKERS", 0))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING").upper()
