"""
CNC spreadsheet downloader package.

Fetches the monthly index spreadsheets from the publisher's upload host and
manages the temp directory they land in.  The Playwright browser used by
the portal fallback (PortalBrowser) lives here as well.
"""

# ---- Shared utilities (re-exported for convenience) ----
from utils import format_bytes

# ---- Sources: endpoints, headers, browser ----
from downloader.sources import (
    HEADERS,
    USER_AGENT,
    PortalBrowser,
)

# ---- Core: session, download, temp files ----
from downloader.core import (
    TempFileStore,
    _close_session,
    _verify_download,
    build_url,
    download_to_temp,
    get_session,
)

__all__ = [
    "HEADERS",
    "PortalBrowser",
    "TempFileStore",
    "USER_AGENT",
    "build_url",
    "download_to_temp",
    "format_bytes",
    "get_session",
]
