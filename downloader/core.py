"""
Spreadsheet download and temp-file management.

Each (family, period, region) publication lives at::

    {BASE_URL}/{month}_{year}/{FAMILY}/{region}.xls

download_to_temp() streams it into the temp directory under a unique name
and verifies the workbook signature, so an HTML error page saved as
``.xls`` is rejected as a DownloadError instead of reaching the parser.
TempFileStore finds those files again for the metadata pass and removes
them all at the end of a run.
"""

import logging
import time
from pathlib import Path

import requests

from downloader.sources import HEADERS
from pipeline.errors import DownloadError
from utils.common import format_bytes
from utils.patterns import SPREADSHEET_EXTENSIONS

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
CHUNK_SIZE = 8192

# Optimization: Global session reuse for connection pooling
_global_session = None


# ---- Session ----

def get_session() -> requests.Session:
    """Get or create global HTTP session with retry/pooling config."""
    global _global_session
    if _global_session is not None:
        return _global_session

    _global_session = requests.Session()
    _global_session.headers.update(HEADERS)
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=10,
        pool_maxsize=20,
        max_retries=requests.adapters.Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
        ),
    )
    _global_session.mount("https://", adapter)
    _global_session.mount("http://", adapter)
    return _global_session


def _close_session():
    """Close global session and cleanup."""
    global _global_session
    if _global_session:
        _global_session.close()
    _global_session = None


# ---- Download helpers ----

# The publisher serves OOXML workbooks under .xls names too
_MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    ".xls":  (b"\xd0\xcf\x11\xe0", b"PK\x03\x04"),
    ".xlsx": (b"PK\x03\x04",),
}


def _verify_download(dest_path: Path) -> bool:
    """Verify a downloaded file is a non-empty workbook.

    Returns False if it is empty or has an unexpected magic signature
    (e.g. an HTML error page saved as .xls).
    """
    try:
        size = dest_path.stat().st_size
    except OSError:
        return False

    if size == 0:
        return False

    expected = _MAGIC_BYTES.get(dest_path.suffix.lower())
    if expected is None:
        return True

    try:
        with open(dest_path, "rb") as fh:
            header = fh.read(4)
        return header in expected
    except OSError:
        return False


def build_url(base: str, family: str, period, region: str) -> str:
    """Spreadsheet URL for one publication (month is not zero-padded)."""
    return f"{base.rstrip('/')}/{period.month}_{period.year}/{family.upper()}/{region.upper()}.xls"


class TempFileStore:
    """Naming, lookup and cleanup of downloaded spreadsheets.

    Files are named ``{family}_{region}_{month}{year}_{timestamp_ms}.xls``
    so repeated downloads of the same publication never collide.
    """

    def __init__(self, temp_dir: Path | str = "temp"):
        self.temp_dir = Path(temp_dir)

    def _prefix(self, family: str, region: str, period) -> str:
        return f"{family.lower()}_{region.upper()}_{period.month}{period.year}_"

    def path_for(self, family: str, region: str, period) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        path = self.temp_dir / f"{self._prefix(family, region, period)}{stamp}.xls"
        while path.exists():
            stamp += 1
            path = self.temp_dir / f"{self._prefix(family, region, period)}{stamp}.xls"
        return path

    def find(self, family: str, region: str, period) -> Path | None:
        """Newest file for the publication, or None."""
        if not self.temp_dir.exists():
            return None
        prefix = self._prefix(family, region, period)
        matches = []
        for path in self.temp_dir.iterdir():
            if not path.name.startswith(prefix) or not SPREADSHEET_EXTENSIONS.search(path.name):
                continue
            stamp = path.stem[len(prefix):]
            if stamp.isdigit():
                matches.append((int(stamp), path))
        if not matches:
            return None
        return max(matches)[1]

    def sweep(self, family: str) -> int:
        """Remove every temp spreadsheet of the family; returns the count."""
        if not self.temp_dir.exists():
            return 0
        prefix = f"{family.lower()}_"
        removed = 0
        for path in list(self.temp_dir.iterdir()):
            if path.name.startswith(prefix) and SPREADSHEET_EXTENSIONS.search(path.name):
                try:
                    path.unlink()
                    removed += 1
                except OSError as exc:
                    logger.warning("Could not remove temp file %s: %s", path, exc)
        if removed:
            logger.info("Removed %d %s temp file(s) from %s", removed, family.upper(), self.temp_dir)
        return removed


def download_to_temp(
    url: str,
    dest_path: Path,
    session: requests.Session | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> Path:
    """Stream ``url`` into ``dest_path`` and verify the workbook signature.

    Raises:
        DownloadError: HTTP error status, network failure, or a payload that
            is not a workbook.  No partial file is left behind.
    """
    session = session or get_session()
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with session.get(url, timeout=timeout, stream=True) as resp:
            resp.raise_for_status()
            status_code = resp.status_code
            downloaded = 0
            with open(dest_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        downloaded += len(chunk)
    except requests.HTTPError as exc:
        dest_path.unlink(missing_ok=True)
        status = exc.response.status_code if exc.response is not None else None
        raise DownloadError(f"HTTP {status} for {url}", url=url, status_code=status) from exc
    except requests.RequestException as exc:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(f"Download failed for {url}: {exc}", url=url) from exc

    if not _verify_download(dest_path):
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Unexpected file format from {url} (HTML error page?)",
            url=url,
            status_code=status_code,
        )
    logger.debug("Downloaded %s (%s)", dest_path.name, format_bytes(downloaded))
    return dest_path
