import logging
import threading
import time
from urllib.parse import urljoin

import requests

from gallery_backend import log_event
from gallery_models import BackendError, GalleryError, NetworkFetchError


COOLDOWN_SECONDS = 5
FETCH_TIMEOUT_SECONDS = 30

LOGGER = logging.getLogger("poster_gallery.download")


def record_download(gateway, poster_id, catalog=None):
    """Persist one more download for ``poster_id`` and mirror it locally.

    Raises ``BackendError`` when either the read or the write fails; the local
    catalog is only patched once the new count is stored.
    """
    row = gateway.get(poster_id, ["download_count"])
    new_count = int(row.get("download_count") or 0) + 1
    gateway.update(poster_id, {"download_count": new_count})
    if catalog is not None:
        catalog.patch_local(poster_id, download_count=new_count)
    log_event(LOGGER, logging.INFO, "download.counted", poster_id=poster_id, download_count=new_count)
    return new_count


def fetch_asset(url, base_url="", timeout=FETCH_TIMEOUT_SECONDS):
    target = urljoin(base_url.rstrip("/") + "/", url) if base_url and url.startswith("/") else url
    try:
        resp = requests.get(target, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise NetworkFetchError(f"Failed to fetch image: {e}") from e
    return resp.content


class DownloadCounter:
    """Gallery downloads: cooldown, confirmed count, then the file."""

    def __init__(self, gateway, catalog=None, fetch=None, sleep=time.sleep, cooldown_seconds=COOLDOWN_SECONDS, base_url=""):
        self.gateway = gateway
        self.catalog = catalog
        self.fetch = fetch or (lambda url: fetch_asset(url, base_url))
        self.sleep = sleep
        self.cooldown_seconds = int(cooldown_seconds)
        self.countdowns = {}
        self.last_error = None
        self._lock = threading.Lock()

    def busy(self, poster_id):
        with self._lock:
            return poster_id in self.countdowns

    def _tick(self, poster_id, value):
        with self._lock:
            self.countdowns[poster_id] = value

    def _cooldown(self, poster_id):
        for remaining in range(self.cooldown_seconds, 0, -1):
            self._tick(poster_id, remaining)
            self.sleep(1)
        self._tick(poster_id, 0)

    def download(self, poster_id, url, title, save):
        with self._lock:
            if poster_id in self.countdowns:
                raise GalleryError("Download already in progress.")
            self.countdowns[poster_id] = self.cooldown_seconds
        self.last_error = None
        try:
            self._cooldown(poster_id)
            try:
                new_count = record_download(self.gateway, poster_id, self.catalog)
            except BackendError as e:
                log_event(LOGGER, logging.ERROR, "download.count_failed", poster_id=poster_id, error=str(e))
                raise BackendError("Failed to update download count.") from e
            data = self.fetch(url)
            save(title or "poster", data)
            log_event(LOGGER, logging.INFO, "download.saved", poster_id=poster_id, bytes=len(data))
            return new_count
        except GalleryError as e:
            self.last_error = str(e)
            raise
        finally:
            with self._lock:
                self.countdowns.pop(poster_id, None)
