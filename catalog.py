import logging
import threading
from contextlib import contextmanager

from gallery_backend import log_event, log_exception
from gallery_models import (
    CATEGORIES,
    CATEGORY_ALL,
    BackendError,
    FetchFailed,
    Poster,
    PosterDeleted,
    PosterInserted,
    PosterUpdated,
    parse_timestamp,
)


SORT_LATEST = "latest"
SORT_POPULAR = "popular"
SORT_MODES = (SORT_LATEST, SORT_POPULAR)
FETCH_FAILED_MESSAGE = "Failed to load posters. Please try again later."

LOGGER = logging.getLogger("poster_gallery.catalog")


def filter_and_sort(posters, query="", category=CATEGORY_ALL, sort=SORT_LATEST):
    """Return the display order for ``posters`` without touching the input list."""
    category = category or CATEGORY_ALL
    if category != CATEGORY_ALL and category not in CATEGORIES:
        raise ValueError(f"unknown category: {category!r}")
    if sort not in SORT_MODES:
        raise ValueError(f"unknown sort mode: {sort!r}")

    result = list(posters)
    needle = (query or "").lower()
    if needle:
        result = [p for p in result if needle in (p.title or "").lower() or needle in (p.category or "").lower()]
    if category != CATEGORY_ALL:
        result = [p for p in result if p.category == category]

    if sort == SORT_POPULAR:
        result.sort(key=lambda p: p.download_count or 0, reverse=True)
    else:
        result.sort(key=lambda p: parse_timestamp(p.created_at), reverse=True)
    return result


class CatalogStore:
    """Client-side mirror of the posters table.

    Loaded once with :meth:`load_all` and kept current by realtime change
    events. Other components do not write to the cache, apart from the
    download flows which patch a counter optimistically via :meth:`patch_local`.
    """

    COLUMNS = ["id", "title", "category", "download_url", "psd_url", "font_family", "is_editable", "created_at", "download_count"]

    def __init__(self, gateway):
        self.gateway = gateway
        self.error = None
        self.loaded = False
        self._posters = []
        self._lock = threading.RLock()
        self._listeners = []

    @property
    def posters(self):
        with self._lock:
            return list(self._posters)

    def find(self, poster_id):
        with self._lock:
            for poster in self._posters:
                if poster.id == int(poster_id):
                    return poster
        return None

    def load_all(self):
        try:
            rows = self.gateway.select(self.COLUMNS, order_by="created_at", descending=True)
            posters = [Poster.from_record(r) for r in rows]
        except (BackendError, ValueError, KeyError) as e:
            log_event(LOGGER, logging.ERROR, "catalog.load_failed", error=str(e))
            self.error = FETCH_FAILED_MESSAGE
            raise FetchFailed(FETCH_FAILED_MESSAGE) from e
        with self._lock:
            self._posters = posters
            self.error = None
            self.loaded = True
        self._notify()
        log_event(LOGGER, logging.INFO, "catalog.loaded", count=len(posters))
        return list(posters)

    def add_listener(self, callback):
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                log_exception(LOGGER, "catalog.listener_failed")

    def apply(self, event):
        with self._lock:
            match event:
                case PosterInserted(poster=poster):
                    self._posters = [poster] + [p for p in self._posters if p.id != poster.id]
                case PosterUpdated(poster=poster):
                    self._posters = [poster if p.id == poster.id else p for p in self._posters]
                case PosterDeleted(poster_id=poster_id):
                    self._posters = [p for p in self._posters if p.id != poster_id]
                case _:
                    raise TypeError(f"unknown change event: {event!r}")
        self._notify()

    def patch_local(self, poster_id, **fields):
        with self._lock:
            for i, poster in enumerate(self._posters):
                if poster.id == int(poster_id):
                    record = poster.to_record()
                    record.update(fields)
                    self._posters[i] = Poster.from_record(record)
                    break
            else:
                return None
            patched = self._posters[i]
        self._notify()
        return patched

    def subscribe(self, on_insert=None, on_update=None, on_delete=None):
        def handle(event):
            try:
                self.apply(event)
                match event:
                    case PosterInserted(poster=poster):
                        callback, arg = on_insert, poster
                    case PosterUpdated(poster=poster):
                        callback, arg = on_update, poster
                    case PosterDeleted(poster_id=poster_id):
                        callback, arg = on_delete, poster_id
                if callback is not None:
                    callback(arg)
            except Exception:
                log_exception(LOGGER, "catalog.event_failed", type=getattr(event, "type", ""))

        return self.gateway.subscribe_changes(handle)

    def unsubscribe(self, handle):
        self.gateway.unsubscribe(handle)

    @contextmanager
    def live(self, on_insert=None, on_update=None, on_delete=None):
        handle = self.subscribe(on_insert, on_update, on_delete)
        try:
            yield self
        finally:
            self.unsubscribe(handle)


class GalleryView:
    """Search, category and sort inputs over a catalog, recomputed on change."""

    def __init__(self, catalog, query="", category=CATEGORY_ALL, sort=SORT_LATEST):
        self.catalog = catalog
        self._query = query
        self._category = category
        self._sort = sort
        self.display = []
        self.catalog.add_listener(self.refresh)
        self.refresh()

    def refresh(self):
        self.display = filter_and_sort(self.catalog.posters, self._query, self._category, self._sort)
        return self.display

    def _update(self, **inputs):
        query = inputs.get("query", self._query)
        category = inputs.get("category", self._category)
        sort = inputs.get("sort", self._sort)
        # a rejected input leaves the view unchanged
        display = filter_and_sort(self.catalog.posters, query, category, sort)
        self._query, self._category, self._sort = query, category, sort
        self.display = display
        return display

    def set_query(self, query):
        return self._update(query=query or "")

    def set_category(self, category):
        return self._update(category=category or CATEGORY_ALL)

    def set_sort(self, sort):
        return self._update(sort=sort)

    def close(self):
        self.catalog.remove_listener(self.refresh)
