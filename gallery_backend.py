import json
import logging
import os
import posixpath
import tempfile
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from urllib.parse import quote

from redis import Redis
from redis.exceptions import RedisError

from gallery_models import (
    CATEGORIES,
    POSTER_COLUMNS,
    BackendError,
    BackendTimeout,
    GalleryError,
    OperationCancelled,
    Poster,
    PosterDeleted,
    PosterInserted,
    PosterUpdated,
    event_from_payload,
    event_to_payload,
    utc_now_iso,
)


BUCKET_NAME = "posters"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_REDIS_CHANNEL = "poster_gallery:posters"

LOGGER = logging.getLogger("poster_gallery.backend")


def log_event(logger, level, event, **context):
    logger.log(level, "%s | %s", event, json.dumps(context, ensure_ascii=False, default=str))


def log_exception(logger, event, **context):
    logger.exception("%s | %s", event, json.dumps(context, ensure_ascii=False, default=str))


_CALL_STATE = threading.local()


class _CallGuard:
    """Decides, once, whether a gateway call commits or is abandoned.

    Writes pass :func:`_commit_point` right before touching disk. After that
    the caller waits for the result instead of reporting a timeout.
    """

    PENDING = "pending"
    COMMITTING = "committing"
    ABANDONED = "abandoned"

    def __init__(self, op):
        self.op = op
        self.state = self.PENDING
        self.reason = None
        self._lock = threading.Lock()

    def commit(self):
        with self._lock:
            if self.state == self.ABANDONED:
                raise type(self.reason)(str(self.reason))
            self.state = self.COMMITTING

    def abandon(self, reason):
        with self._lock:
            if self.state == self.COMMITTING:
                return False
            self.state = self.ABANDONED
            self.reason = reason
            return True


def _commit_point():
    guard = getattr(_CALL_STATE, "guard", None)
    if guard is not None:
        guard.commit()


def _run_guarded(guard, fn, args, kwargs):
    _CALL_STATE.guard = guard
    try:
        return fn(*args, **kwargs)
    finally:
        _CALL_STATE.guard = None


def _atomic_write_bytes(path, data, suffix=".tmp"):
    folder = os.path.dirname(path) or "."
    os.makedirs(folder, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=suffix, dir=folder)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


def _atomic_write_json(path, data):
    payload = json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")
    _atomic_write_bytes(path, payload, suffix=".json")


def _load_json(path, default):
    if not os.path.isfile(path):
        return default
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, type(default)) else default


class ObjectStore:
    """Bucket of binary objects on the local disk, addressed by relative path."""

    def __init__(self, root, public_base="/storage"):
        self.root = os.path.abspath(root)
        self.public_base = (public_base or "").rstrip("/")
        self._index_path = os.path.join(self.root, ".objects.json")
        self._lock = threading.Lock()
        os.makedirs(self.root, exist_ok=True)

    def normalize(self, path):
        rel = posixpath.normpath(str(path or "").replace("\\", "/").lstrip("/"))
        if rel in {"", "."} or rel.startswith("../") or rel == ".." or rel.startswith(".objects"):
            raise BackendError(f"Invalid object path: {path}")
        return rel

    def resolve(self, path):
        rel = self.normalize(path)
        abs_path = os.path.abspath(os.path.join(self.root, rel))
        if not abs_path.startswith(self.root + os.sep):
            raise BackendError(f"Invalid object path: {path}")
        return abs_path

    def upload(self, path, data, content_type="application/octet-stream", overwrite=True):
        rel = self.normalize(path)
        abs_path = self.resolve(rel)
        with self._lock:
            if not overwrite and os.path.exists(abs_path):
                raise BackendError("The resource already exists")
            _commit_point()
            _atomic_write_bytes(abs_path, bytes(data))
            index = _load_json(self._index_path, {})
            index[rel] = {
                "content_type": content_type or "application/octet-stream",
                "size": len(data),
                "uploaded_at": utc_now_iso(),
            }
            _atomic_write_json(self._index_path, index)
        return self.get_public_url(rel)

    def get_public_url(self, path):
        rel = self.normalize(path)
        return f"{self.public_base}/{quote(rel)}"

    def content_type(self, path):
        rel = self.normalize(path)
        with self._lock:
            index = _load_json(self._index_path, {})
        return (index.get(rel) or {}).get("content_type") or "application/octet-stream"

    def read(self, path):
        abs_path = self.resolve(path)
        if not os.path.isfile(abs_path):
            raise BackendError(f"Object not found: {path}")
        with open(abs_path, "rb") as f:
            return f.read()

    def remove(self, paths):
        removed = []
        targets = [self.normalize(p) for p in paths]
        with self._lock:
            _commit_point()
            index = _load_json(self._index_path, {})
            for rel in targets:
                abs_path = self.resolve(rel)
                if os.path.isfile(abs_path):
                    os.remove(abs_path)
                    removed.append(rel)
                index.pop(rel, None)
            _atomic_write_json(self._index_path, index)
        return removed


class Subscription:
    def __init__(self, handler):
        self.id = uuid.uuid4().hex[:12]
        self.handler = handler
        self.active = True


class ChangeFeed:
    """Realtime notifications for the posters table, delivered in commit order."""

    def __init__(self, redis_url="", channel=DEFAULT_REDIS_CHANNEL):
        self.channel = channel
        self._subs = {}
        self._lock = threading.Lock()
        self._deliver_lock = threading.RLock()
        self._redis = None
        self._pubsub = None
        self._listener = None
        redis_url = (redis_url or "").strip()
        if not redis_url:
            return
        try:
            cli = Redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=0.5)
            cli.ping()
            self._redis = cli
        except (RedisError, ValueError):
            self._redis = None
            log_exception(LOGGER, "change_feed.redis_init_failed", redis_url=redis_url)
            return
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: self._on_redis_message})
        self._listener = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)

    @property
    def uses_redis(self):
        return self._redis is not None

    def subscribe(self, handler):
        sub = Subscription(handler)
        with self._lock:
            self._subs[sub.id] = sub
        log_event(LOGGER, logging.INFO, "change_feed.subscribed", subscription=sub.id)
        return sub

    def unsubscribe(self, subscription):
        if subscription is None:
            return
        subscription.active = False
        with self._lock:
            self._subs.pop(subscription.id, None)
        log_event(LOGGER, logging.INFO, "change_feed.unsubscribed", subscription=subscription.id)

    def subscriber_count(self):
        with self._lock:
            return len(self._subs)

    def publish(self, event):
        if self._redis is not None:
            try:
                self._redis.publish(self.channel, json.dumps(event_to_payload(event), ensure_ascii=False))
                return
            except RedisError:
                log_event(LOGGER, logging.WARNING, "change_feed.redis_publish_failed", type=event.type)
        self.dispatch(event)

    def dispatch(self, event):
        with self._deliver_lock:
            with self._lock:
                subs = list(self._subs.values())
            for sub in subs:
                if not sub.active:
                    continue
                try:
                    sub.handler(event)
                except Exception:
                    log_exception(LOGGER, "change_feed.handler_failed", subscription=sub.id, type=event.type)

    def _on_redis_message(self, message):
        try:
            event = event_from_payload(json.loads(message.get("data") or "{}"))
        except (ValueError, KeyError, TypeError):
            log_exception(LOGGER, "change_feed.bad_message", channel=self.channel)
            return
        self.dispatch(event)

    def close(self):
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
        if self._pubsub is not None:
            try:
                self._pubsub.close()
            except RedisError:
                log_event(LOGGER, logging.WARNING, "change_feed.redis_close_failed")
            self._pubsub = None
        with self._lock:
            self._subs.clear()


class PosterTable:
    """The ``posters`` table, persisted as one JSON document.

    Mutations return the committed row; publishing the change event is left
    to the caller.
    """

    def __init__(self, path):
        self.path = os.path.abspath(path)
        self._lock = threading.Lock()

    def _load(self):
        data = _load_json(self.path, {})
        rows = data.get("rows") if isinstance(data.get("rows"), list) else []
        next_id = int(data.get("next_id") or 0)
        if rows:
            next_id = max(next_id, max(int(r["id"]) for r in rows) + 1)
        return {"next_id": max(1, next_id), "rows": rows}

    def _save(self, data):
        _commit_point()
        _atomic_write_json(self.path, data)

    @staticmethod
    def _project(row, columns):
        if not columns:
            return dict(row)
        unknown = [c for c in columns if c not in POSTER_COLUMNS]
        if unknown:
            raise BackendError(f"column {unknown[0]!r} does not exist")
        return {c: row.get(c) for c in columns}

    @staticmethod
    def _check_fields(fields):
        unknown = [k for k in fields if k not in POSTER_COLUMNS]
        if unknown:
            raise BackendError(f"column {unknown[0]!r} does not exist")
        if "title" in fields and not str(fields["title"] or "").strip():
            raise BackendError("title must not be empty")
        if "category" in fields and fields["category"] not in CATEGORIES:
            raise BackendError(f"invalid category: {fields['category']!r}")

    def select(self, columns=None, order_by="created_at", descending=True):
        with self._lock:
            rows = self._load()["rows"]
        if order_by:
            if order_by not in POSTER_COLUMNS:
                raise BackendError(f"column {order_by!r} does not exist")
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            rows = sorted(present, key=lambda r: r[order_by], reverse=descending) + missing
        return [self._project(r, columns) for r in rows]

    def get(self, poster_id, columns=None):
        with self._lock:
            rows = self._load()["rows"]
        for row in rows:
            if int(row["id"]) == int(poster_id):
                return self._project(row, columns)
        raise BackendError(f"Poster {poster_id} not found")

    def insert(self, record):
        record = dict(record or {})
        record.pop("id", None)
        self._check_fields(record)
        if "title" not in record or "category" not in record:
            raise BackendError("title and category are required")
        with self._lock:
            data = self._load()
            row = {
                "id": data["next_id"],
                "title": record["title"],
                "category": record["category"],
                "download_url": record.get("download_url") or "",
                "psd_url": record.get("psd_url") or None,
                "font_family": record.get("font_family") or None,
                "is_editable": bool(record.get("is_editable", False)),
                "created_at": record.get("created_at") or utc_now_iso(),
                "download_count": max(0, int(record.get("download_count") or 0)),
            }
            data["rows"].append(row)
            data["next_id"] = row["id"] + 1
            self._save(data)
        return Poster.from_record(row)

    def update(self, poster_id, fields):
        fields = dict(fields or {})
        if "id" in fields and int(fields["id"]) != int(poster_id):
            raise BackendError("id is immutable")
        fields.pop("id", None)
        self._check_fields(fields)
        with self._lock:
            data = self._load()
            row = next((r for r in data["rows"] if int(r["id"]) == int(poster_id)), None)
            if row is None:
                raise BackendError(f"Poster {poster_id} not found")
            if "download_count" in fields:
                new_count = int(fields["download_count"] or 0)
                if new_count < int(row.get("download_count") or 0):
                    raise BackendError("download_count cannot decrease")
                fields["download_count"] = new_count
            row.update(fields)
            self._save(data)
            return Poster.from_record(row)

    def delete(self, poster_id):
        with self._lock:
            data = self._load()
            row = next((r for r in data["rows"] if int(r["id"]) == int(poster_id)), None)
            if row is None:
                raise BackendError(f"Poster {poster_id} not found")
            data["rows"] = [r for r in data["rows"] if r is not row]
            self._save(data)
        return Poster.from_record(row)


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()


class BackendGateway:
    """Storage, table and change feed behind one handle.

    Every call goes through :meth:`call`, which bounds it with a timeout and
    honours an optional :class:`CancelToken`. Failures come back as
    ``BackendError`` (or its ``BackendTimeout`` / ``OperationCancelled``
    subclasses) carrying the underlying message verbatim.
    """

    POLL_INTERVAL = 0.05

    def __init__(self, store, table, feed, timeout=DEFAULT_TIMEOUT_SECONDS, max_workers=4):
        self.store = store
        self.table = table
        self.feed = feed
        self.timeout = float(timeout)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gallery-backend")
        self._closed = False

    def call(self, op, fn, *args, timeout=None, cancel=None, **kwargs):
        if self._closed:
            raise BackendError("backend connection is closed")
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"{op} cancelled")
        limit = self.timeout if timeout is None else float(timeout)
        guard = _CallGuard(op)
        future = self._pool.submit(_run_guarded, guard, fn, args, kwargs)
        deadline = time.monotonic() + limit
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                reason = BackendTimeout(f"{op} timed out after {limit:g}s")
            elif cancel is not None and cancel.cancelled:
                reason = OperationCancelled(f"{op} cancelled")
            else:
                done, _ = wait([future], timeout=min(remaining, self.POLL_INTERVAL) if cancel else remaining)
                if done:
                    break
                continue
            if guard.abandon(reason):
                future.cancel()
                log_event(LOGGER, logging.WARNING, "backend.abandoned", op=op, reason=str(reason))
                raise reason
            # the write already started committing; its outcome is the answer
            log_event(LOGGER, logging.WARNING, "backend.late_commit", op=op, reason=str(reason))
            wait([future])
            break
        exc = future.exception()
        if exc is None:
            return future.result()
        if isinstance(exc, GalleryError):
            log_event(LOGGER, logging.WARNING, "backend.call_failed", op=op, error=str(exc))
            raise exc
        log_event(LOGGER, logging.ERROR, "backend.call_failed", op=op, error=repr(exc))
        raise BackendError(str(exc)) from exc

    # object storage
    def upload(self, path, data, content_type="application/octet-stream", overwrite=True, **opts):
        return self.call("storage.upload", self.store.upload, path, data, content_type, overwrite, **opts)

    def get_public_url(self, path):
        return self.store.get_public_url(path)

    def remove(self, paths, **opts):
        return self.call("storage.remove", self.store.remove, list(paths), **opts)

    def read_object(self, path, **opts):
        return self.call("storage.read", self.store.read, path, **opts)

    # posters table
    def select(self, columns=None, order_by="created_at", descending=True, **opts):
        return self.call("table.select", self.table.select, columns, order_by, descending, **opts)

    def get(self, poster_id, columns=None, **opts):
        return self.call("table.get", self.table.get, poster_id, columns, **opts)

    # mutations publish once the call has returned, outside the timed worker
    def insert(self, record, **opts):
        poster = self.call("table.insert", self.table.insert, record, **opts)
        self.feed.publish(PosterInserted(poster))
        return poster

    def update(self, poster_id, fields, **opts):
        poster = self.call("table.update", self.table.update, poster_id, fields, **opts)
        self.feed.publish(PosterUpdated(poster))
        return poster

    def delete(self, poster_id, **opts):
        poster = self.call("table.delete", self.table.delete, poster_id, **opts)
        self.feed.publish(PosterDeleted(poster.id))
        return poster

    # realtime
    def subscribe_changes(self, handler):
        return self.feed.subscribe(handler)

    def unsubscribe(self, subscription):
        self.feed.unsubscribe(subscription)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.feed.close()


def build_gateway(data_dir, public_base="/storage", timeout=DEFAULT_TIMEOUT_SECONDS, redis_url="", redis_channel=""):
    data_dir = os.path.abspath(data_dir)
    feed = ChangeFeed(redis_url=redis_url, channel=redis_channel or DEFAULT_REDIS_CHANNEL)
    store = ObjectStore(os.path.join(data_dir, "storage", BUCKET_NAME), public_base=public_base)
    table = PosterTable(os.path.join(data_dir, "posters.json"))
    return BackendGateway(store, table, feed, timeout=timeout)


_GATEWAY = None
_GATEWAY_LOCK = threading.Lock()


def init_gateway(data_dir=None, **kwargs):
    global _GATEWAY
    data_dir = data_dir or os.environ.get("POSTER_DATA_DIR") or "web_data"
    gateway = build_gateway(data_dir, **kwargs)
    with _GATEWAY_LOCK:
        previous, _GATEWAY = _GATEWAY, gateway
    if previous is not None:
        previous.close()
    log_event(LOGGER, logging.INFO, "backend.initialized", data_dir=os.path.abspath(data_dir), redis=gateway.feed.uses_redis)
    return gateway


def get_gateway():
    with _GATEWAY_LOCK:
        gateway = _GATEWAY
    if gateway is None:
        gateway = init_gateway()
    return gateway


def close_gateway():
    global _GATEWAY
    with _GATEWAY_LOCK:
        gateway, _GATEWAY = _GATEWAY, None
    if gateway is not None:
        gateway.close()
