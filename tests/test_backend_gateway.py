import threading
import time

import pytest

from conftest import make_poster
from gallery_backend import CancelToken, close_gateway, get_gateway, init_gateway
from gallery_models import (
    BackendError,
    BackendTimeout,
    OperationCancelled,
    PosterDeleted,
    PosterInserted,
    PosterUpdated,
    event_from_payload,
    event_to_payload,
)


def test_upload_returns_public_url_and_reads_back(gateway):
    url = gateway.upload("thumbnails/a.png", b"abc", "image/png")
    assert url == "/storage/thumbnails/a.png"
    assert gateway.read_object("thumbnails/a.png") == b"abc"
    assert gateway.store.content_type("thumbnails/a.png") == "image/png"


def test_upload_without_overwrite_rejects_existing(gateway):
    gateway.upload("psd/a.psd", b"1")
    with pytest.raises(BackendError):
        gateway.upload("psd/a.psd", b"2", overwrite=False)
    gateway.upload("psd/a.psd", b"3", overwrite=True)
    assert gateway.read_object("psd/a.psd") == b"3"


def test_object_paths_cannot_escape_bucket(gateway):
    with pytest.raises(BackendError):
        gateway.upload("../outside.png", b"x")
    with pytest.raises(BackendError):
        gateway.read_object(".objects.json")


def test_remove_ignores_missing_objects(gateway):
    gateway.upload("thumbnails/a.png", b"abc")
    removed = gateway.remove(["thumbnails/a.png", "thumbnails/missing.png"])
    assert removed == ["thumbnails/a.png"]
    with pytest.raises(BackendError):
        gateway.read_object("thumbnails/a.png")


def test_insert_assigns_id_created_at_and_defaults(gateway):
    first = make_poster(gateway)
    second = make_poster(gateway, title="Happy Birthday", category="Birthday")
    assert second.id == first.id + 1
    assert first.created_at
    assert first.download_count == 0
    assert first.is_editable is False
    assert first.psd_url is None


def test_insert_rejects_bad_rows(gateway):
    with pytest.raises(BackendError):
        gateway.insert({"title": "", "category": "Festival"})
    with pytest.raises(BackendError):
        gateway.insert({"title": "x", "category": "Holiday"})
    with pytest.raises(BackendError):
        gateway.insert({"title": "x", "category": "Festival", "colour": "red"})


def test_select_orders_and_projects(gateway):
    make_poster(gateway, title="old", created_at="2024-01-01T00:00:00+00:00")
    make_poster(gateway, title="new", created_at="2025-01-01T00:00:00+00:00")
    rows = gateway.select(["id", "title"], order_by="created_at", descending=True)
    assert [r["title"] for r in rows] == ["new", "old"]
    assert set(rows[0]) == {"id", "title"}


def test_update_and_delete_unknown_id_fail(gateway):
    with pytest.raises(BackendError, match="not found"):
        gateway.update(999, {"title": "x"})
    with pytest.raises(BackendError, match="not found"):
        gateway.delete(999)


def test_download_count_never_decreases(gateway):
    poster = make_poster(gateway, download_count=3)
    gateway.update(poster.id, {"download_count": 4})
    with pytest.raises(BackendError):
        gateway.update(poster.id, {"download_count": 2})
    assert gateway.get(poster.id, ["download_count"]) == {"download_count": 4}


def test_table_mutations_publish_one_event_each(gateway):
    events = []
    sub = gateway.subscribe_changes(events.append)
    poster = make_poster(gateway)
    gateway.update(poster.id, {"title": "renamed"})
    gateway.delete(poster.id)
    gateway.unsubscribe(sub)
    make_poster(gateway)

    assert [type(e) for e in events] == [PosterInserted, PosterUpdated, PosterDeleted]
    assert events[1].poster.title == "renamed"
    assert events[2].poster_id == poster.id


def test_failing_handler_does_not_stop_delivery(gateway):
    seen = []

    def boom(_event):
        raise RuntimeError("handler bug")

    gateway.subscribe_changes(boom)
    gateway.subscribe_changes(seen.append)
    make_poster(gateway)
    make_poster(gateway)
    assert len(seen) == 2
    assert gateway.feed.subscriber_count() == 2


def test_event_payload_round_trip(gateway):
    poster = make_poster(gateway)
    payload = event_to_payload(PosterUpdated(poster))
    assert payload["type"] == "UPDATE"
    assert event_from_payload(payload) == PosterUpdated(poster)
    assert event_from_payload({"type": "DELETE", "record": {"id": 7}}) == PosterDeleted(7)


def test_call_times_out(gateway):
    with pytest.raises(BackendTimeout):
        gateway.call("slow.op", time.sleep, 1.0, timeout=0.05)


def test_call_honours_cancel_token(gateway):
    token = CancelToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        gateway.call("noop", lambda: None, cancel=token)

    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(OperationCancelled):
        gateway.call("slow.op", time.sleep, 2.0, cancel=token)
    assert time.monotonic() - started < 1.5


def test_call_wraps_unexpected_errors_verbatim(gateway):
    def broken():
        raise OSError("disk on fire")

    with pytest.raises(BackendError, match="disk on fire"):
        gateway.call("broken", broken)


def test_closed_gateway_refuses_calls(gateway):
    gateway.close()
    with pytest.raises(BackendError):
        gateway.select()


def test_singleton_lifecycle(tmp_path):
    gw = init_gateway(str(tmp_path / "single"))
    assert get_gateway() is gw
    replacement = init_gateway(str(tmp_path / "single2"))
    assert get_gateway() is replacement
    with pytest.raises(BackendError):
        gw.select()
    close_gateway()
    with pytest.raises(BackendError):
        replacement.select()


def test_write_abandoned_before_commit_never_lands(gateway, monkeypatch):
    poster = make_poster(gateway, download_count=3)
    original_update = gateway.table.update

    def slow_update(poster_id, fields):
        time.sleep(0.4)
        return original_update(poster_id, fields)

    monkeypatch.setattr(gateway.table, "update", slow_update)
    with pytest.raises(BackendTimeout):
        gateway.update(poster.id, {"download_count": 4}, timeout=0.1)
    time.sleep(0.5)
    assert gateway.table.get(poster.id)["download_count"] == 3


def test_write_past_commit_point_is_reported_as_done(gateway, monkeypatch):
    original_save = gateway.table._save

    def slow_save(data):
        original_save(data)
        time.sleep(0.4)

    monkeypatch.setattr(gateway.table, "_save", slow_save)
    events = []
    gateway.subscribe_changes(events.append)
    poster = gateway.insert({"title": "Teej", "category": "Festival"}, timeout=0.1)
    assert gateway.table.get(poster.id)["title"] == "Teej"
    assert [type(e) for e in events] == [PosterInserted]


def test_cancelled_upload_writes_nothing(gateway, monkeypatch):
    original_upload = gateway.store.upload

    def slow_upload(*args):
        time.sleep(0.3)
        return original_upload(*args)

    monkeypatch.setattr(gateway.store, "upload", slow_upload)
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    with pytest.raises(OperationCancelled):
        gateway.upload("thumbnails/late.png", b"x", cancel=token)
    time.sleep(0.4)
    with pytest.raises(BackendError):
        gateway.read_object("thumbnails/late.png")


def test_slow_subscriber_does_not_time_out_insert(gateway):
    gateway.timeout = 0.5
    seen = []

    def slow_handler(event):
        time.sleep(0.8)
        seen.append(event)

    gateway.subscribe_changes(slow_handler)
    poster = make_poster(gateway)
    assert seen == [PosterInserted(poster)]
