import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import gallery_backend
from gallery_backend import BackendGateway, ChangeFeed, ObjectStore, PosterTable
from gallery_models import Poster, PosterDeleted, PosterInserted, event_to_payload


class FakeListener:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakePubSub:
    def __init__(self, broker):
        self.broker = broker
        self.handlers = {}
        self.closed = False
        self.listener = None

    def subscribe(self, **handlers):
        self.handlers.update(handlers)
        self.broker.pubsubs.append(self)

    def run_in_thread(self, sleep_time, daemon):
        self.listener = FakeListener()
        return self.listener

    def close(self):
        self.closed = True


class FakeBroker:
    """In-memory stand-in for one redis server shared by several clients."""

    def __init__(self, fail_publish=False, fail_ping=False):
        self.pubsubs = []
        self.published = []
        self.fail_publish = fail_publish
        self.fail_ping = fail_ping

    def from_url(self, url, **_kwargs):
        return FakeClient(self)


class FakeClient:
    def __init__(self, broker):
        self.broker = broker

    def ping(self):
        if self.broker.fail_ping:
            raise RedisConnectionError("connection refused")
        return True

    def pubsub(self, ignore_subscribe_messages):
        return FakePubSub(self.broker)

    def publish(self, channel, data):
        if self.broker.fail_publish:
            raise RedisConnectionError("connection reset")
        self.broker.published.append((channel, data))
        for ps in list(self.broker.pubsubs):
            handler = ps.handlers.get(channel)
            if handler is not None and not ps.closed:
                handler({"type": "message", "channel": channel, "data": data})
        return len(self.broker.pubsubs)


@pytest.fixture
def broker(monkeypatch):
    fake = FakeBroker()
    monkeypatch.setattr(gallery_backend, "Redis", fake)
    return fake


def _poster(pid=1):
    return Poster(id=pid, title="Holi", category="Festival")


def test_events_fan_out_to_every_process(broker):
    first = ChangeFeed("redis://cache:6379/0", "posters-test")
    second = ChangeFeed("redis://cache:6379/0", "posters-test")
    assert first.uses_redis and second.uses_redis
    seen_first, seen_second = [], []
    first.subscribe(seen_first.append)
    second.subscribe(seen_second.append)

    first.publish(PosterInserted(_poster()))

    assert seen_first == [PosterInserted(_poster())]
    assert seen_second == [PosterInserted(_poster())]
    channel, data = broker.published[0]
    assert channel == "posters-test"
    assert json.loads(data) == event_to_payload(PosterInserted(_poster()))


def test_malformed_redis_message_is_skipped(broker):
    feed = ChangeFeed("redis://cache:6379/0", "posters-test")
    seen = []
    feed.subscribe(seen.append)
    handler = broker.pubsubs[0].handlers["posters-test"]

    handler({"type": "message", "data": "not json"})
    handler({"type": "message", "data": json.dumps({"type": "TRUNCATE", "record": {}})})
    handler({"type": "message", "data": json.dumps({"type": "DELETE", "record": {"id": 4}})})

    assert seen == [PosterDeleted(4)]


def test_publish_falls_back_to_local_delivery(monkeypatch):
    monkeypatch.setattr(gallery_backend, "Redis", FakeBroker(fail_publish=True))
    feed = ChangeFeed("redis://cache:6379/0")
    seen = []
    feed.subscribe(seen.append)
    feed.publish(PosterDeleted(9))
    assert seen == [PosterDeleted(9)]


def test_unreachable_redis_means_local_mode(monkeypatch):
    monkeypatch.setattr(gallery_backend, "Redis", FakeBroker(fail_ping=True))
    feed = ChangeFeed("redis://cache:6379/0")
    assert not feed.uses_redis
    seen = []
    feed.subscribe(seen.append)
    feed.publish(PosterDeleted(2))
    assert seen == [PosterDeleted(2)]


def test_close_stops_listener_and_drops_subscribers(broker):
    feed = ChangeFeed("redis://cache:6379/0", "posters-test")
    feed.subscribe(lambda _event: None)
    pubsub = broker.pubsubs[0]

    feed.close()

    assert pubsub.listener.stopped
    assert pubsub.closed
    assert feed.subscriber_count() == 0


def test_gateway_mutations_travel_through_redis(broker, tmp_path):
    feed = ChangeFeed("redis://cache:6379/0", "posters-test")
    gateway = BackendGateway(ObjectStore(str(tmp_path / "bucket")), PosterTable(str(tmp_path / "posters.json")), feed, timeout=5)
    seen = []
    gateway.subscribe_changes(seen.append)
    try:
        poster = gateway.insert({"title": "Holi", "category": "Festival"})
        gateway.delete(poster.id)
    finally:
        gateway.close()

    assert seen == [PosterInserted(poster), PosterDeleted(poster.id)]
    assert len(broker.published) == 2
