"""Tests for the Redis-backed queue.

A small in-process fake stands in for the Redis server; it implements just the
commands the queue issues, with Redis semantics. ``redis.from_url`` is patched
to return it.

To run against a real Redis server instead:
    export USE_REAL_REDIS=true
    pytest tests/test_redis_queue.py
"""
import os
import threading
import time
from collections import defaultdict
from unittest.mock import patch

import pytest
import redis

from orders_service.config import QUEUE_SETTINGS
from orders_service.errors import QueueUnavailable
from orders_service.jobs.queue import InMemoryMessageQueue
from orders_service.jobs.redis_queue import RedisMessageQueue
from orders_service.jobs.worker_orders import create_queue

USE_REAL_REDIS = os.environ.get('USE_REAL_REDIS', '').lower() in ('true', '1', 'yes')


class FakeRedis:
    def __init__(self):
        self.hashes = defaultdict(dict)
        self.lists = defaultdict(list)
        self.zsets = defaultdict(dict)
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("Connection refused")

    def ping(self):
        self._check()
        return True

    def hget(self, key, field):
        self._check()
        value = self.hashes[key].get(field)
        return value.encode("utf-8") if value is not None else None

    def hset(self, key, field, value):
        self._check()
        created = field not in self.hashes[key]
        self.hashes[key][field] = value
        return int(created)

    def hdel(self, key, *fields):
        self._check()
        return sum(1 for f in fields if self.hashes[key].pop(f, None) is not None)

    def hlen(self, key):
        self._check()
        return len(self.hashes[key])

    def hvals(self, key):
        self._check()
        return [v.encode("utf-8") for v in self.hashes[key].values()]

    def rpush(self, key, *values):
        self._check()
        self.lists[key].extend(values)
        return len(self.lists[key])

    def lpop(self, key):
        self._check()
        items = self.lists[key]
        return items.pop(0).encode("utf-8") if items else None

    def blpop(self, keys, timeout=0):
        deadline = time.monotonic() + timeout
        while True:
            self._check()
            for key in keys:
                if self.lists[key]:
                    return [key.encode("utf-8"), self.lists[key].pop(0).encode("utf-8")]
            if time.monotonic() >= deadline:
                return None
            time.sleep(0.01)

    def llen(self, key):
        self._check()
        return len(self.lists[key])

    def lrange(self, key, start, end):
        self._check()
        items = self.lists[key]
        return [v.encode("utf-8") for v in items[start: None if end == -1 else end + 1]]

    def lrem(self, key, count, value):
        self._check()
        removed = 0
        items = self.lists[key]
        while value in items and (count == 0 or removed < count):
            items.remove(value)
            removed += 1
        return removed

    def zadd(self, key, mapping):
        self._check()
        added = sum(1 for m in mapping if m not in self.zsets[key])
        self.zsets[key].update(mapping)
        return added

    def zrem(self, key, *members):
        self._check()
        return sum(1 for m in members if self.zsets[key].pop(m, None) is not None)

    def zrangebyscore(self, key, min_score, max_score):
        self._check()
        ordered = sorted(self.zsets[key].items(), key=lambda kv: kv[1])
        return [m.encode("utf-8") for m, score in ordered if min_score <= score <= max_score]

    def zcard(self, key):
        self._check()
        return len(self.zsets[key])

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            for store in (self.hashes, self.lists, self.zsets):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed


pytestmark = pytest.mark.skipif(USE_REAL_REDIS, reason="fake Redis tests; real-server mode requested")


@pytest.fixture
def fake_redis():
    fake = FakeRedis()
    with patch('redis.from_url', return_value=fake):
        yield fake


@pytest.fixture
def mock_redis_unavailable():
    """Mock Redis as unavailable for testing fallback."""
    with patch('redis.from_url') as mock_redis_client:
        mock_redis_client.side_effect = redis.ConnectionError("Connection refused")
        yield mock_redis_client


@pytest.fixture
def redis_queue(fake_redis, clock):
    queue = RedisMessageQueue(visibility_timeout=30, max_receive_count=2, dead_letter_retention=3600, clock=clock)
    yield queue
    queue.shutdown()


def test_send_receive_ack(redis_queue, fake_redis):
    assert redis_queue.redis_active
    message_id = redis_queue.send('{"orderId": "r-1"}', {"OrderId": "r-1"})
    assert message_id in fake_redis.hashes[redis_queue._messages_key]

    deliveries = redis_queue.receive(10)
    assert len(deliveries) == 1
    d = deliveries[0]
    assert d.receipt_handle.startswith("r:")
    assert d.attributes == {"OrderId": "r-1"}
    assert d.receive_count == 1

    assert redis_queue.ack(d.receipt_handle) is True
    assert redis_queue.depth() == 0


def test_visibility_timeout_and_dead_letter(redis_queue, clock):
    redis_queue.send('{"orderId": "r-2"}', {"OrderId": "r-2"})
    first = redis_queue.receive(10)[0]
    assert redis_queue.receive(10) == []

    clock.advance(31)
    second = redis_queue.receive(10)[0]
    assert second.receive_count == 2
    assert redis_queue.ack(first.receipt_handle) is False

    clock.advance(31)
    assert redis_queue.receive(10) == []
    dead = redis_queue.dead_letters()
    assert len(dead) == 1
    assert dead[0].attributes["OrderId"] == "r-2"
    assert dead[0].receive_count == 2
    assert redis_queue.depth() == 0


def test_dead_letter_retention_and_redrive(redis_queue, clock):
    for order_id in ("old", "new"):
        redis_queue.send(f'{{"orderId": "{order_id}"}}')
        for _ in range(2):
            redis_queue.receive(10)
            clock.advance(31)
        redis_queue.receive(10)
        clock.advance(1800)

    # the first dead letter is now older than the one hour retention
    assert len(redis_queue.dead_letters()) == 1
    assert redis_queue.redrive_dead_letters() == 1
    again = redis_queue.receive(10)
    assert len(again) == 1
    assert again[0].receive_count == 1
    assert '"new"' in again[0].body


def test_snapshot_reports_redis_state(redis_queue):
    redis_queue.send("{}")
    redis_queue.send("{}")
    redis_queue.receive(1)
    snap = redis_queue.snapshot()
    assert snap["redis_active"] is True
    assert snap["depth"] == 2
    assert snap["ready"] == 1
    assert snap["in_flight"] == 1


def test_purge(redis_queue, fake_redis):
    redis_queue.send("{}")
    redis_queue.purge()
    assert redis_queue.depth() == 0
    assert not fake_redis.hashes.get(redis_queue._messages_key)


@pytest.fixture
def fallback_queue(fake_redis, clock):
    queue = RedisMessageQueue(
        visibility_timeout=30, max_receive_count=2, dead_letter_retention=3600, clock=clock, fallback_to_memory=True,
    )
    yield queue
    queue.shutdown()


def test_send_raises_when_redis_down_without_fallback(redis_queue, fake_redis):
    assert redis_queue.fallback_to_memory is False
    fake_redis.fail = True
    with pytest.raises(QueueUnavailable):
        redis_queue.send('{"orderId": "down-1"}')
    assert not redis_queue.redis_active
    assert redis_queue.depth() == 0

    fake_redis.fail = False
    redis_queue.send('{"orderId": "down-1"}')
    assert redis_queue.redis_active
    assert redis_queue.receive(10)[0].receipt_handle.startswith("r:")


def test_receive_without_redis_or_fallback_waits_and_returns_nothing(redis_queue, fake_redis):
    fake_redis.fail = True
    start = time.monotonic()
    assert redis_queue.receive(10, wait_seconds=0.2) == []
    assert time.monotonic() - start >= 0.15


def test_create_order_returns_500_when_redis_down(client, fake_redis, clock):
    from orders_service.main import app

    app.state.order_queue = RedisMessageQueue(clock=clock, fallback_to_memory=False)
    fake_redis.fail = True
    r = client.post("/orders", json={"orderId": "lost-1", "amount": 5})
    assert r.status_code == 500
    assert r.json()["message"] == "Failed to enqueue order"


def test_falls_back_to_memory_when_redis_down_at_send(fallback_queue, fake_redis):
    fake_redis.fail = True
    fallback_queue.send('{"orderId": "fb-1"}')
    assert not fallback_queue.redis_active
    assert fallback_queue.snapshot()["redis_active"] is False

    deliveries = fallback_queue.receive(10)
    assert len(deliveries) == 1
    assert not deliveries[0].receipt_handle.startswith("r:")
    assert fallback_queue.ack(deliveries[0].receipt_handle) is True


def test_ack_raises_when_redis_lost_mid_flight(redis_queue, fake_redis):
    redis_queue.send("{}")
    d = redis_queue.receive(10)[0]
    fake_redis.fail = True
    with pytest.raises(QueueUnavailable):
        redis_queue.ack(d.receipt_handle)


def test_blocked_receive_does_not_hold_up_send(redis_queue):
    received = []
    receiver = threading.Thread(target=lambda: received.extend(redis_queue.receive(10, wait_seconds=2)))
    receiver.start()
    time.sleep(0.1)

    start = time.monotonic()
    redis_queue.send('{"orderId": "b-1"}', {"OrderId": "b-1"})
    assert time.monotonic() - start < 0.5

    receiver.join(3)
    assert not receiver.is_alive()
    assert [d.attributes["OrderId"] for d in received] == ["b-1"]
    assert received[0].receipt_handle.startswith("r:")


def test_unreachable_redis_uses_fallback(mock_redis_unavailable, clock):
    queue = RedisMessageQueue(clock=clock, fallback_to_memory=True)
    try:
        assert not queue.redis_active
        assert not queue.health_check()
        queue.send('{"orderId": "mem-1"}')
        assert queue.depth() == 1
        d = queue.receive(10)[0]
        assert queue.ack(d.receipt_handle) is True
    finally:
        queue.shutdown()


def test_create_queue_prefers_redis(fake_redis, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    queue = create_queue()
    try:
        assert isinstance(queue, RedisMessageQueue)
    finally:
        queue.shutdown()


def test_create_queue_keeps_redis_when_unreachable_without_fallback(mock_redis_unavailable, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    monkeypatch.setitem(QUEUE_SETTINGS, "redis_fallback_to_memory", False)
    queue = create_queue()
    try:
        assert isinstance(queue, RedisMessageQueue)
        assert not queue.redis_active
        with pytest.raises(QueueUnavailable):
            queue.send("{}")
    finally:
        queue.shutdown()


def test_create_queue_falls_back_when_unreachable(mock_redis_unavailable, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    monkeypatch.setitem(QUEUE_SETTINGS, "redis_fallback_to_memory", True)
    queue = create_queue()
    try:
        assert isinstance(queue, InMemoryMessageQueue)
    finally:
        queue.shutdown()
