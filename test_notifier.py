# test_notifier.py
import json
import logging
from types import SimpleNamespace

import fakeredis
import redis

from tablepay.services.notifier import LogNotifier, RedisNotifier, build_notifier


def _next_message(pubsub):
    msg = pubsub.get_message(timeout=1)
    assert msg is not None, "nothing published"
    return json.loads(msg["data"])


def test_publishes_json_to_room_channel():
    client = fakeredis.FakeRedis()
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe("tablepay:ManagerRoom")

    RedisNotifier(client).publish("payment", "ManagerRoom", [{"id": "o1", "status": "Paid"}])

    assert _next_message(pubsub) == {
        "event": "payment", "room": "ManagerRoom", "payload": [{"id": "o1", "status": "Paid"}],
    }


def test_channel_prefix_is_configurable():
    client = fakeredis.FakeRedis()
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe("staging:sock-1")

    notifier = RedisNotifier(client, prefix="staging")
    assert notifier.channel("sock-1") == "staging:sock-1"
    notifier.publish("payment", "sock-1", [])
    assert _next_message(pubsub)["room"] == "sock-1"


class BrokenRedis:
    def publish(self, channel, message):
        raise redis.ConnectionError("connection refused")


def test_publish_failure_is_logged_not_raised(caplog):
    with caplog.at_level(logging.ERROR, logger="tablepay.services.notifier"):
        RedisNotifier(BrokenRedis()).publish("payment", "ManagerRoom", [])
    assert "realtime publish failed" in caplog.text


def test_build_notifier_without_redis_logs_only(caplog):
    notifier = build_notifier(SimpleNamespace(REDIS_URL=None, REALTIME_CHANNEL_PREFIX="tablepay"))
    assert isinstance(notifier, LogNotifier)
    with caplog.at_level(logging.INFO, logger="tablepay.services.notifier"):
        notifier.publish("new-order", "ManagerRoom", [{}, {}])
    assert "items=2" in caplog.text


def test_build_notifier_with_redis_url():
    notifier = build_notifier(SimpleNamespace(REDIS_URL="redis://localhost:6379/0", REALTIME_CHANNEL_PREFIX="tp"))
    assert isinstance(notifier, RedisNotifier)
    assert notifier.channel("ManagerRoom") == "tp:ManagerRoom"
