from __future__ import annotations

import asyncio

from sol_paystream.monitoring.metrics import METRICS
from sol_paystream.realtime.publisher import (
    EventType,
    FanoutPublisher,
    Subscriber,
    address_from_topic,
    wallet_topic,
)
from sol_paystream.tests.fakes import make_address

WALLET = make_address(1)


def test_events_arrive_in_publish_order() -> None:
    publisher = FanoutPublisher()
    subscriber = publisher.subscribe(wallet_topic(WALLET))

    for index in range(3):
        publisher.publish(wallet_topic(WALLET), EventType.TRANSACTION, {"n": index})

    received = [subscriber.queue.get_nowait().payload["n"] for _ in range(3)]
    assert received == [0, 1, 2]


def test_publish_only_reaches_topic_members() -> None:
    publisher = FanoutPublisher()
    member = publisher.subscribe("stats")
    outsider = publisher.subscribe(wallet_topic(WALLET))

    delivered = publisher.publish("stats", EventType.STATS, {"ok": True})

    assert delivered == 1
    assert member.queue.qsize() == 1
    assert outsider.queue.empty()
    assert publisher.publish("nobody-home", EventType.STATS) == 0


def test_disconnected_subscriber_is_dropped_on_publish() -> None:
    publisher = FanoutPublisher()
    alive = publisher.subscribe("stats")
    gone = publisher.subscribe("stats")
    gone.close()

    delivered = publisher.publish("stats", "stats-update", {})

    assert delivered == 1
    assert publisher.subscriber_count("stats") == 1
    assert gone.topics == set()
    assert alive.queue.qsize() == 1
    assert METRICS.get("publisher.dropped") == 1


def test_full_queue_drops_subscriber() -> None:
    publisher = FanoutPublisher(queue_size=1)
    slow = publisher.subscribe("stats")

    publisher.publish("stats", EventType.STATS)
    publisher.publish("stats", EventType.STATS)

    assert slow.connected is False
    assert publisher.topics() == []


def test_topic_is_removed_with_its_last_member() -> None:
    publisher = FanoutPublisher()
    first = publisher.subscribe(wallet_topic(WALLET))
    second = publisher.subscribe(wallet_topic(WALLET))

    publisher.unsubscribe(wallet_topic(WALLET), first)
    assert publisher.topics() == [wallet_topic(WALLET)]

    left = publisher.disconnect(second)
    assert left == [wallet_topic(WALLET)]
    assert publisher.topics() == []


def test_one_subscriber_can_join_many_topics() -> None:
    publisher = FanoutPublisher()
    subscriber = Subscriber()
    publisher.subscribe("stats", subscriber)
    publisher.subscribe(wallet_topic(WALLET), subscriber)

    publisher.publish("stats", EventType.STATS)
    publisher.publish(wallet_topic(WALLET), EventType.BALANCE, {"balance": 1.0})

    assert subscriber.queue.qsize() == 2
    assert subscriber.topics == {"stats", wallet_topic(WALLET)}


def test_handlers_receive_matching_events() -> None:
    publisher = FanoutPublisher()
    seen = []
    everything = []

    async def record_async(event):
        seen.append(event.payload["signature"])

    publisher.add_handler(EventType.TRANSACTION, record_async)
    publisher.add_handler(None, lambda event: everything.append(event.type))

    async def scenario():
        publisher.publish(wallet_topic(WALLET), EventType.TRANSACTION, {"signature": "abc"})
        publisher.publish("stats", EventType.STATS)
        await publisher.drain()

    asyncio.run(scenario())

    assert seen == ["abc"]
    assert everything == [EventType.TRANSACTION, EventType.STATS]
    assert [event.type for event in publisher.history()] == [EventType.TRANSACTION, EventType.STATS]


def test_wallet_topic_round_trip() -> None:
    assert address_from_topic(wallet_topic(WALLET)) == WALLET
    assert address_from_topic("stats") is None
    assert address_from_topic("wallet-") is None
