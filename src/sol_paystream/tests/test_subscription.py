from __future__ import annotations

import asyncio

import pytest

from sol_paystream.ingestion.subscription import (
    AccountSubscriber,
    SubscriptionFailedError,
    SubscriptionState,
)
from sol_paystream.monitoring.metrics import METRICS
from sol_paystream.tests.fakes import make_address
from sol_paystream.utils.retry import RetryPolicy

WALLET = make_address(1)


async def _noop_callback(address, lamports, slot) -> None:
    return None


class ClosingWebsocket:
    """Accepts subscriptions, then ends the stream immediately."""

    def __init__(self) -> None:
        self.subscribed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def account_subscribe(self, pubkey, commitment=None):
        self.subscribed.append(str(pubkey))

    async def recv(self):
        return []

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


def test_reconnect_cap_leaves_subscriber_failed(app_config) -> None:
    sleeps = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def refusing_connector(url):
        raise ConnectionRefusedError(url)

    subscriber = AccountSubscriber(
        _noop_callback,
        app_config,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=300.0),
        connector=refusing_connector,
        sleep=fake_sleep,
    )

    async def scenario():
        await subscriber.start()
        with pytest.raises(SubscriptionFailedError):
            subscriber.start()

    asyncio.run(scenario())

    assert subscriber.state is SubscriptionState.FAILED
    assert sleeps == [5.0, 10.0, 20.0]
    assert METRICS.get("subscription.disconnects") == 4
    assert METRICS.get("subscription.failed") == 1

    subscriber.reset()
    assert subscriber.state is SubscriptionState.IDLE
    assert subscriber.attempts == 0


def test_addresses_are_resubscribed_on_each_connection(app_config) -> None:
    sockets = []

    def connector(url):
        if len(sockets) == 3:
            raise ConnectionRefusedError(url)
        socket = ClosingWebsocket()
        sockets.append(socket)
        return socket

    async def fake_sleep(seconds: float) -> None:
        return None

    subscriber = AccountSubscriber(
        _noop_callback,
        app_config,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
        connector=connector,
        sleep=fake_sleep,
    )

    async def scenario():
        await subscriber.add_address(WALLET)
        await subscriber.start()

    asyncio.run(scenario())

    assert len(sockets) == 3
    assert subscriber.state is SubscriptionState.FAILED
    assert all(socket.subscribed == [WALLET] for socket in sockets)
    assert subscriber.addresses == {WALLET}


def test_stop_marks_subscriber_stopped(app_config) -> None:
    async def hanging_sleep(seconds: float) -> None:
        await asyncio.sleep(3600)

    def refusing_connector(url):
        raise ConnectionRefusedError(url)

    subscriber = AccountSubscriber(
        _noop_callback,
        app_config,
        retry_policy=RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=1.0),
        connector=refusing_connector,
        sleep=hanging_sleep,
    )

    async def scenario():
        subscriber.start()
        await asyncio.sleep(0.05)
        state_before = subscriber.state
        await subscriber.stop()
        return state_before

    assert asyncio.run(scenario()) is SubscriptionState.RECONNECTING
    assert subscriber.state is SubscriptionState.STOPPED
