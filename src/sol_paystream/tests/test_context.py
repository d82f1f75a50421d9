from __future__ import annotations

import asyncio
import json

from sol_paystream.config.settings import WebhookConfig
from sol_paystream.notifications.webhooks import WebhookNotifier
from sol_paystream.realtime.context import init, shutdown
from sol_paystream.tests.fakes import make_address, payment_tx
from sol_paystream.utils.retry import RetryPolicy

WALLET = make_address(1)
PAYER = make_address(2)


class _Response:
    status_code = 200


class _Session:
    def __init__(self) -> None:
        self.bodies = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.bodies.append(json.loads(data))
        return _Response()

    def close(self) -> None:
        return None


def test_init_resumes_registered_addresses(app_config, gateway, oracle, storage) -> None:
    app_config.watcher.poll_interval_seconds = 60
    storage.add_watched_address(WALLET)

    async def scenario():
        ctx = await init(app_config, gateway=gateway, oracle=oracle, storage=storage)
        watching = ctx.loop.addresses()
        running = ctx.loop.running
        await shutdown(ctx)
        await shutdown(ctx)
        return watching, running, ctx.loop.running

    watching, running, after = asyncio.run(scenario())

    assert watching == [WALLET]
    assert running is True
    assert after is False


def test_inbound_payments_reach_webhooks(app_config, gateway, oracle, storage) -> None:
    app_config.watcher.poll_interval_seconds = 60
    gateway.add(WALLET, payment_tx("sig-hook", PAYER, WALLET, 1_000_000_000, 1_700_000_000))
    session = _Session()
    notifier = WebhookNotifier(
        WebhookConfig(urls=["https://hooks.example.com/pay"]),
        session=session,
        retry_policy=RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0),
    )

    async def scenario():
        ctx = await init(app_config, gateway=gateway, oracle=oracle, storage=storage, notifier=notifier, resume=False)
        await ctx.watch(WALLET)
        await ctx.loop.poll_address(WALLET)
        await ctx.publisher.drain()
        await shutdown(ctx)

    asyncio.run(scenario())

    events = [body["event"] for body in session.bodies]
    assert "payment_received" in events
    assert "balance_updated" in events
    payment = next(body for body in session.bodies if body["event"] == "payment_received")
    assert payment["data"]["signature"] == "sig-hook"
    assert payment["data"]["amountUSD"] == 150.0
