"""Live account subscription over the Solana websocket API."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from solana.rpc.commitment import Commitment
from solana.rpc.websocket_api import connect
from solders.pubkey import Pubkey
from solders.rpc.responses import AccountNotification, SubscriptionResult

from ..config.settings import AppConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.retry import RetryPolicy

AccountCallback = Callable[[str, int, Optional[int]], Awaitable[None]]


class SubscriptionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


class SubscriptionFailedError(RuntimeError):
    """Raised when starting a subscriber that ran out of reconnect attempts."""


class AccountSubscriber:
    """Subscribes to lamport changes of watched accounts and reconnects with backoff.

    Once the reconnect cap is exceeded the subscriber stays ``FAILED`` until
    :meth:`reset` is called.
    """

    def __init__(
        self,
        callback: AccountCallback,
        config: Optional[AppConfig] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        connector: Callable[[str], Any] = connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        app_config = config or get_app_config()
        self._ws_url = app_config.rpc.ws_url
        self._commitment = Commitment(app_config.rpc.commitment)
        self._retry = retry_policy or RetryPolicy.from_config(app_config.retry)
        self._callback = callback
        self._connector = connector
        self._sleep = sleep
        self._addresses: Set[str] = set()
        self._by_subscription: Dict[int, str] = {}
        self._websocket: Any = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.state = SubscriptionState.IDLE
        self.attempts = 0
        self._logger = get_logger(__name__)

    @property
    def addresses(self) -> Set[str]:
        return set(self._addresses)

    def start(self) -> asyncio.Task:
        if self.state is SubscriptionState.FAILED:
            raise SubscriptionFailedError("reconnect attempts exhausted; call reset() first")
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="account-subscriber")
        return self._task

    def reset(self) -> None:
        self.attempts = 0
        if self.state is SubscriptionState.FAILED:
            self.state = SubscriptionState.IDLE

    async def add_address(self, address: str) -> None:
        if address in self._addresses:
            return
        self._addresses.add(address)
        if self._websocket is not None and self.state is SubscriptionState.LISTENING:
            await self._subscribe(self._websocket, address)

    async def remove_address(self, address: str) -> None:
        self._addresses.discard(address)
        for subscription_id, subscribed in list(self._by_subscription.items()):
            if subscribed != address:
                continue
            del self._by_subscription[subscription_id]
            if self._websocket is not None:
                await self._websocket.account_unsubscribe(subscription_id)

    async def run(self) -> None:
        while not self._stopping:
            self.state = SubscriptionState.CONNECTING
            try:
                async with self._connector(self._ws_url) as websocket:
                    self._websocket = websocket
                    self._by_subscription.clear()
                    for address in sorted(self._addresses):
                        await self._subscribe(websocket, address)
                    self.state = SubscriptionState.LISTENING
                    self.attempts = 0
                    self._logger.info("Account subscription connected (%d accounts)", len(self._addresses))
                    await self._listen(websocket)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                METRICS.increment("subscription.disconnects")
                self._logger.warning("Account subscription dropped: %s", exc)
            finally:
                self._websocket = None
            if self._stopping:
                break
            self.attempts += 1
            if self.attempts > self._retry.max_attempts:
                self.state = SubscriptionState.FAILED
                METRICS.increment("subscription.failed")
                self._logger.error(
                    "Account subscription failed after %d reconnect attempts; manual restart required",
                    self._retry.max_attempts,
                )
                return
            delay = self._retry.delay_for(self.attempts)
            self.state = SubscriptionState.RECONNECTING
            self._logger.info(
                "Reconnecting account subscription in %.1fs (attempt %d/%d)",
                delay,
                self.attempts,
                self._retry.max_attempts,
            )
            await self._sleep(delay)
        self.state = SubscriptionState.STOPPED

    async def _subscribe(self, websocket: Any, address: str) -> None:
        await websocket.account_subscribe(Pubkey.from_string(address), commitment=self._commitment)
        messages = await websocket.recv()
        for message in messages:
            if isinstance(message, SubscriptionResult):
                self._by_subscription[message.result] = address
            else:
                await self._dispatch(message)

    async def _listen(self, websocket: Any) -> None:
        async for messages in websocket:
            for message in messages:
                await self._dispatch(message)

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, AccountNotification):
            return
        address = self._by_subscription.get(message.subscription)
        if address is None:
            return
        METRICS.increment("subscription.notifications")
        try:
            await self._callback(address, message.result.value.lamports, message.result.context.slot)
        except Exception:  # noqa: BLE001
            self._logger.exception("Account callback failed for %s", address)

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.state is not SubscriptionState.FAILED:
            self.state = SubscriptionState.STOPPED


__all__ = ["AccountSubscriber", "SubscriptionFailedError", "SubscriptionState"]
