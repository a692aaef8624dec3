"""
Common — イベントチャネル (Pub/Sub トランスポート)

イベント種別ごとに1つの名前付きチャネルを使う。

配信保証:
  - at-most-once。永続化もリプレイもない。
  - 発行時点で購読中のサブスクライバーにだけ届く(オフライン中のイベントは失われる)。
  - 同じチャネルの購読者は全員が全メッセージを受け取る(fan-out)。
    同じサービスを2台動かせば、2台とも同じ副作用を実行しようとする。

トランスポートは EventChannel インターフェースの裏に隠す。
永続・順序保証つきのキュー(Redis Streams, Kafka など)に差し替えても
Publisher / Consumer の呼び出し側は変わらない。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


class EventChannel(ABC):
    @abstractmethod
    async def publish(self, channel: str, payload: str) -> int:
        """メッセージを発行し、受信したサブスクライバー数を返す。"""

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler) -> None: ...

    @abstractmethod
    async def unsubscribe(self, channel: str) -> None: ...

    async def close(self) -> None:
        return None

    @staticmethod
    async def _deliver(channel: str, handler: MessageHandler, payload: str) -> None:
        """
        チャネル側のエラー経路。
        ハンドラの例外はログに残して破棄する(リトライも DLQ もない)。
        """
        try:
            await handler(payload)
        except Exception:
            logger.exception("Handler for channel %s failed; message dropped", channel)


# ── Redis Pub/Sub ────────────────────────────────


class RedisEventChannel(EventChannel):
    """
    Redis Pub/Sub 実装。

    購読用コネクション(pubsub)は1つだけ持ち、最初の subscribe で
    バックグラウンドのリスナータスクを起動する。
    """

    def __init__(self, redis: aioredis.Redis, poll_timeout: float = 1.0) -> None:
        self.redis = redis
        self.poll_timeout = poll_timeout
        self._pubsub = redis.pubsub(ignore_subscribe_messages=True)
        self._handlers: dict[str, MessageHandler] = {}
        self._listener: asyncio.Task | None = None
        self._closing = asyncio.Event()

    async def publish(self, channel: str, payload: str) -> int:
        return await self.redis.publish(channel, payload)

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        self._handlers[channel] = handler
        await self._pubsub.subscribe(channel)
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())

    async def unsubscribe(self, channel: str) -> None:
        self._handlers.pop(channel, None)
        await self._pubsub.unsubscribe(channel)

    async def close(self) -> None:
        self._closing.set()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._pubsub.aclose()

    async def _listen(self) -> None:
        while not self._closing.is_set():
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except aioredis.ConnectionError:
                # 切断中に発行されたメッセージは失われる
                logger.warning("Redis pub/sub connection lost; retrying")
                await asyncio.sleep(1.0)
                continue
            if message and message["type"] == "message":
                channel = _as_text(message["channel"])
                handler = self._handlers.get(channel)
                if handler is not None:
                    await self._deliver(channel, handler, _as_text(message["data"]))
            else:
                await asyncio.sleep(0.1)


def _as_text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


# ── In-process ───────────────────────────────────


class InMemoryBroker:
    """
    プロセス内の Pub/Sub ブローカー。Redis と同じく fan-out・非永続。
    connect() で得たチャネルクライアントごとに購読を管理する。

    既定ではハンドラを別タスクで実行し、publish はハンドラの完了を待たない。
    inline=True のときは publish の中で順に await する。
    """

    def __init__(self, inline: bool = False) -> None:
        self.inline = inline
        self._subscriptions: dict[str, list[tuple["InMemoryEventChannel", MessageHandler]]] = {}
        self._pending: set[asyncio.Task] = set()

    def connect(self) -> "InMemoryEventChannel":
        return InMemoryEventChannel(self)

    async def publish(self, channel: str, payload: str) -> int:
        # 発行時点の購読者のスナップショットに配信する
        receivers = list(self._subscriptions.get(channel, []))
        for _, handler in receivers:
            if self.inline:
                await EventChannel._deliver(channel, handler, payload)
                continue
            task = asyncio.create_task(EventChannel._deliver(channel, handler, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(receivers)

    async def drain(self) -> None:
        """配信中のタスクがなくなるまで待つ。ハンドラが発行した分も含む。"""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def add(self, client: "InMemoryEventChannel", channel: str, handler: MessageHandler) -> None:
        entries = [e for e in self._subscriptions.get(channel, []) if e[0] is not client]
        entries.append((client, handler))
        self._subscriptions[channel] = entries

    def remove(self, client: "InMemoryEventChannel", channel: str) -> None:
        entries = [e for e in self._subscriptions.get(channel, []) if e[0] is not client]
        if entries:
            self._subscriptions[channel] = entries
        else:
            self._subscriptions.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, []))


class InMemoryEventChannel(EventChannel):
    def __init__(self, broker: InMemoryBroker) -> None:
        self.broker = broker
        self._channels: set[str] = set()

    async def publish(self, channel: str, payload: str) -> int:
        return await self.broker.publish(channel, payload)

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        self.broker.add(self, channel, handler)
        self._channels.add(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.broker.remove(self, channel)
        self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)


def create_event_channel(
    transport: str,
    redis: aioredis.Redis | None = None,
    broker: InMemoryBroker | None = None,
) -> EventChannel:
    if transport == "memory":
        return (broker or InMemoryBroker()).connect()
    if redis is None:
        raise ValueError("Redis transport requires a Redis client")
    return RedisEventChannel(redis)
