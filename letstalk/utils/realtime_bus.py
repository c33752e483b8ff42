import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from letstalk.core.logging import get_logger
from letstalk.utils.websocket_manager import ConnectionManager


logger = get_logger("letstalk.realtime")


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        class _Sub:
            async def run(self):
                await asyncio.Future()

            async def cancel(self):
                return

        return _Sub()

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisError as exc:
                        logger.warning("realtime.subscribe_failed", extra={"channel": channel, "error": str(exc)})
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


def create_bus(url: Optional[str]):
    if not url:
        return NoopBus()
    return RedisBus(url)


class EventFanout:
    """Pushes conversation events to participants.

    Uses the Redis bus when enabled so every worker sees the event,
    otherwise the local connection manager.
    """

    def __init__(self, bus, manager: ConnectionManager) -> None:
        self._bus = bus
        self._manager = manager

    async def send(self, user_ids: Iterable[str], event: Dict[str, Any], *, exclude: Optional[str] = None) -> None:
        payload = json.dumps(event, default=str)
        for user_id in user_ids:
            if user_id == exclude:
                continue
            if getattr(self._bus, "enabled", False):
                await self._bus.publish(user_channel(user_id), payload)
            else:
                await self._manager.send_personal_message(user_id, payload)
