# hedgearb/notifier.py
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import aiohttp

Event = Dict[str, Any]


class NotificationSink:
    async def emit(self, event: Event):
        raise NotImplementedError


class LogSink(NotificationSink):
    """Writes events to the log; the always-on sink."""
    LEVELS = {
        'manual_intervention': logging.CRITICAL,
        'late_fill': logging.CRITICAL,
        'trade_failed': logging.ERROR,
        'position_attention': logging.ERROR,
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("hedgearb.notify")

    async def emit(self, event: Event):
        level = self.LEVELS.get(event.get('type'), logging.INFO)
        self.logger.log(level, f"🔔 {event.get('type')}: {format_event(event)}")


class TelegramSink(NotificationSink):
    """Posts events as plain text messages through the Telegram Bot API."""
    def __init__(self, token: str, chat_id: str, timeout: float = 10.0):
        self.url = f"https://api.telegram.org/bot{token}/sendMessage"
        self.chat_id = chat_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def emit(self, event: Event):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        payload = {'chat_id': self.chat_id, 'text': format_event(event, multiline=True)[:4096]}
        async with self._session.post(self.url, json=payload) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RuntimeError(f"Telegram HTTP {resp.status}: {body[:200]}")

    async def close(self):
        if self._session is not None:
            await self._session.close()


def format_event(event: Event, multiline: bool = False) -> str:
    sep = "\n" if multiline else " | "
    head = event.get('type', 'event').upper()
    body = [f"{k}={v}" for k, v in event.items() if k != 'type']
    return sep.join([head] + body) if multiline else sep.join(body)


class Notifier:
    """
    Fire-and-forget fan-out to every sink. publish() never awaits delivery and
    sink failures are only logged, so alerting cannot slow or break a trade.
    """
    def __init__(self, sinks: List[NotificationSink], logger: Optional[logging.Logger] = None):
        self.sinks = sinks
        self.logger = logger or logging.getLogger("hedgearb.notify")
        self._tasks: Set[asyncio.Task] = set()

    def publish(self, event: Event):
        for sink in self.sinks:
            task = asyncio.ensure_future(sink.emit(event))
            self._tasks.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"❌ Failed to send notification: {exc}")

    async def drain(self):
        """Waits for pending deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        await self.drain()
        for sink in self.sinks:
            closer = getattr(sink, 'close', None)
            if closer is not None:
                await closer()
