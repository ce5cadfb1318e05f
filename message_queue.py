"""
Outbound message queue.

Lessons are not sent from the code that produces them. They are put on a
FIFO queue that a single background task drains, leaving a short pause
between sends so that a daily fan-out to many users stays under Telegram's
flood limits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from telegram.error import TelegramError

import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingMessage:
    chat_id: int
    text: str


class MessageQueue:
    def __init__(self, bot: Any, send_interval: float = config.MESSAGE_SEND_INTERVAL) -> None:
        self.bot = bot
        self.send_interval = send_interval
        self._queue: "asyncio.Queue[OutgoingMessage]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.sent = 0
        self.failed = 0

    def enqueue(self, chat_id: int, text: str) -> None:
        self._queue.put_nowait(OutgoingMessage(int(chat_id), text))

    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="message-queue")
            logger.info("Message queue worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Message queue worker stopped with %d message(s) unsent", self.pending())

    async def join(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.send(message)
            finally:
                self._queue.task_done()
            await asyncio.sleep(self.send_interval)

    async def send(self, message: OutgoingMessage) -> bool:
        try:
            await self.bot.send_message(chat_id=message.chat_id, text=message.text)
        except TelegramError as exc:
            self.failed += 1
            logger.error("Failed to send message to %s: %s", message.chat_id, exc)
            return False
        self.sent += 1
        return True
