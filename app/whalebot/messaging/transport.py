"""Chat transport -- the long-polling Telegram client behind a narrow protocol.

Only this module touches python-telegram-bot types. The supervisor, the
watchdog and the handlers talk to :class:`Transport`, which tests replace
with an ``AsyncMock``.

Polling is driven here rather than by PTB's ``Updater``: the updater retries
rate limits and timeouts internally and dies quietly on an invalid token,
while the supervisor has to see every one of those errors to pick its
backoff. The poll loop hands each failure to the error callback and exits.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from telegram import BotCommand, Update
from telegram.constants import ChatAction
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from .events import InboundEvent, classify

logger = logging.getLogger(__name__)

EventSink = Callable[[InboundEvent], Awaitable[None]]
PollingErrorCallback = Callable[[Exception], None]

POLL_INTERVAL_SECONDS = 0.3
POLL_TIMEOUT_SECONDS = 10


class Transport(Protocol):
    @property
    def is_polling(self) -> bool: ...

    async def get_me(self) -> Any: ...

    async def start_polling(self, on_error: PollingErrorCallback) -> None: ...

    async def stop_polling(self) -> None: ...

    async def close(self) -> None: ...

    async def send_message(self, chat_id: int | str, text: str, **kwargs: Any) -> Any: ...

    async def edit_message(
        self, chat_id: int | str, message_id: int, text: str, **kwargs: Any,
    ) -> Any: ...

    async def delete_message(self, chat_id: int | str, message_id: int) -> bool: ...

    async def send_typing(self, chat_id: int | str) -> None: ...

    async def set_commands(self, commands: Sequence[tuple[str, str]]) -> None: ...


class TelegramTransport:
    """python-telegram-bot ``Application`` fed by this transport's poll loop.

    The application is built lazily without an updater and can be closed
    and rebuilt; a full reinitialisation of the bot does exactly that.
    """

    def __init__(
        self,
        token: str,
        on_event: EventSink,
        *,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        poll_timeout: int = POLL_TIMEOUT_SECONDS,
    ) -> None:
        self._token = token
        self._on_event = on_event
        self._poll_interval = poll_interval
        self._poll_timeout = poll_timeout
        self._app: Application | None = None
        self._poll_task: asyncio.Task | None = None
        self._offset: int | None = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _ensure_app(self) -> Application:
        if self._app is None:
            app = Application.builder().token(self._token).updater(None).build()
            app.add_handler(MessageHandler(filters.ALL, self._on_update))
            app.add_error_handler(self._on_handler_error)
            self._app = app
        if not self._app.running:
            await self._app.initialize()
            await self._app.start()
        return self._app

    async def get_me(self) -> Any:
        app = await self._ensure_app()
        return await app.bot.get_me()

    async def start_polling(self, on_error: PollingErrorCallback) -> None:
        if self.is_polling:
            return
        app = await self._ensure_app()
        self._poll_task = asyncio.create_task(self._poll(app, on_error), name="telegram-poll")

    async def _poll(self, app: Application, on_error: PollingErrorCallback) -> None:
        logger.info("Polling for updates (timeout %ds)", self._poll_timeout)
        while True:
            try:
                updates = await app.bot.get_updates(
                    offset=self._offset,
                    timeout=self._poll_timeout,
                    allowed_updates=Update.ALL_TYPES,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("get_updates failed: %r", exc)
                on_error(exc)
                return
            for update in updates:
                self._offset = update.update_id + 1
                await app.update_queue.put(update)
            await asyncio.sleep(self._poll_interval)

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def close(self) -> None:
        await self.stop_polling()
        app, self._app = self._app, None
        if app is None:
            return
        if app.running:
            await app.stop()
        await app.shutdown()

    async def send_message(self, chat_id: int | str, text: str, **kwargs: Any) -> Any:
        app = await self._ensure_app()
        return await app.bot.send_message(chat_id=chat_id, text=text, **kwargs)

    async def edit_message(
        self, chat_id: int | str, message_id: int, text: str, **kwargs: Any,
    ) -> Any:
        app = await self._ensure_app()
        return await app.bot.edit_message_text(
            text=text, chat_id=chat_id, message_id=message_id, **kwargs,
        )

    async def delete_message(self, chat_id: int | str, message_id: int) -> bool:
        app = await self._ensure_app()
        return await app.bot.delete_message(chat_id=chat_id, message_id=message_id)

    async def send_typing(self, chat_id: int | str) -> None:
        app = await self._ensure_app()
        await app.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)

    async def set_commands(self, commands: Sequence[tuple[str, str]]) -> None:
        app = await self._ensure_app()
        await app.bot.set_my_commands([BotCommand(name, desc) for name, desc in commands])

    async def _on_update(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._on_event(event_from_update(update))

    async def _on_handler_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled error while processing update %s", update, exc_info=context.error)


def event_from_update(update: Update) -> InboundEvent:
    msg = update.effective_message
    user = update.effective_user
    chat = update.effective_chat
    text = msg.text if msg is not None else None
    return classify(
        user.id if user else None,
        chat.id if chat else None,
        text,
        "text" if text else "other",
    )
