from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol

from aiogram import Bot

from .constants import ADMIN_IDS_LIST

logger = logging.getLogger(__name__)

__all__ = [
    "NotificationEvent",
    "Notifier",
    "LoggingNotifier",
    "TelegramNotifier",
    "dispatch",
]


@dataclass(frozen=True)
class NotificationEvent:
    """A settlement transition or refund status change worth telling people about."""

    kind: str
    booking_id: int
    message: str
    recipients: tuple[int, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent) -> None: ...


class LoggingNotifier:
    async def notify(self, event: NotificationEvent) -> None:
        logger.info(
            "notify kind=%s booking=%s recipients=%s: %s",
            event.kind,
            event.booking_id,
            list(event.recipients),
            event.message,
        )


class TelegramNotifier:
    """Deliver notifications through an aiogram Bot.

    ``resolve_chat_ids`` maps user ids from the event to chat ids; admins from
    ADMIN_IDS are always copied. Callers must pass the running bot; this class
    never creates one implicitly.
    """

    def __init__(
        self,
        bot: Bot,
        resolve_chat_ids: Callable[[Iterable[int]], Awaitable[list[int]]] | None = None,
        admin_chat_ids: Iterable[int] | None = None,
    ) -> None:
        self.bot = bot
        self.resolve_chat_ids = resolve_chat_ids
        self.admin_chat_ids = list(admin_chat_ids if admin_chat_ids is not None else ADMIN_IDS_LIST)

    async def notify(self, event: NotificationEvent) -> None:
        chat_ids: list[int] = []
        if self.resolve_chat_ids and event.recipients:
            chat_ids.extend(await self.resolve_chat_ids(event.recipients))
        chat_ids.extend(self.admin_chat_ids)
        for chat_id in dict.fromkeys(chat_ids):
            try:
                await self.bot.send_message(chat_id, event.message)
            except Exception as e:
                logger.error("TelegramNotifier: failed to send to %s: %s", chat_id, e)


async def dispatch(notifier: Notifier | None, event: NotificationEvent) -> None:
    """Fire-and-forget delivery; failures are logged and never propagate."""
    if notifier is None:
        return
    try:
        await notifier.notify(event)
    except Exception:
        logger.exception("Notification dispatch failed for %s on booking %s", event.kind, event.booking_id)
