"""Run the reminder sweep and display-update worker until interrupted."""

from __future__ import annotations

import asyncio
import logging

from schedbot.apps.bot.bootstrap import start_background
from schedbot.apps.bot.chat_client import HttpChatClient
from schedbot.apps.bot.reminders import get_reminder_sweep
from schedbot.core.db import dispose_engine

logger = logging.getLogger(__name__)


async def main() -> None:
    services = await start_background()
    try:
        await asyncio.Event().wait()
    finally:
        await services.worker.shutdown()
        await get_reminder_sweep().shutdown()
        if isinstance(services.chat, HttpChatClient):
            await services.chat.close()
        await dispose_engine()
        logger.info("bootstrap.stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
