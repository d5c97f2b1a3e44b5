"""Entrypoint: python -m rapport_sync

Runs a headless client that signs in (stored session or configured
credentials), keeps presence and the conversation list in sync and logs every
change until interrupted.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from rapport_sync.app import EngineClient, connect_directory
from rapport_sync.application.dto.auth import Credential
from rapport_sync.application.exceptions import AppError, describe_error
from rapport_sync.config import settings
from rapport_sync.domain.entities.conversation import Conversation
from rapport_sync.domain.entities.presence import PresenceRecord
from rapport_sync.domain.entities.session_status import SessionStatus

logger = logging.getLogger("rapport_sync")

SESSION_FILE = Path.home() / ".rapport" / "session"


def _log_status(status: SessionStatus) -> None:
    logger.info("Session: %s", status)


def _log_conversations(conversations: tuple[Conversation, ...]) -> None:
    for conversation in conversations:
        logger.info(
            "%-24s unread=%d  %s",
            conversation.display_name,
            conversation.unread_count,
            conversation.last_message_preview,
        )


def _log_presence(record: PresenceRecord) -> None:
    logger.info("%s is %s", record.user_id, "online" if record.is_online else "offline")


async def run() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with connect_directory(SESSION_FILE) as directory:
        client = EngineClient(directory.auth, directory.records, directory.push)
        client.session.on_status_change(_log_status)
        client.conversations.on_change(_log_conversations)
        client.presence.subscribe(_log_presence)
        await client.start()
        try:
            if client.session.current_user() is None:
                if not settings.CLIENT_EMAIL:
                    logger.error("No stored session and CLIENT_EMAIL is not set")
                    return
                try:
                    await client.session.login(
                        Credential(email=settings.CLIENT_EMAIL, password=settings.CLIENT_PASSWORD),
                    )
                except AppError as exc:
                    logger.error("Login failed: %s", describe_error(exc))
                    return
            await stop.wait()
        finally:
            await client.stop()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run())


if __name__ == "__main__":
    main()
