"""Application entry point for the registry chat client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from client import build_api_client, build_transport, load_identity
from core.models import Channel, Notice
from core.session import Messenger

NAME = "REGISTRY"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


# Shorter values (short user ids, role names) would mask unrelated log text.
MIN_REDACTED_LENGTH = 6
REDACTION_MASK = "***"


class _RedactingFormatter(logging.Formatter):
    """Mask access tokens and other configured secrets in every log line.

    Bearer headers and socket auth payloads end up in aiohttp and
    socket.io debug output, so masking happens after formatting.
    """

    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret and len(secret) >= MIN_REDACTED_LENGTH]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, REDACTION_MASK)
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = {os.getenv(name) for name in redact_cfg.get("patterns", [])}
    # Longest first so a token never leaks through a shorter overlapping one.
    return sorted((value for value in values if value), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/registry-chat.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                path,
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )

    if not handlers:
        return

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=handlers)


class LoggingNoticeSink:
    """Route user-facing notices to the log when there is no UI."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("registry.notices")

    def notify(self, notice: Notice) -> None:
        level = logging.getLevelName(notice.level.upper())
        if not isinstance(level, int):
            level = logging.INFO
        self._logger.log(level, notice.text)


def _describe(channel: Channel) -> str:
    access = "read-only" if channel.is_read_only else "read-write"
    return f"{channel.kind.value} | {channel.display_name} | {channel.id} | {access}"


def _build_messenger(on_change=None) -> tuple[Messenger, object, object]:
    identity = load_identity()
    api = build_api_client(identity, settings.REQUEST_TIMEOUT_SECONDS)
    transport = build_transport(identity)
    messenger = Messenger(
        identity,
        api,
        transport,
        settings.MESSAGING,
        LoggingNoticeSink(),
        on_change=on_change,
    )
    return messenger, api, transport


async def _list_channels() -> None:
    messenger, api, _ = _build_messenger()
    async with api:
        channels = await messenger.refresh_channels()
    for index, channel in enumerate(channels, start=1):
        unread = messenger.store.unread(channel.id)
        suffix = f" | {unread} unread" if unread else ""
        print(f"{index}. {_describe(channel)}{suffix}")


async def _watch(channel_id: Optional[str]) -> None:
    logger = logging.getLogger(__name__)
    holder: dict[str, Messenger] = {}

    def on_change(changed_id: str) -> None:
        messenger = holder["messenger"]
        latest = messenger.store.messages(changed_id)
        text = latest[-1].body.text if latest else ""
        logger.info(
            "%s updated (%s unread, %s total): %s",
            changed_id,
            messenger.store.unread(changed_id),
            messenger.unread_total(),
            text or "<attachment or removed>",
        )

    messenger, api, transport = _build_messenger(on_change)
    holder["messenger"] = messenger

    async with api:
        messenger.start()
        await transport.connect()
        try:
            channels = await messenger.refresh_channels()
            logger.info("%s conversations available", len(channels))
            if channel_id:
                view = await messenger.select_channel(channel_id)
                if view is not None:
                    logger.info("Opened %s with %s messages", view.channel.display_name, len(view.messages))
                    for message in view.messages:
                        print(f"[{message.created_at:%Y-%m-%d %H:%M}] {message.sender_id}: {message.body.text or ''}")
            logger.info("Listening for live events...")
            await transport.wait()
        finally:
            await messenger.close()
            await transport.disconnect()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Stopped")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="registry-chat")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("channels", help="List the conversations visible to the signed-in identity")
    watch = subparsers.add_parser("watch", help="Follow live events, optionally opening one channel")
    watch.add_argument("--channel", help="Channel id to open, e.g. broadcast or group:<id>")

    args = parser.parse_args(argv)
    _print_banner()
    _configure_logging()
    if args.command == "channels":
        _run(_list_channels())
        return
    _run(_watch(getattr(args, "channel", None)))


if __name__ == "__main__":
    main()
