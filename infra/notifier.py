"""Trade notifications: a silent logging variant and a Telegram variant."""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from core.models import Position

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Notifier(ABC):
    """
    Fire-and-forget trade notifications.

    Implementations must never raise into trading logic; the ledger guards
    calls anyway.
    """

    @abstractmethod
    def notify_open(self, position: Position) -> None:
        ...

    @abstractmethod
    def notify_close(self, position: Position, profit: float, profit_percent: float) -> None:
        ...

    def alert(self, message: str) -> None:
        """Operator-attention message (e.g. persistence is failing)."""
        logger.critical(message)


def format_open(position: Position) -> str:
    return (
        "POSITION OPENED\n"
        f"Symbol: {position.symbol}\n"
        f"Entry: ${position.entry_price:.4f}\n"
        f"Quantity: {position.quantity:.4f}\n"
        f"Target (TP): {position.take_profit_pct:.1f}%\n"
        f"Stop (SL): {position.stop_loss_pct:.1f}%\n"
        f"Reason: {position.rationale}"
    )


def format_close(position: Position, profit: float, profit_percent: float) -> str:
    exit_price = position.exit_price if position.exit_price is not None else 0.0
    return (
        f"POSITION CLOSED ({'win' if profit >= 0 else 'loss'})\n"
        f"Symbol: {position.symbol}\n"
        f"P&L: ${profit:.2f} ({profit_percent:+.2f}%)\n"
        f"Exit: ${exit_price:.4f}\n"
        f"Reason: {position.exit_reason}"
    )


class LoggingNotifier(Notifier):
    """Headless variant: notifications only go to the log."""

    def notify_open(self, position: Position) -> None:
        logger.info("Opened %s @ %.4f x %.6f", position.symbol, position.entry_price, position.quantity)

    def notify_close(self, position: Position, profit: float, profit_percent: float) -> None:
        logger.info(
            "Closed %s @ %s (%s) P&L $%.2f (%+.2f%%)",
            position.symbol,
            position.exit_price,
            position.exit_reason,
            profit,
            profit_percent,
        )


class TelegramNotifier(Notifier):
    """Interactive variant: posts to a Telegram chat from a background thread."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        background: bool = True,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._timeout = timeout
        self._session = session or requests.Session()
        self._background = background

    def _post(self, text: str) -> None:
        url = f"{TELEGRAM_API}/bot{self._bot_token}/sendMessage"
        payload = {"chat_id": self._chat_id, "text": f"scanpilot\n\n{text}"}
        try:
            response = self._session.post(url, json=payload, timeout=self._timeout)
            if response.status_code >= 400:
                logger.warning("Telegram notification failed: HTTP %s %s", response.status_code, response.text[:200])
        except requests.RequestException as exc:
            logger.warning("Telegram notification error: %s", exc)

    def send(self, text: str) -> None:
        if not self._background:
            self._post(text)
            return
        threading.Thread(target=self._post, args=(text,), name="telegram-notify", daemon=True).start()

    def notify_open(self, position: Position) -> None:
        self.send(format_open(position))

    def notify_close(self, position: Position, profit: float, profit_percent: float) -> None:
        self.send(format_close(position, profit, profit_percent))

    def alert(self, message: str) -> None:
        super().alert(message)
        self.send(f"ALERT\n{message}")


def create_notifier(raw_config: Optional[Dict[str, Any]]) -> Notifier:
    """
    Pick the notifier variant from the ``notifications`` config section.

    Telegram credentials come from environment variables named in config;
    missing credentials fall back to the logging variant.
    """
    raw_config = raw_config or {}
    channel = str(raw_config.get("channel", "log")).lower()
    if channel != "telegram":
        return LoggingNotifier()

    telegram_cfg = raw_config.get("telegram") or {}
    token = os.getenv(telegram_cfg.get("bot_token_env", "TELEGRAM_BOT_TOKEN"), "")
    chat_id = os.getenv(telegram_cfg.get("chat_id_env", "TELEGRAM_CHAT_ID"), "")
    if not token or not chat_id:
        logger.warning("Telegram notifications selected but credentials are missing; using log notifier")
        return LoggingNotifier()
    return TelegramNotifier(token, chat_id, timeout=float(telegram_cfg.get("timeout_seconds", 5.0)))
