import time
import asyncio
import logging

import requests

logger = logging.getLogger("Notifier")

ALERT_COOLDOWN = 300  # 5 minutes between identical error alerts


class TelegramNotifier:
    """HTML Telegram alerts with anti-spam cooldown on error messages. A no-op when unconfigured."""

    def __init__(self, bot_token: str = "", chat_id: str = "", cooldown: float = ALERT_COOLDOWN):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.cooldown = cooldown
        self._last_errors = {}

    @classmethod
    def from_settings(cls, settings) -> "TelegramNotifier":
        return cls(settings.telegram_bot_token, settings.telegram_chat_id)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def _suppressed(self, msg: str) -> bool:
        error_key = msg[:100]
        now = time.time()
        last = self._last_errors.get(error_key)
        if last is not None and (now - last) < self.cooldown:
            return True
        self._last_errors[error_key] = now
        return False

    def send(self, msg: str, is_error: bool = False) -> bool:
        if not self.enabled:
            return False
        if is_error and self._suppressed(msg):
            return False
        try:
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            requests.post(url, json={"chat_id": self.chat_id, "text": msg, "parse_mode": "HTML"}, timeout=10)
            return True
        except requests.RequestException as e:
            logger.warning(f"⚠️ Telegram alert failed: {e}")
            return False

    async def send_async(self, msg: str, is_error: bool = False) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self.send(msg, is_error))
