import logging
from datetime import datetime
from typing import List, Optional

import requests

from sella import config

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, token: str, chat_ids: List[str], timeout: float = 5.0):
        self.token = token
        self.chat_ids = chat_ids
        self.timeout = timeout
        self.api_url = f"https://api.telegram.org/bot{self.token}/sendMessage"

    def send(self, message: str) -> int:
        """Send the message to every configured chat. Returns how many went out."""
        if not self.token or not self.chat_ids:
            logger.debug("Telegram notifications disabled, skipping message")
            return 0
        sent = 0
        for chat_id in self.chat_ids:
            try:
                resp = requests.post(self.api_url, data={
                    "chat_id": chat_id,
                    "text": message,
                    "parse_mode": "HTML",
                }, timeout=self.timeout)
                resp.raise_for_status()
                sent += 1
            except requests.RequestException as e:
                logger.warning("Telegram send to %s failed: %s", chat_id, e)
        return sent

    def format_items(self, items):
        lines = []
        for item in items:
            if item.get("weight_g"):
                lines.append(f"• {item['name']} ~{item['weight_g']} g = R{item['total']:.2f}")
            else:
                lines.append(f"• {item['name']} × {item['qty']} = R{item['total']:.2f}")
        return "\n".join(lines)

    def notify_order_created(self, order_id: str, total: float, payment_method: str, items: list,
                             notes: Optional[str] = None):
        date_str = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        msg = [
            f"🆕 <b>New order #{order_id[-8:]}</b>",
            f"📅 {date_str}",
            f"💳 {payment_method}",
        ]
        if notes:
            msg.append(f"💬 {notes}")
        msg.append("\n📦 Items:\n" + self.format_items(items))
        msg.append(f"\n💰 Estimated total: R{total:.2f}")
        return self.send("\n".join(msg))

    def notify_status_changed(self, order_id: str, new_status: str):
        return self.send(f"⚡ <b>Order #{order_id[-8:]}</b>\n📌 New status: {new_status}")

    def notify_payment_confirmed(self, order_id: str, amount: float):
        return self.send(f"✅ <b>Order #{order_id[-8:]}</b> paid: R{amount:.2f}")


# shared instance
notifier = TelegramNotifier(
    token=config.TELEGRAM_TOKEN,
    chat_ids=config.TELEGRAM_CHAT_IDS,
)
