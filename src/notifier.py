#!/usr/bin/env python3
"""
Notifier

Delivers human readable notices about pool actions. The keeper treats every
call as best effort: delivery problems are logged here and never raised.

- Notifier: writes notices to the log
- DiscordNotifier: also posts an embed to a Discord webhook per notice kind
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
import requests
from web3 import Web3

logger = logging.getLogger(__name__)

TOKEN_SYMBOL = "cUSD"

COLOR_PAYOUT = 0x2ECC71
COLOR_REMINDER = 0xF1C40F
COLOR_ALERT = 0xE74C3C
COLOR_WARNING = 0xE67E22


def format_amount(amount: Optional[int]) -> str:
    if amount is None:
        return "unknown"
    return f"{Web3.from_wei(int(amount), 'ether')} {TOKEN_SYMBOL}"


def format_timestamp(timestamp: Optional[float]) -> str:
    """Render a unix timestamp in UTC and US/Eastern"""
    if not timestamp:
        return "N/A"
    dt_utc = datetime.fromtimestamp(timestamp, tz=pytz.utc)
    dt_et = dt_utc.astimezone(pytz.timezone("US/Eastern"))
    return f"{dt_utc.strftime('%Y-%m-%d %H:%M:%S %Z')} ({dt_et.strftime('%H:%M %Z')})"


class Notifier:
    def __init__(self, explorer_tx_url: Optional[str] = None):
        self.explorer_tx_url = explorer_tx_url

    def explorer_link(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_tx_url or not tx_hash:
            return None
        return self.explorer_tx_url.format(tx_hash=tx_hash)

    def send_reminder(self, member: str, pool: str, amount: int, due_time: float) -> None:
        logger.info(
            f"🔔 REMINDER | member={member} | pool={pool} | amount={format_amount(amount)} "
            f"| due={format_timestamp(due_time)}"
        )

    def notify_payout(self, pool: str, recipient: Optional[str], amount: Optional[int], tx_hash: str) -> None:
        link = self.explorer_link(tx_hash)
        logger.info(
            f"💸 PAYOUT EXECUTED | pool={pool} | recipient={recipient or 'unknown'} "
            f"| amount={format_amount(amount)} | tx={tx_hash}" + (f" | {link}" if link else "")
        )

    def alert_stalled(self, pool: str, hours_overdue: float, missing_members: List[str]) -> None:
        logger.warning(
            f"⏰ POOL STALLED | pool={pool} | {hours_overdue:.1f} hours overdue "
            f"with {len(missing_members)} missing payment(s): {', '.join(missing_members)}"
        )

    def log_warning(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        logger.warning(f"⚠️ {message}" + (f" | {metadata}" if metadata else ""))


class DiscordNotifier(Notifier):
    """Notifier that mirrors every notice to Discord

    Args:
        webhooks: Webhook URL per notice kind: "payouts", "reminders", "alerts".
            Warnings go to "alerts".
        explorer_tx_url: Format string with a {tx_hash} placeholder
    """

    def __init__(self, webhooks: Dict[str, str], explorer_tx_url: Optional[str] = None, timeout_s: int = 10):
        super().__init__(explorer_tx_url)
        self.webhooks = {kind: url for kind, url in webhooks.items() if url and url != "N/A"}
        self.timeout_s = timeout_s

    def _post(self, kind: str, embed: Dict[str, Any]) -> bool:
        webhook_url = self.webhooks.get(kind)
        if not webhook_url:
            return False

        embed.setdefault("timestamp", datetime.now(pytz.utc).isoformat())
        payload = {"content": None, "embeds": [embed]}

        try:
            response = requests.post(webhook_url, json=payload, timeout=self.timeout_s)
            if response.status_code >= 400:
                logger.error(f"Failed to send Discord {kind} notice (status {response.status_code}): {response.text}")
                return False
            return True
        except Exception as e:
            logger.error(f"Failed to send Discord {kind} notice: {e}")
            return False

    def send_reminder(self, member: str, pool: str, amount: int, due_time: float) -> None:
        super().send_reminder(member, pool, amount, due_time)
        self._post("reminders", {
            "title": "🔔 Contribution Reminder",
            "color": COLOR_REMINDER,
            "fields": [
                {"name": "Member", "value": f"`{member}`", "inline": False},
                {"name": "Pool", "value": f"`{pool}`", "inline": False},
                {"name": "Amount", "value": format_amount(amount), "inline": True},
                {"name": "Due", "value": format_timestamp(due_time), "inline": True},
            ],
        })

    def notify_payout(self, pool: str, recipient: Optional[str], amount: Optional[int], tx_hash: str) -> None:
        super().notify_payout(pool, recipient, amount, tx_hash)
        link = self.explorer_link(tx_hash)
        embed = {
            "title": "💸 Payout Executed",
            "color": COLOR_PAYOUT,
            "fields": [
                {"name": "Pool", "value": f"`{pool}`", "inline": False},
                {"name": "Recipient", "value": f"`{recipient or 'unknown'}`", "inline": False},
                {"name": "Amount", "value": format_amount(amount), "inline": True},
            ],
            "footer": {"text": f"tx: {tx_hash}"},
        }
        if link:
            embed["url"] = link
        self._post("payouts", embed)

    def alert_stalled(self, pool: str, hours_overdue: float, missing_members: List[str]) -> None:
        super().alert_stalled(pool, hours_overdue, missing_members)
        self._post("alerts", {
            "title": "⏰ Pool Stalled",
            "color": COLOR_ALERT,
            "fields": [
                {"name": "Pool", "value": f"`{pool}`", "inline": False},
                {"name": "Hours Overdue", "value": f"{hours_overdue:.1f}", "inline": True},
                {"name": "Missing Payments", "value": str(len(missing_members)), "inline": True},
                {
                    "name": "Members",
                    "value": ("\n".join(f"• `{member}`" for member in missing_members) or "none")[:1024],
                    "inline": False,
                },
            ],
        })

    def log_warning(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().log_warning(message, metadata)
        fields = [
            {"name": str(key), "value": f"`{value}`"[:1024], "inline": False}
            for key, value in (metadata or {}).items()
        ]
        self._post("alerts", {"title": f"⚠️ {message}"[:256], "color": COLOR_WARNING, "fields": fields})
