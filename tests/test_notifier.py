import logging

import pytest
import requests

import notifier as notifier_module
from conftest import ALICE, BOB, NOW, POOL_A
from notifier import DiscordNotifier, Notifier, format_amount, format_timestamp

WEBHOOKS = {
    "payouts": "https://discord.com/api/webhooks/1/payouts",
    "reminders": "https://discord.com/api/webhooks/2/reminders",
    "alerts": "https://discord.com/api/webhooks/3/alerts",
}


class FakeResponse:
    def __init__(self, status_code=204, text=""):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def posts(monkeypatch):
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append((url, json, timeout))
        return FakeResponse()

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)
    return sent


def test_format_amount_uses_token_units() -> None:
    assert format_amount(30 * 10**18) == "30 cUSD"
    assert format_amount(None) == "unknown"


def test_format_timestamp_shows_utc() -> None:
    assert format_timestamp(NOW).startswith("2023-11-14 22:13:20 UTC")
    assert format_timestamp(0) == "N/A"


def test_log_notifier_writes_notices(caplog) -> None:
    caplog.set_level(logging.INFO)
    log_notifier = Notifier("https://explorer.example.org/tx/{tx_hash}")

    log_notifier.notify_payout(POOL_A, ALICE, 30 * 10**18, "0xabc")
    log_notifier.alert_stalled(POOL_A, 1.5, [BOB])

    assert "https://explorer.example.org/tx/0xabc" in caplog.text
    assert "1.5 hours overdue" in caplog.text


def test_discord_routes_notices_by_kind(posts) -> None:
    discord = DiscordNotifier(WEBHOOKS, "https://explorer.example.org/tx/{tx_hash}")

    discord.notify_payout(POOL_A, ALICE, 30 * 10**18, "0xabc")
    discord.send_reminder(BOB, POOL_A, 10 * 10**18, NOW)
    discord.alert_stalled(POOL_A, 2.0, [BOB])
    discord.log_warning("operator balance low", {"pool": POOL_A})

    assert [url for url, _, _ in posts] == [
        WEBHOOKS["payouts"],
        WEBHOOKS["reminders"],
        WEBHOOKS["alerts"],
        WEBHOOKS["alerts"],
    ]
    payout_embed = posts[0][1]["embeds"][0]
    assert payout_embed["url"] == "https://explorer.example.org/tx/0xabc"
    assert all(timeout == 10 for _, _, timeout in posts)


def test_discord_skips_unconfigured_kinds(posts) -> None:
    discord = DiscordNotifier({"payouts": WEBHOOKS["payouts"], "alerts": "N/A"})

    discord.send_reminder(BOB, POOL_A, 10, NOW)
    discord.alert_stalled(POOL_A, 2.0, [BOB])

    assert posts == []


def test_discord_delivery_errors_are_swallowed(monkeypatch, caplog) -> None:
    def failing_post(url, json=None, timeout=None):
        raise requests.ConnectionError("discord unreachable")

    monkeypatch.setattr(notifier_module.requests, "post", failing_post)
    discord = DiscordNotifier(WEBHOOKS)

    discord.alert_stalled(POOL_A, 2.0, [BOB])

    assert "Failed to send Discord alerts notice" in caplog.text


def test_discord_http_error_is_logged(monkeypatch, caplog) -> None:
    monkeypatch.setattr(notifier_module.requests, "post", lambda url, json=None, timeout=None: FakeResponse(429, "rate limited"))

    assert DiscordNotifier(WEBHOOKS)._post("alerts", {"title": "x"}) is False
    assert "status 429" in caplog.text
