"""Outbound notifications to Discord webhooks.

Notifications are fire-and-forget: a failed post is logged and dropped,
never raised into the pipeline that produced it, because the rows it
describes are already committed.

Example:
    >>> from osu_complete.notify import build_notifier
    >>> notifier = build_notifier()
    >>> notifier.send("map", {"content": "Saved new beatmapset"})
"""
from __future__ import annotations

import logging
from typing import Any, Literal

import requests

from osu_complete.config import Settings, get_settings
from osu_complete.logging import WARN

logger = logging.getLogger(__name__)

Channel = Literal["map", "pass", "user", "milestone"]

# Discord allows at most 10 embeds per message
MAX_EMBEDS_PER_MESSAGE = 10

MAP_COLOR = 0xBEA3F5
USER_COLOR = 0xA3F5F5
MILESTONE_COLOR = 0xF5E7A3


class Notifier:
    """Base notification sink."""

    def send(self, channel: Channel, payload: dict[str, Any]) -> bool:
        raise NotImplementedError

    def send_embeds(self, channel: Channel, embeds: list[dict[str, Any]]) -> None:
        """Send embeds in as few messages as Discord allows."""
        for start in range(0, len(embeds), MAX_EMBEDS_PER_MESSAGE):
            self.send(channel, {"embeds": embeds[start:start + MAX_EMBEDS_PER_MESSAGE]})


class NullNotifier(Notifier):
    """Sink that drops every message. Used when no webhooks are configured."""

    def send(self, channel: Channel, payload: dict[str, Any]) -> bool:
        return False


class DiscordNotifier(Notifier):
    """Posts messages to one webhook URL per channel.

    Attributes:
        webhooks: Channel name to webhook URL; channels without a URL are skipped.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        webhooks: dict[str, str | None],
        timeout: float = 10.0,
        http: requests.Session | None = None,
    ) -> None:
        self.webhooks = {k: v for k, v in webhooks.items() if v}
        self.timeout = timeout
        self.http = http or requests.Session()

    def send(self, channel: Channel, payload: dict[str, Any]) -> bool:
        """Post a message; returns whether Discord accepted it."""
        url = self.webhooks.get(channel)
        if url is None:
            return False
        try:
            response = self.http.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"{WARN} Discord {channel} notification failed: {e}")
            return False
        if response.status_code >= 400:
            logger.warning(
                f"{WARN} Discord {channel} notification rejected with "
                f"status {response.status_code}"
            )
            return False
        return True


def build_notifier(settings: Settings | None = None) -> Notifier:
    """Create a notifier from settings, or a no-op one if none are configured."""
    settings = settings or get_settings()
    webhooks = {
        "map": settings.map_feed_webhook_url,
        "pass": settings.pass_feed_webhook_url,
        "user": settings.user_feed_webhook_url,
        "milestone": settings.milestone_feed_webhook_url,
    }
    if not any(webhooks.values()):
        return NullNotifier()
    return DiscordNotifier(webhooks)
