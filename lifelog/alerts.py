"""
Operational alerts: stale-data warnings and scheduled-run failures.

Alerts are plain text posted to a Slack channel. Posting is best effort;
a failed post is logged and reported as False, never raised.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api/chat.postMessage"


class Alerter(Protocol):
    """Posts a plain text message somewhere an operator will see it."""

    def post_message(self, text: str) -> bool:
        ...


class SlackAlerter:
    """Posts via Slack's chat.postMessage using a bot token."""

    def __init__(
        self,
        token: str,
        channel: str,
        *,
        username: Optional[str] = None,
        timeout: float = 10.0,
    ):
        if not token:
            raise ValueError("Slack bot token required. Set SLACK_BOT_TOKEN")
        self._token = token
        self.channel = channel
        self._username = username
        self._timeout = timeout

    def post_message(self, text: str) -> bool:
        data = {
            "token": self._token,
            "channel": self.channel,
            "text": text,
            "link_names": "true",
        }
        if self._username:
            data["username"] = self._username

        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(SLACK_API_URL, data=data)
        except httpx.HTTPError as e:
            logger.error("Slack post error: %s", e)
            return False

        if resp.status_code >= 400:
            logger.error("Slack API error: %d", resp.status_code)
            return False
        try:
            result = resp.json()
        except ValueError:
            logger.error("Slack API returned non-JSON body")
            return False
        if not result.get("ok"):
            logger.error("Slack post failed: %s", result.get("error"))
            return False
        return True


class NullAlerter:
    """Logs alerts instead of posting them. Used when Slack isn't configured."""

    def post_message(self, text: str) -> bool:
        logger.warning("Alert (not posted): %s", text)
        return False


def format_stale_alert(last_update: Optional[datetime], threshold_hours: int) -> str:
    if last_update is None:
        return (
            f"Lifelog sync warning: no data has been synced yet "
            f"(threshold {threshold_hours}h)."
        )
    stamp = last_update.strftime("%Y-%m-%d %H:%M UTC")
    return (
        f"Lifelog sync warning: no new data for more than {threshold_hours}h. "
        f"Last update: {stamp}."
    )


def format_error_alert(error: BaseException, context: Optional[str] = None) -> str:
    text = "Lifelog scheduled run error\n"
    if context:
        text += f"Step: {context}\n"
    text += f"Error: {type(error).__name__}: {error}"
    return text
