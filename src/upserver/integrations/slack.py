"""Slack Web API integration: operator notifications."""

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def _section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def format_flagged_request(
    customer_id: str,
    review_id: str,
    scope: str,
    triggers: list[str] | tuple[str, ...] = (),
    request: str = "",
    **_,
) -> tuple[str, list[dict]]:
    """Format a flagged-request alert as Slack blocks."""
    trigger_text = ", ".join(f"`{t}`" for t in triggers) or "none"
    summary = request if len(request) <= 300 else request[:297] + "..."
    text = f":triangular_flag_on_post: Request flagged for review ({customer_id})"
    return text, [
        _section(
            f":triangular_flag_on_post: *Request flagged for review*\n"
            f"Customer: `{customer_id}` | Review: `{review_id}` | Scope: *{scope}*\n"
            f"Triggers: {trigger_text}"
        ),
        _section(f">{summary}" if summary else "_(empty request)_"),
    ]


def format_publish(
    customer_id: str | None,
    message: str,
    commit_hash: str | None = None,
    **_,
) -> tuple[str, list[dict]]:
    short = f" (`{commit_hash[:7]}`)" if commit_hash else ""
    text = f":rocket: {message}{short}"
    return text, [_section(f":rocket: *Publish* | Customer: `{customer_id}`\n{message}{short}")]


def format_error(
    customer_id: str | None,
    context: str,
    detail: str,
    error_type: str | None = None,
    **_,
) -> tuple[str, list[dict]]:
    kind = f" `{error_type}`" if error_type else ""
    snippet = detail if len(detail) <= 1500 else detail[-1500:]
    text = f":x: Error in {context} ({customer_id})"
    return text, [
        _section(f":x: *Error in {context}*{kind}\nCustomer: `{customer_id}`"),
        _section(f"```{snippet}```"),
    ]


FORMATTERS = {
    "flagged_request": format_flagged_request,
    "publish": format_publish,
    "error": format_error,
}


class Notifier:
    """Fire-and-forget operator notifications.

    Without a token or channel the formatted message is only logged. Delivery
    failures are logged and never reach the caller.
    """

    def __init__(self, token: str | None = None, channel: str | None = None):
        self.token = token
        self.channel = channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def notify(self, category: str, **fields) -> threading.Thread | None:
        formatter = FORMATTERS.get(category)
        if formatter is None:
            raise ValueError(f"Unknown notification category: {category}")
        text, blocks = formatter(**fields)

        if not self.enabled:
            logger.info("Notification (%s, not sent): %s", category, text)
            return None

        thread = threading.Thread(
            target=self._deliver, args=(category, text, blocks),
            name=f"notify-{category}", daemon=True,
        )
        thread.start()
        return thread

    def _deliver(self, category: str, text: str, blocks: list[dict]):
        try:
            send_message(self.token, self.channel, text, blocks=blocks)
        except Exception:
            logger.exception("Failed to send %s notification to Slack", category)
