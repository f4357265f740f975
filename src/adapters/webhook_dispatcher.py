"""Outbound chat webhook dispatcher.

One POST per channel. Google Chat channels receive a ``cardsV2`` card,
Slack channels an incoming-webhook Block Kit payload. Delivery failures are
returned as ``DispatchOutcome(success=False)``; nothing is retried inside a
run.
"""

from typing import Any, Final

import requests
from slack_sdk.errors import SlackClientError
from slack_sdk.webhook import WebhookClient

from src.config.logging_config import get_logger
from src.domain.exceptions import DispatchError
from src.domain.models import Channel, ChannelKind, DispatchOutcome

logger = get_logger(__name__)

DEFAULT_DISPATCH_TIMEOUT_SECONDS: Final[float] = 10.0
MAX_ERROR_BODY_CHARS: Final[int] = 500


def build_google_chat_card(message: str, gif_url: str, card_id: str) -> dict[str, Any]:
    """Google Chat ``cardsV2`` payload: text paragraph plus optional image."""
    sections: list[dict[str, Any]] = [
        {"widgets": [{"textParagraph": {"text": message}}]}
    ]
    if gif_url:
        sections.append(
            {
                "widgets": [
                    {
                        "image": {
                            "imageUrl": gif_url,
                            "altText": "celebration",
                            "onClick": {"openLink": {"url": gif_url}},
                        }
                    }
                ]
            }
        )
    return {"cardsV2": [{"cardId": card_id, "card": {"sections": sections}}]}


def build_slack_blocks(message: str, gif_url: str) -> list[dict[str, Any]]:
    """Slack Block Kit blocks: section plus optional image."""
    blocks: list[dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": message}}
    ]
    if gif_url:
        blocks.append({"type": "image", "image_url": gif_url, "alt_text": "celebration"})
    return blocks


class WebhookDispatcher:
    """Chat webhook sender implementing ChannelSenderProtocol."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_DISPATCH_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize dispatcher.

        Args:
            timeout: Per-request timeout in seconds
            session: Optional HTTP session for Google Chat posts
        """
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, message: str, gif_url: str, channel: Channel) -> DispatchOutcome:
        """Deliver one message to one channel; never raises on delivery failure."""
        try:
            if channel.kind is ChannelKind.SLACK:
                status_code = self._send_slack(message, gif_url, channel)
            else:
                status_code = self._send_google_chat(message, gif_url, channel)
        except DispatchError as e:
            logger.warning(
                "webhook_dispatch_failed",
                channel_id=channel.channel_id,
                channel_kind=channel.kind.value,
                error=str(e),
            )
            return DispatchOutcome(success=False, error=str(e))
        except Exception as e:
            logger.exception(
                "webhook_dispatch_crashed",
                channel_id=channel.channel_id,
                channel_kind=channel.kind.value,
                error_type=type(e).__name__,
            )
            return DispatchOutcome(success=False, error=f"{type(e).__name__}: {e}")

        logger.info(
            "webhook_dispatch_succeeded",
            channel_id=channel.channel_id,
            channel_kind=channel.kind.value,
            status_code=status_code,
        )
        return DispatchOutcome(success=True, status_code=status_code)

    def _send_google_chat(self, message: str, gif_url: str, channel: Channel) -> int:
        payload = build_google_chat_card(
            message, gif_url, card_id=f"celebration-{channel.channel_id}"
        )
        try:
            response = self._session.post(
                channel.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except (requests.RequestException, ValueError) as e:
            raise DispatchError(str(e)) from e

        if not 200 <= response.status_code < 300:
            raise DispatchError(
                f"HTTP {response.status_code}: {response.text[:MAX_ERROR_BODY_CHARS]}"
            )
        return response.status_code

    def _send_slack(self, message: str, gif_url: str, channel: Channel) -> int:
        try:
            client = WebhookClient(url=channel.url, timeout=int(self._timeout))
            response = client.send(text=message, blocks=build_slack_blocks(message, gif_url))
        except (SlackClientError, OSError, ValueError) as e:
            raise DispatchError(str(e)) from e

        if not 200 <= response.status_code < 300:
            raise DispatchError(
                f"HTTP {response.status_code}: {(response.body or '')[:MAX_ERROR_BODY_CHARS]}"
            )
        return response.status_code
