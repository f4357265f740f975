"""Tests for the outbound chat webhook dispatcher."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests
from pytest_mock import MockerFixture
from slack_sdk.errors import SlackClientError
from slack_sdk.webhook import WebhookResponse

from src.adapters.webhook_dispatcher import (
    WebhookDispatcher,
    build_google_chat_card,
    build_slack_blocks,
)
from src.domain.models import Channel, ChannelKind

GIF = "https://gifs.example/party.gif"


@pytest.fixture
def google_channel() -> Channel:
    return Channel(
        channel_id="ch-g",
        url="https://chat.googleapis.com/v1/spaces/AAA/messages?key=k",
        kind=ChannelKind.GOOGLE_CHAT,
    )


@pytest.fixture
def slack_channel() -> Channel:
    return Channel(
        channel_id="ch-s",
        url="https://hooks.slack.com/services/T0/B0/xyz",
        kind=ChannelKind.SLACK,
    )


def _http_response(status_code: int, text: str = "") -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    return response


def _slack_response(status_code: int, body: str = "ok") -> WebhookResponse:
    return WebhookResponse(
        url="https://hooks.slack.com", status_code=status_code, body=body, headers={}
    )


def test_google_chat_card_payload() -> None:
    payload = build_google_chat_card("Big win!", GIF, card_id="celebration-1")

    card = payload["cardsV2"][0]
    assert card["cardId"] == "celebration-1"
    sections = card["card"]["sections"]
    assert sections[0]["widgets"][0]["textParagraph"]["text"] == "Big win!"
    assert sections[1]["widgets"][0]["image"]["imageUrl"] == GIF


def test_google_chat_card_without_gif() -> None:
    payload = build_google_chat_card("Big win!", "", card_id="c")

    assert len(payload["cardsV2"][0]["card"]["sections"]) == 1


def test_slack_blocks() -> None:
    blocks = build_slack_blocks("Big win!", GIF)

    assert blocks[0]["text"]["text"] == "Big win!"
    assert blocks[1] == {"type": "image", "image_url": GIF, "alt_text": "celebration"}
    assert len(build_slack_blocks("Big win!", "")) == 1


def test_google_chat_success(google_channel: Channel) -> None:
    session = MagicMock(spec=requests.Session)
    session.post.return_value = _http_response(200)
    dispatcher = WebhookDispatcher(timeout=5.0, session=session)

    outcome = dispatcher.send("Big win!", GIF, google_channel)

    assert outcome.success is True
    assert outcome.status_code == 200
    call = session.post.call_args
    assert call.args[0] == google_channel.url
    assert call.kwargs["timeout"] == 5.0
    assert call.kwargs["json"]["cardsV2"][0]["cardId"] == "celebration-ch-g"


def test_google_chat_non_2xx_is_failure(google_channel: Channel) -> None:
    session = MagicMock(spec=requests.Session)
    session.post.return_value = _http_response(429, "Resource exhausted")
    dispatcher = WebhookDispatcher(session=session)

    outcome = dispatcher.send("Big win!", GIF, google_channel)

    assert outcome.success is False
    assert outcome.error == "HTTP 429: Resource exhausted"


def test_google_chat_transport_error_is_failure(google_channel: Channel) -> None:
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = requests.Timeout("read timed out")
    dispatcher = WebhookDispatcher(session=session)

    outcome = dispatcher.send("Big win!", GIF, google_channel)

    assert outcome.success is False
    assert outcome.error is not None and "read timed out" in outcome.error


def test_slack_success(mocker: MockerFixture, slack_channel: Channel) -> None:
    webhook_cls = mocker.patch("src.adapters.webhook_dispatcher.WebhookClient")
    webhook_cls.return_value.send.return_value = _slack_response(200)
    dispatcher = WebhookDispatcher(timeout=7.0, session=MagicMock(spec=requests.Session))

    outcome = dispatcher.send("Big win!", GIF, slack_channel)

    assert outcome.success is True
    webhook_cls.assert_called_once_with(url=slack_channel.url, timeout=7)
    send_kwargs = webhook_cls.return_value.send.call_args.kwargs
    assert send_kwargs["text"] == "Big win!"
    assert send_kwargs["blocks"][1]["image_url"] == GIF


def test_slack_error_status_is_failure(
    mocker: MockerFixture, slack_channel: Channel
) -> None:
    webhook_cls = mocker.patch("src.adapters.webhook_dispatcher.WebhookClient")
    webhook_cls.return_value.send.return_value = _slack_response(404, "no_service")
    dispatcher = WebhookDispatcher(session=MagicMock(spec=requests.Session))

    outcome = dispatcher.send("Big win!", GIF, slack_channel)

    assert outcome.success is False
    assert outcome.error == "HTTP 404: no_service"


def test_slack_client_error_is_failure(
    mocker: MockerFixture, slack_channel: Channel
) -> None:
    webhook_cls = mocker.patch("src.adapters.webhook_dispatcher.WebhookClient")
    webhook_cls.return_value.send.side_effect = SlackClientError("bad url")
    dispatcher = WebhookDispatcher(session=MagicMock(spec=requests.Session))

    outcome = dispatcher.send("Big win!", GIF, slack_channel)

    assert outcome.success is False
    assert outcome.error == "bad url"


def test_slack_malformed_url_is_a_failed_outcome() -> None:
    channel = Channel(
        channel_id="ch-bad",
        url="hooks.slack.com/services/T/B/x",
        kind=ChannelKind.SLACK,
    )

    outcome = WebhookDispatcher().send("Big win!", GIF, channel)

    assert outcome.success is False
    assert outcome.error


def test_unexpected_sender_error_is_a_failed_outcome(google_channel: Channel) -> None:
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = RuntimeError("socket closed")

    outcome = WebhookDispatcher(session=session).send("Big win!", GIF, google_channel)

    assert outcome.success is False
    assert outcome.error == "RuntimeError: socket closed"
