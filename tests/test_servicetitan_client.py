"""Tests for the ServiceTitan sales feed adapter."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytz
import requests

from src.adapters.servicetitan_client import (
    ServiceTitanClient,
    TokenCache,
    parse_estimate,
)
from src.config.settings import Settings
from src.domain.exceptions import ConfigurationError, UpstreamFetchError
from tests.conftest import FIXED_NOW, FrozenClock


def _response(status_code: int = 200, payload: Any = None, text: str = "") -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.json.return_value = payload
    return response


def _token_response(expires_in: int = 900) -> MagicMock:
    return _response(payload={"access_token": "tok-1", "expires_in": expires_in})


def _estimate_payload(estimate_id: int, sold_on: str, **kwargs: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": estimate_id,
        "soldOn": sold_on,
        "soldBy": 77,
        "customerId": 501,
        "subtotal": 1250.5,
        "name": "Option B",
        "items": [{"skuName": "Furnace", "total": 1250.5}],
    }
    payload.update(kwargs)
    return payload


@pytest.fixture
def session() -> MagicMock:
    mock_session = MagicMock(spec=requests.Session)
    mock_session.post.return_value = _token_response()
    return mock_session


@pytest.fixture
def client(settings: Settings, session: MagicMock) -> ServiceTitanClient:
    return ServiceTitanClient(settings, session=session, clock=FrozenClock())


def test_parse_estimate_maps_fields() -> None:
    event = parse_estimate(
        _estimate_payload(
            123,
            "2026-03-02T14:55:00Z",
            items=[{"skuName": "Option C - System Update", "total": 0}],
            subtotal=0,
        )
    )

    assert event.external_id == "123"
    assert event.sold_at == FIXED_NOW - timedelta(minutes=5)
    assert event.seller_id == "77"
    assert event.customer_id == "501"
    assert event.amount == 0.0
    assert event.line_items[0].name == "Option C - System Update"
    assert event.name == "Option B"
    assert event.raw["id"] == 123


@pytest.mark.parametrize(
    "payload",
    [
        {"soldOn": "2026-03-02T14:55:00Z"},
        {"id": 1, "soldOn": None},
        {"id": 1, "soldOn": "yesterday"},
        {"id": 1, "soldOn": "2026-03-02T14:55:00Z", "subtotal": "lots"},
    ],
)
def test_parse_estimate_rejects_malformed(payload: dict[str, Any]) -> None:
    with pytest.raises(UpstreamFetchError):
        parse_estimate(payload)


def test_missing_credentials(settings: Settings) -> None:
    incomplete = settings.model_copy(update={"servicetitan_client_id": None})

    with pytest.raises(ConfigurationError):
        ServiceTitanClient(incomplete, session=MagicMock())


def test_fetch_sold_events_paginates_filters_and_sorts(
    client: ServiceTitanClient, session: MagicMock
) -> None:
    since = FIXED_NOW - timedelta(minutes=30)
    session.get.side_effect = [
        _response(
            payload={
                "data": [
                    _estimate_payload(3, "2026-03-02T14:50:00Z"),
                    _estimate_payload(9, "2026-03-02T14:00:00Z"),
                ],
                "hasMore": True,
            }
        ),
        _response(
            payload={
                "data": [_estimate_payload(2, "2026-03-02T14:40:00+00:00")],
                "hasMore": False,
            }
        ),
    ]

    events = client.fetch_sold_events(since)

    assert [event.external_id for event in events] == ["2", "3"]
    assert session.get.call_count == 2
    first_call = session.get.call_args_list[0]
    assert first_call.args[0] == "https://api.servicetitan.io/sales/v2/tenant/42/estimates"
    assert first_call.kwargs["params"] == {
        "soldAfter": "2026-03-02T14:30:00Z",
        "page": 1,
        "pageSize": 200,
    }
    assert first_call.kwargs["headers"]["Authorization"] == "Bearer tok-1"
    assert first_call.kwargs["headers"]["ST-App-Key"] == "app-key"
    assert session.get.call_args_list[1].kwargs["params"]["page"] == 2


def test_token_is_cached_until_expiry(settings: Settings, session: MagicMock) -> None:
    clock = FrozenClock()
    client = ServiceTitanClient(settings, session=session, clock=clock)
    session.get.return_value = _response(payload={"name": "Alice Smith"})

    client.get_technician_name("1")
    client.get_technician_name("2")
    assert session.post.call_count == 1
    token_call = session.post.call_args
    assert token_call.kwargs["data"]["grant_type"] == "client_credentials"

    # 900s lifetime minus the 300s safety margin
    clock.advance(seconds=601)
    client.get_technician_name("3")
    assert session.post.call_count == 2


def test_token_cache() -> None:
    cache = TokenCache()
    assert cache.valid(FIXED_NOW) is False

    cache.store("tok", 3600, FIXED_NOW)
    assert cache.valid(FIXED_NOW + timedelta(seconds=3299)) is True
    assert cache.valid(FIXED_NOW + timedelta(seconds=3300)) is False

    cache.clear()
    assert cache.token is None


def test_auth_failure_raises(client: ServiceTitanClient, session: MagicMock) -> None:
    session.post.return_value = _response(status_code=401, text="invalid_client")

    with pytest.raises(UpstreamFetchError) as exc_info:
        client.fetch_sold_events(FIXED_NOW)

    assert exc_info.value.status_code == 401
    session.get.assert_not_called()


def test_unauthorized_response_clears_token(
    client: ServiceTitanClient, session: MagicMock
) -> None:
    session.get.side_effect = [
        _response(status_code=401, text="expired"),
        _response(payload={"name": "Alice Smith"}),
    ]

    with pytest.raises(UpstreamFetchError):
        client.get_technician_name("1")
    assert client.get_technician_name("1") == "Alice Smith"
    assert session.post.call_count == 2


def test_transport_error_raises(client: ServiceTitanClient, session: MagicMock) -> None:
    session.get.side_effect = requests.ConnectionError("connection reset")

    with pytest.raises(UpstreamFetchError, match="connection reset"):
        client.fetch_sold_events(FIXED_NOW)


def test_malformed_page_raises(client: ServiceTitanClient, session: MagicMock) -> None:
    session.get.return_value = _response(payload={"data": "nope"})

    with pytest.raises(UpstreamFetchError):
        client.fetch_sold_events(FIXED_NOW)


def test_server_error_raises(client: ServiceTitanClient, session: MagicMock) -> None:
    session.get.return_value = _response(status_code=503, text="maintenance")

    with pytest.raises(UpstreamFetchError) as exc_info:
        client.fetch_sold_events(FIXED_NOW)

    assert exc_info.value.status_code == 503


def test_name_lookups_are_cached(client: ServiceTitanClient, session: MagicMock) -> None:
    session.get.side_effect = [
        _response(payload={"name": "Alice Smith"}),
        _response(payload={"name": "Doe, Jane"}),
    ]

    assert client.get_technician_name("77") == "Alice Smith"
    assert client.get_technician_name("77") == "Alice Smith"
    assert client.get_customer_name("501") == "Doe, Jane"
    assert session.get.call_count == 2
    assert session.get.call_args_list[1].args[0] == (
        "https://api.servicetitan.io/crm/v2/tenant/42/customers/501"
    )


def test_missing_ids_resolve_to_unknown(
    client: ServiceTitanClient, session: MagicMock
) -> None:
    assert client.get_technician_name(None) == "Unknown"
    assert client.get_customer_name("") == "Unknown"
    session.get.assert_not_called()


def test_since_is_normalized_to_utc(client: ServiceTitanClient, session: MagicMock) -> None:
    session.get.return_value = _response(payload={"data": [], "hasMore": False})
    eastern = pytz.timezone("US/Eastern").localize(datetime(2026, 3, 2, 9, 30))

    assert client.fetch_sold_events(eastern) == []
    assert session.get.call_args.kwargs["params"]["soldAfter"] == "2026-03-02T14:30:00Z"
