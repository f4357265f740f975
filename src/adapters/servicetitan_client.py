"""ServiceTitan sales feed adapter.

Fetches sold estimates and resolves technician/customer names. The OAuth
token is cached on the client instance (``TokenCache``), never at module
level.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Final

import pytz
import requests
from pydantic import ValidationError

from src.adapters.query_builders import ensure_utc
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import ConfigurationError, UpstreamFetchError
from src.domain.models import LineItem, SaleEvent

logger = get_logger(__name__)

TOKEN_EXPIRY_SAFETY_SECONDS: Final[int] = 300
DEFAULT_TOKEN_LIFETIME_SECONDS: Final[int] = 3600
UNKNOWN_NAME: Final[str] = "Unknown"
MAX_ERROR_BODY_CHARS: Final[int] = 500


@dataclass
class TokenCache:
    """Bearer token with its expiry (already reduced by the safety margin)."""

    token: str | None = None
    expires_at: datetime | None = None

    def valid(self, now: datetime) -> bool:
        return bool(self.token) and self.expires_at is not None and now < self.expires_at

    def store(self, token: str, expires_in: int, now: datetime) -> None:
        self.token = token
        self.expires_at = now + timedelta(
            seconds=max(expires_in - TOKEN_EXPIRY_SAFETY_SECONDS, 0)
        )

    def clear(self) -> None:
        self.token = None
        self.expires_at = None


def _parse_datetime(value: Any) -> datetime:
    if not value:
        raise ValueError("missing soldOn timestamp")
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def parse_estimate(payload: dict[str, Any]) -> SaleEvent:
    """Map one upstream estimate payload to a SaleEvent.

    Raises:
        UpstreamFetchError: If required fields are missing or malformed
    """
    try:
        line_items = tuple(
            LineItem(
                name=item.get("skuName") or item.get("name") or "",
                amount=float(item.get("total") or 0),
            )
            for item in payload.get("items") or []
        )
        return SaleEvent(
            external_id=payload["id"],
            sold_at=_parse_datetime(payload.get("soldOn")),
            seller_id=payload.get("soldBy"),
            customer_id=payload.get("customerId"),
            amount=float(payload.get("subtotal") or 0),
            line_items=line_items,
            name=payload.get("name") or "",
            raw=payload,
        )
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise UpstreamFetchError(f"Malformed estimate payload: {e}") from e


class ServiceTitanClient:
    """ServiceTitan REST client for sold estimates and name lookups."""

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Application settings (credentials, URLs, timeouts)
            session: Optional HTTP session (injected in tests)
            clock: Optional UTC clock used for token expiry

        Raises:
            ConfigurationError: If credentials or tenant are missing
        """
        if (
            not settings.servicetitan_client_id
            or settings.servicetitan_client_secret is None
            or settings.servicetitan_app_key is None
            or not settings.servicetitan_tenant_id
        ):
            raise ConfigurationError(
                "ServiceTitan credentials (client id/secret, app key, tenant) are required"
            )

        self._base_url = settings.servicetitan_base_url.rstrip("/")
        self._auth_url = settings.servicetitan_auth_url
        self._tenant_id = settings.servicetitan_tenant_id
        self._client_id = settings.servicetitan_client_id
        self._client_secret = settings.servicetitan_client_secret.get_secret_value()
        self._app_key = settings.servicetitan_app_key.get_secret_value()
        self._timeout = settings.servicetitan_timeout_seconds
        self._page_size = settings.servicetitan_page_size

        self._session = session or requests.Session()
        self._clock = clock or (lambda: datetime.now(tz=pytz.UTC))
        self._token_cache = TokenCache()
        self._technician_names: dict[str, str] = {}
        self._customer_names: dict[str, str] = {}

    def _get_token(self) -> str:
        """Return a cached bearer token or fetch a new one.

        Raises:
            UpstreamFetchError: On auth failure or an empty token
        """
        now = self._clock()
        if self._token_cache.valid(now):
            return self._token_cache.token or ""

        logger.info("servicetitan_token_refresh_started")
        try:
            response = self._session.post(
                self._auth_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise UpstreamFetchError(f"ServiceTitan auth request failed: {e}") from e

        if not response.ok:
            raise UpstreamFetchError(
                f"Failed to authenticate with ServiceTitan: {response.text[:MAX_ERROR_BODY_CHARS]}",
                status_code=response.status_code,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise UpstreamFetchError(f"Malformed ServiceTitan token response: {e}") from e

        token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not token:
            raise UpstreamFetchError("ServiceTitan returned an empty access token")

        expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        self._token_cache.store(token, expires_in, now)
        logger.info("servicetitan_token_refreshed", expires_in=expires_in)
        return token

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a tenant-scoped endpoint and decode JSON.

        Raises:
            UpstreamFetchError: On transport errors, non-2xx status or bad JSON
        """
        url = f"{self._base_url}/{path}"
        headers = {
            "Authorization": f"Bearer {self._get_token()}",
            "ST-App-Key": self._app_key,
            "Accept": "application/json",
        }
        try:
            response = self._session.get(
                url, params=params, headers=headers, timeout=self._timeout
            )
        except requests.RequestException as e:
            raise UpstreamFetchError(f"ServiceTitan request failed: {e}") from e

        if response.status_code == 401:
            # Token revoked early; next call re-authenticates
            self._token_cache.clear()

        if not response.ok:
            logger.warning(
                "servicetitan_request_failed",
                path=path,
                status_code=response.status_code,
            )
            raise UpstreamFetchError(
                f"ServiceTitan API error {response.status_code}: "
                f"{response.text[:MAX_ERROR_BODY_CHARS]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError(f"Malformed ServiceTitan response: {e}") from e

    def fetch_sold_events(self, since: datetime) -> list[SaleEvent]:
        """Fetch estimates sold at or after ``since``, following pagination.

        Returns:
            Events ordered by sold-at time then id

        Raises:
            UpstreamFetchError: On auth, transport or payload errors
        """
        since = ensure_utc(since)
        sold_after = since.isoformat().replace("+00:00", "Z")
        path = f"sales/v2/tenant/{self._tenant_id}/estimates"

        events: list[SaleEvent] = []
        page = 1
        while True:
            data = self._get_json(
                path,
                params={"soldAfter": sold_after, "page": page, "pageSize": self._page_size},
            )
            if not isinstance(data, dict) or not isinstance(data.get("data", []), list):
                raise UpstreamFetchError("Malformed ServiceTitan estimates page")

            for payload in data.get("data") or []:
                if not isinstance(payload, dict):
                    raise UpstreamFetchError("Malformed estimate entry")
                event = parse_estimate(payload)
                if event.sold_at >= since:
                    events.append(event)

            if not data.get("hasMore"):
                break
            page += 1

        events.sort(key=lambda event: (event.sold_at, event.external_id))
        logger.info(
            "servicetitan_estimates_fetched",
            since=since.isoformat(),
            pages=page,
            count=len(events),
        )
        return events

    def get_technician_name(self, technician_id: str | None) -> str:
        """Resolve a technician id to a display name (cached per instance)."""
        if not technician_id:
            return UNKNOWN_NAME
        if technician_id not in self._technician_names:
            data = self._get_json(
                f"settings/v2/tenant/{self._tenant_id}/technicians/{technician_id}"
            )
            name = data.get("name") if isinstance(data, dict) else None
            self._technician_names[technician_id] = name or UNKNOWN_NAME
        return self._technician_names[technician_id]

    def get_customer_name(self, customer_id: str | None) -> str:
        """Resolve a customer id to a display name (cached per instance)."""
        if not customer_id:
            return UNKNOWN_NAME
        if customer_id not in self._customer_names:
            data = self._get_json(f"crm/v2/tenant/{self._tenant_id}/customers/{customer_id}")
            name = data.get("name") if isinstance(data, dict) else None
            self._customer_names[customer_id] = name or UNKNOWN_NAME
        return self._customer_names[customer_id]
