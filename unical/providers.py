from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from unical.errors import CredentialExpired, TransientNetwork, raise_for_status
from unical.models import (
    AppConfig,
    Calendar,
    CalendarAccount,
    CalendarRef,
    EventListing,
    RemoteEvent,
    SyncState,
)


@dataclass
class AdapterContext:
    """Collaborators handed to every adapter at construction time."""

    config: AppConfig
    session: requests.Session = field(default_factory=requests.Session)
    caldav_client_factory: Callable[..., Any] | None = None


class ProviderAdapter(ABC):
    """One provider's translation between its wire format and unical's models."""

    provider = ""

    def __init__(self, context: AdapterContext) -> None:
        self.context = context

    @abstractmethod
    def list_calendars(self, account: CalendarAccount) -> list[CalendarRef]:
        raise NotImplementedError

    @abstractmethod
    def list_events(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        sync_state: SyncState | None,
    ) -> EventListing:
        raise NotImplementedError

    @abstractmethod
    def create_event(self, account: CalendarAccount, calendar: Calendar, event: RemoteEvent) -> str:
        raise NotImplementedError

    @abstractmethod
    def update_event(
        self,
        account: CalendarAccount,
        calendar: Calendar,
        external_id: str,
        changes: dict[str, Any],
        baseline_etag: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_event(self, account: CalendarAccount, calendar: Calendar, external_id: str) -> None:
        raise NotImplementedError

    def verify(self, account: CalendarAccount) -> list[CalendarRef]:
        """Check credentials by listing calendars."""
        return self.list_calendars(account)


def bearer_request(
    context: AdapterContext,
    method: str,
    url: str,
    *,
    token: str,
    provider: str,
    timeout: int,
    **kwargs: Any,
) -> requests.Response:
    """Issue one authenticated JSON REST call and classify failures."""
    if not token:
        raise CredentialExpired(f"{provider} account has no access token", provider)
    headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
    headers.update(kwargs.pop("headers", {}) or {})
    try:
        response = context.session.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as exc:
        raise TransientNetwork(f"{provider} request failed: {exc}", provider) from exc
    raise_for_status(response, provider)
    return response
