from __future__ import annotations

import threading

from unical.caldav_client import CalDAVAdapter, ICloudAdapter
from unical.google_client import GoogleCalendarAdapter
from unical.graph_client import MicrosoftGraphAdapter
from unical.models import SYNC_PROVIDER_KINDS
from unical.providers import AdapterContext, ProviderAdapter

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "google": GoogleCalendarAdapter,
    "microsoft": MicrosoftGraphAdapter,
    "caldav": CalDAVAdapter,
    "icloud": ICloudAdapter,
}


def build_adapter(kind: str, context: AdapterContext) -> ProviderAdapter:
    if kind not in SYNC_PROVIDER_KINDS:
        raise ValueError(f"No sync adapter for provider kind: {kind}")
    return ADAPTER_CLASSES[kind](context)


class AdapterFactory:
    """Caches one adapter instance per provider kind."""

    def __init__(self, context: AdapterContext) -> None:
        self.context = context
        self._adapters: dict[str, ProviderAdapter] = {}
        self._lock = threading.Lock()

    def get(self, kind: str) -> ProviderAdapter:
        with self._lock:
            adapter = self._adapters.get(kind)
            if adapter is None:
                adapter = build_adapter(kind, self.context)
                self._adapters[kind] = adapter
            return adapter

    def register(self, kind: str, adapter: ProviderAdapter) -> None:
        with self._lock:
            self._adapters[kind] = adapter

    def __call__(self, kind: str) -> ProviderAdapter:
        return self.get(kind)
