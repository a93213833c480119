"""Adapter registry — source -> adapter lookup table."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from vitalsync.core.config.settings import Settings
from vitalsync.domains.health.connectors.base import BaseSourceAdapter
from vitalsync.domains.health.connectors.fitbit import FitbitAdapter
from vitalsync.domains.health.connectors.google_fit import GoogleFitAdapter
from vitalsync.domains.health.connectors.oura import OuraAdapter
from vitalsync.domains.health.connectors.samsung import SamsungHealthAdapter
from vitalsync.domains.health.domain_logic.metric_models import DataSource

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: tuple[type[BaseSourceAdapter], ...] = (
    SamsungHealthAdapter,
    FitbitAdapter,
    OuraAdapter,
    GoogleFitAdapter,
)


class UnknownSourceError(KeyError):
    """No adapter is registered for the requested source."""


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str
    display_name: str
    manufacturer: str
    data_types: tuple[str, ...]


class AdapterRegistry:
    """Holds one adapter per source."""

    def __init__(self, adapters: Iterable[BaseSourceAdapter] = ()) -> None:
        self._adapters: dict[DataSource, BaseSourceAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BaseSourceAdapter) -> None:
        if adapter.source in self._adapters:
            logger.warning("Replacing adapter for %s", adapter.source.value)
        self._adapters[adapter.source] = adapter

    def get(self, source: DataSource) -> BaseSourceAdapter:
        try:
            return self._adapters[source]
        except KeyError:
            raise UnknownSourceError(f"No adapter registered for {source.value}") from None

    def __contains__(self, source: object) -> bool:
        return source in self._adapters

    def sources(self) -> list[DataSource]:
        return list(self._adapters)

    def device_info(self, source: DataSource) -> DeviceInfo:
        adapter = self.get(source)
        return DeviceInfo(
            device_type=adapter.DEVICE_TYPE,
            display_name=adapter.DISPLAY_NAME,
            manufacturer=adapter.MANUFACTURER,
            data_types=tuple(adapter.data_types()),
        )


def build_default_registry(client: httpx.AsyncClient, settings: Settings) -> AdapterRegistry:
    """Register every built-in adapter, sharing one HTTP client."""
    registry = AdapterRegistry()
    for adapter_cls in ADAPTER_CLASSES:
        client_id, client_secret = settings.client_credentials(adapter_cls.SOURCE.value)
        registry.register(
            adapter_cls(client, client_id=client_id, client_secret=client_secret)
        )
    return registry
