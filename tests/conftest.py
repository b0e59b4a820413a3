"""Shared test fixtures."""

from __future__ import annotations

from typing import List

import pytest
from prometheus_client import CollectorRegistry

from smartthings_exporter import (
    Device,
    DeviceFetchError,
    FailureCounter,
    SmartThingsCollector,
    build_catalog,
)


class FakeSource:
    def __init__(self, devices: List[Device] = None, error: Exception = None) -> None:
        self.devices = devices or []
        self.error = error
        self.calls = 0

    def get_devices(self) -> List[Device]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.devices)


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def failures() -> FailureCounter:
    return FailureCounter()


@pytest.fixture
def make_registry(catalog, failures):
    def _make(devices=None, error=None):
        source = FakeSource(devices, error)
        collector = SmartThingsCollector(source, catalog, failures)
        registry = CollectorRegistry()
        registry.register(collector)
        return registry, collector, source

    return _make


@pytest.fixture
def broken_source() -> FakeSource:
    return FakeSource(error=DeviceFetchError("connection refused"))
