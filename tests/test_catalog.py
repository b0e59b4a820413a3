"""Tests for the attribute to metric catalog."""

import pytest

from smartthings_exporter import (
    MetricCatalog,
    MetricCatalogEntry,
    MetricDefinition,
    build_catalog,
    value_clear,
    value_float,
)

EXPECTED_NAMES = {
    "alarmState": "smartthings_alarm_cleared",
    "battery": "smartthings_battery_percentage",
    "carbonMonoxide": "smartthings_carbon_monoxide_detected",
    "contact": "smartthings_contact_closed",
    "energy": "smartthings_energy_usage_joules",
    "motion": "smartthings_motion_detected",
    "power": "smartthings_power_usage_watts",
    "presence": "smartthings_presence_detected",
    "smoke": "smartthings_smoke_detected",
    "switch": "smartthings_switch_enabled",
    "temperature": "smartthings_temperature_fahrenheit",
}


def test_build_catalog_covers_known_keys(catalog):
    assert len(catalog) == len(EXPECTED_NAMES)
    for key, name in EXPECTED_NAMES.items():
        entry = catalog.lookup(key)
        assert entry is not None, key
        assert entry.key == key
        assert entry.definition.name == name
        assert entry.definition.labels == ("id", "name")


def test_lookup_unknown_key(catalog):
    assert catalog.lookup("humidity") is None
    assert "humidity" not in catalog
    assert "contact" in catalog


@pytest.mark.parametrize(
    "key,raw,expected",
    [
        ("alarmState", "clear", 0.0),
        ("smoke", "detected", 1.0),
        ("carbonMonoxide", "clear", 0.0),
        ("battery", 87.5, 87.5),
        ("power", 12, 12.0),
        ("temperature", 71.3, 71.3),
        ("energy", 2, 7_200_000.0),
        ("contact", "open", 0.0),
        ("contact", "closed", 1.0),
        ("motion", "active", 1.0),
        ("presence", "not present", 0.0),
        ("switch", "on", 1.0),
    ],
)
def test_catalog_coercers(catalog, key, raw, expected):
    assert catalog.lookup(key).coercer(raw) == expected


def test_definitions_are_unique(catalog):
    names = [d.name for d in catalog.definitions()]
    assert len(names) == len(set(names))


def test_catalog_rejects_duplicate_keys():
    d1 = MetricDefinition("a", "A")
    d2 = MetricDefinition("b", "B")
    with pytest.raises(ValueError, match="duplicate attribute key"):
        MetricCatalog([MetricCatalogEntry("x", d1, value_float), MetricCatalogEntry("x", d2, value_float)])


def test_catalog_rejects_duplicate_metric_names():
    d = MetricDefinition("a", "A")
    with pytest.raises(ValueError, match="duplicate metric name"):
        MetricCatalog([MetricCatalogEntry("x", d, value_float), MetricCatalogEntry("y", d, value_clear)])


def test_catalog_is_read_only(catalog):
    with pytest.raises(TypeError):
        catalog._entries["humidity"] = None


def test_catalogs_are_independent():
    a = build_catalog()
    b = build_catalog()
    assert a is not b
    assert [e.key for e in a] == [e.key for e in b]
