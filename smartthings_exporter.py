from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from socketserver import ThreadingMixIn
from threading import Lock, Thread
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import dateutil.parser
import requests
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

EXPORTER_VERSION = "1.0.0"
NAMESPACE = "smartthings"
LABEL_NAMES: Tuple[str, str] = ("id", "name")
DEFAULT_ENDPOINTS_URL = "https://graph.api.smartthings.com/api/smartapps/endpoints"
KWH_TO_JOULES = 3_600_000.0

RawValue = Union[str, int, float, bool, None]
Coercer = Callable[[RawValue], float]

logger = logging.getLogger("smartthings_exporter")


class CoercionError(ValueError):
    pass


class TypeMismatchError(CoercionError):
    def __init__(self, value: RawValue, expected: str) -> None:
        super().__init__(f"invalid non-{expected} argument {value!r}")
        self.value = value
        self.expected = expected


class InvalidEnumValueError(CoercionError):
    def __init__(self, value: str, options: Tuple[str, str]) -> None:
        super().__init__(f"invalid option {value!r}. Expected {options[0]!r} or {options[1]!r}")
        self.value = value
        self.options = options


class DeviceFetchError(RuntimeError):
    pass


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def value_clear(v: RawValue) -> float:
    """0.0 for "clear", 1.0 for any other string.

    Alarm states other than "clear" are not checked against a vocabulary, so
    unexpected strings report as an active alarm.
    """
    if not isinstance(v, str):
        raise TypeMismatchError(v, "string")
    if v == "clear":
        return 0.0
    return 1.0


def value_one_of(v: RawValue, options: Tuple[str, str]) -> float:
    if not isinstance(v, str):
        raise TypeMismatchError(v, "string")
    if v == options[0]:
        return 0.0
    if v == options[1]:
        return 1.0
    raise InvalidEnumValueError(v, options)


def value_float(v: RawValue) -> float:
    if not _is_number(v):
        raise TypeMismatchError(v, "numeric")
    try:
        return float(v)
    except OverflowError as e:
        raise TypeMismatchError(v, "finite numeric") from e


def value_energy(v: RawValue) -> float:
    return value_float(v) * KWH_TO_JOULES


def one_of(low: str, high: str) -> Coercer:
    options = (low, high)

    def coerce(v: RawValue) -> float:
        return value_one_of(v, options)

    return coerce


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    help: str
    labels: Tuple[str, ...] = LABEL_NAMES

    def family(self) -> GaugeMetricFamily:
        return GaugeMetricFamily(self.name, self.help, labels=list(self.labels))


@dataclass(frozen=True)
class MetricCatalogEntry:
    key: str
    definition: MetricDefinition
    coercer: Coercer


class MetricCatalog:
    """Read-only mapping of device attribute keys to metric definitions."""

    def __init__(self, entries: Iterable[MetricCatalogEntry]) -> None:
        table: Dict[str, MetricCatalogEntry] = {}
        names = set()
        for e in entries:
            if e.key in table:
                raise ValueError(f"duplicate attribute key {e.key!r}")
            if e.definition.name in names:
                raise ValueError(f"duplicate metric name {e.definition.name!r}")
            table[e.key] = e
            names.add(e.definition.name)
        self._entries: Mapping[str, MetricCatalogEntry] = MappingProxyType(table)

    def lookup(self, key: str) -> Optional[MetricCatalogEntry]:
        return self._entries.get(key)

    def definitions(self) -> List[MetricDefinition]:
        return [e.definition for e in self._entries.values()]

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[MetricCatalogEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def _entry(key: str, name: str, help_text: str, coercer: Coercer) -> MetricCatalogEntry:
    return MetricCatalogEntry(key, MetricDefinition(f"{NAMESPACE}_{name}", help_text), coercer)


def build_catalog() -> MetricCatalog:
    return MetricCatalog([
        _entry("alarmState", "alarm_cleared", "0 if the alarm is clear.", value_clear),
        _entry("battery", "battery_percentage", "Percentage of battery remaining.", value_float),
        _entry("carbonMonoxide", "carbon_monoxide_detected", "1 if carbon monoxide is detected.", value_clear),
        _entry("contact", "contact_closed", "1 if the contact is closed.", one_of("open", "closed")),
        _entry("energy", "energy_usage_joules", "Energy usage in joules.", value_energy),
        _entry("motion", "motion_detected", "1 if motion is detected.", one_of("inactive", "active")),
        _entry("power", "power_usage_watts", "Current power usage in watts.", value_float),
        _entry("presence", "presence_detected", "1 if presence is detected.", one_of("not present", "present")),
        _entry("smoke", "smoke_detected", "1 if smoke is detected.", value_clear),
        _entry("switch", "switch_enabled", "1 if the switch is on.", one_of("off", "on")),
        _entry("temperature", "temperature_fahrenheit", "Temperature in fahrenheit.", value_float),
    ])


@dataclass
class Device:
    id: str
    name: str
    attributes: Dict[str, RawValue] = field(default_factory=dict)


@dataclass
class OAuthToken:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: str = ""
    expiry: Optional[datetime] = None

    def valid(self, now: Optional[datetime] = None) -> bool:
        if not self.access_token:
            return False
        if self.expiry is None:
            return True
        now = now or datetime.now(timezone.utc)
        return self.expiry - timedelta(seconds=10) > now


def _parse_expiry(s: Any) -> Optional[datetime]:
    if not s:
        return None
    if not isinstance(s, str):
        raise ValueError(f"invalid token expiry {s!r}")
    dt = dateutil.parser.isoparse(s.strip())
    if dt.year <= 1:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def load_token(path: str) -> OAuthToken:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Token file root must be an object")
    return OAuthToken(
        access_token=str(data.get("access_token") or ""),
        token_type=str(data.get("token_type") or "Bearer"),
        refresh_token=str(data.get("refresh_token") or ""),
        expiry=_parse_expiry(data.get("expiry")),
    )


class SmartThingsClient:
    def __init__(
        self,
        token: OAuthToken,
        endpoints_url: str = DEFAULT_ENDPOINTS_URL,
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoints_url = endpoints_url
        self.timeout_seconds = timeout_seconds
        self.endpoint: Optional[str] = None
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {token.access_token}"

    def _get_json(self, url: str) -> Any:
        try:
            r = self.session.get(url, timeout=self.timeout_seconds)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            raise DeviceFetchError(f"GET {url} failed: {e}") from e

    def discover_endpoint(self) -> str:
        data = self._get_json(self.endpoints_url)
        if not isinstance(data, list) or not data or not isinstance(data[0], dict) or not data[0].get("uri"):
            raise DeviceFetchError("endpoints response did not contain a uri")
        self.endpoint = str(data[0]["uri"]).rstrip("/")
        return self.endpoint

    def get_devices(self) -> List[Device]:
        endpoint = self.endpoint or self.discover_endpoint()
        data = self._get_json(f"{endpoint}/devices")
        if not isinstance(data, list):
            raise DeviceFetchError("devices response must be a list")

        out: List[Device] = []
        for item in data:
            if not isinstance(item, dict) or item.get("id") is None:
                raise DeviceFetchError(f"malformed device entry: {item!r}")
            attrs = item.get("attributes") or {}
            if not isinstance(attrs, dict):
                raise DeviceFetchError(f"device {item['id']}: attributes must be an object")
            name = item.get("displayName") or item.get("name") or ""
            out.append(Device(id=str(item["id"]), name=str(name), attributes={str(k): v for k, v in attrs.items()}))
        return out


class FailureCounter:
    def __init__(self) -> None:
        self._lock = Lock()
        self._value = 0

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class SmartThingsCollector:
    def __init__(
        self,
        source: Any,
        catalog: MetricCatalog,
        failures: Optional[FailureCounter] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.source = source
        self.catalog = catalog
        self.failures = failures if failures is not None else FailureCounter()
        self.log = log or logger

    def definitions(self) -> List[MetricDefinition]:
        return self.catalog.definitions()

    def _invalid_family(self) -> CounterMetricFamily:
        return CounterMetricFamily(f"{NAMESPACE}_invalid_metric", "Total number of metrics that were invalid.")

    def _meta_families(self) -> Tuple[GaugeMetricFamily, GaugeMetricFamily, GaugeMetricFamily]:
        devices = GaugeMetricFamily(f"{NAMESPACE}_devices", "Number of devices returned by the last scrape.")
        dur = GaugeMetricFamily(f"{NAMESPACE}_last_scrape_duration_seconds", "Duration of the last device scrape.")
        build = GaugeMetricFamily(f"{NAMESPACE}_exporter_build_info", "Exporter build information.", labels=["version", "python"])
        return devices, dur, build

    def describe(self):
        for d in self.definitions():
            yield d.family()
        yield self._invalid_family()
        yield from self._meta_families()

    def collect(self):
        t0 = time.time()
        try:
            devices = self.source.get_devices()
        except DeviceFetchError as e:
            self.log.error("Error reading list of devices: %s", e)
            raise

        families: Dict[str, GaugeMetricFamily] = {d.name: d.family() for d in self.definitions()}

        for dev in devices:
            for key, raw in dev.attributes.items():
                if raw is None:
                    raw = ""
                entry = self.catalog.lookup(key)
                if entry is None:
                    continue
                try:
                    value = entry.coercer(raw)
                except CoercionError as e:
                    self.failures.inc()
                    self.log.error("Cannot process sensor data for %s (%s) attribute %s: %s", dev.id, dev.name, key, e)
                    continue
                families[entry.definition.name].add_metric([dev.id, dev.name], value)

        invalid = self._invalid_family()
        invalid.add_metric([], float(self.failures.value))

        devices_g, dur, build = self._meta_families()
        devices_g.add_metric([], float(len(devices)))
        dur.add_metric([], time.time() - t0)
        build.add_metric([EXPORTER_VERSION, sys.version.split()[0]], 1.0)

        yield from families.values()
        yield invalid
        yield devices_g
        yield dur
        yield build


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


LANDING_PAGE = """<html>
<head><title>SmartThings Exporter</title></head>
<body>
<h1>SmartThings Exporter</h1>
<p><a href='{path}'>Metrics</a></p>
</body>
</html>"""


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return "", int(s)


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    if path.lower().endswith(".json"):
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Config root must be an object")
        return data

    import yaml

    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


@dataclass
class ExporterSettings:
    listen_address: str = ":9499"
    telemetry_path: str = "/metrics"
    oauth_token_file: str = ""
    endpoints_url: str = DEFAULT_ENDPOINTS_URL
    timeout_seconds: float = 10.0


def resolve_settings(args: argparse.Namespace, cfg: Dict[str, Any]) -> ExporterSettings:
    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web", {}), dict) else {}
    st_cfg = cfg.get("smartthings", {}) if isinstance(cfg.get("smartthings", {}), dict) else {}
    defaults = ExporterSettings()

    def pick(flag: Any, section: Dict[str, Any], key: str, default: Any) -> Any:
        if flag is not None:
            return flag
        if section.get(key) is not None:
            return section[key]
        return default

    return ExporterSettings(
        listen_address=str(pick(args.web_listen_address, web_cfg, "listen_address", defaults.listen_address)),
        telemetry_path=str(pick(args.web_telemetry_path, web_cfg, "telemetry_path", defaults.telemetry_path)),
        oauth_token_file=str(pick(args.oauth_token_file, st_cfg, "oauth_token_file", "")),
        endpoints_url=str(pick(args.endpoints_url, st_cfg, "endpoints_url", defaults.endpoints_url)),
        timeout_seconds=float(pick(args.timeout_seconds, st_cfg, "timeout_seconds", defaults.timeout_seconds)),
    )


def make_app(registry: CollectorRegistry, telemetry_path: str):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path:
            try:
                output = generate_latest(registry)
            except DeviceFetchError as e:
                start_response("503 Service Unavailable", [("Content-Type", "text/plain")])
                return [f"scrape failed: {e}".encode("utf-8")]
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [LANDING_PAGE.format(path=telemetry_path).encode("utf-8")]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="smartthings-exporter", description="SmartThings exporter for Prometheus")
    p.add_argument("--config.file", dest="config_file", default=None)
    p.add_argument("--web.listen-address", dest="web_listen_address", default=None)
    p.add_argument("--web.telemetry-path", dest="web_telemetry_path", default=None)
    p.add_argument("--log.level", dest="log_level", default=os.environ.get("LOG_LEVEL", "INFO"))
    p.add_argument("--smartthings.oauth-token.file", dest="oauth_token_file", default=None)
    p.add_argument("--smartthings.endpoints-url", dest="endpoints_url", default=None)
    p.add_argument("--smartthings.timeout", dest="timeout_seconds", type=float, default=None)
    p.add_argument("--version", action="version", version=f"smartthings_exporter {EXPORTER_VERSION}")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level)

    cfg_path = args.config_file or os.environ.get("SMARTTHINGS_EXPORTER_CONFIG", "").strip() or None
    cfg: Dict[str, Any] = {}
    if cfg_path:
        cfg = load_config_file(cfg_path)
        logger.info("config_file=%s", cfg_path)

    settings = resolve_settings(args, cfg)
    if not settings.oauth_token_file:
        raise SystemExit("missing token file: use --smartthings.oauth-token.file=PATH or smartthings.oauth_token_file in the config file")

    host, port = parse_listen_address(settings.listen_address)

    token_path = os.path.abspath(settings.oauth_token_file)
    try:
        token = load_token(token_path)
    except (OSError, ValueError) as e:
        raise SystemExit(f"failed to load SmartThings OAuth token from {token_path}: {e}")
    if not token.valid():
        raise SystemExit(f"SmartThings OAuth token in {token_path} is missing or expired")

    client = SmartThingsClient(token, settings.endpoints_url, settings.timeout_seconds)
    try:
        endpoint = client.discover_endpoint()
        client.get_devices()
    except DeviceFetchError as e:
        raise SystemExit(f"error verifying connection to SmartThings: {e}")
    logger.info("endpoint=%s", endpoint)

    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    registry.register(SmartThingsCollector(client, build_catalog()))

    app = make_app(registry, settings.telemetry_path)

    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logger.info(
        "version=%s listening=%s:%s telemetry_path=%s timeout=%.1fs",
        EXPORTER_VERSION,
        host if host else "0.0.0.0",
        port,
        settings.telemetry_path,
        settings.timeout_seconds,
    )

    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
