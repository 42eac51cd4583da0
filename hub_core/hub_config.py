from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger("hub_core.config")

NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

DEFAULTS: dict[str, Any] = {
    "MAX_DEVICES": 1,
    "SCAN_TIMEOUT_S": 10.0,
    "RECONNECT_DELAY_S": 3.0,
    "CONNECT_TIMEOUT_S": 10.0,
    "SERVICE_UUID": NUS_SERVICE_UUID,
    "INBOUND_CHAR_UUID": NUS_RX_CHAR_UUID,
    "OUTBOUND_CHAR_UUID": NUS_TX_CHAR_UUID,
    "PAYLOAD_ENCODING": "utf-8",
    "BLE_ADAPTER": None,
    "DEVICE_IDS": [],
    "AUTO_CONNECT": True,
    "MQTT_HOST": "localhost",
    "MQTT_PORT": 1883,
    "MQTT_USERNAME": None,
    "MQTT_PASSWORD": None,
    "MQTT_CLIENT_ID": "ble-mqtt-hub",
    "MQTT_TLS": False,
    "MQTT_QOS": 1,
    "MQTT_KEEPALIVE": 60,
    "STATUS_TOPIC": "hub/status",
    "TELEMETRY_TOPIC": "hub/telemetry",
    "TELEMETRY_INTERVAL_S": 30.0,
    "ENABLE_TELEMETRY": True,
    "LOG_LEVEL": "INFO",
}

# Public module-level handles; populated by init_config()
CONFIG: dict[str, Any] = {}
CONFIG_SOURCE: Path | None = None

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _candidate_paths() -> list[Path]:
    """Ordered YAML config locations (explicit env path first)."""
    env_path = os.environ.get("CONFIG_PATH")
    paths: list[Path] = []
    if env_path:
        paths.append(Path(env_path))
    paths.extend(
        [
            Path("/data/config.yaml"),
            Path("/config/ble_mqtt_hub.yaml"),
            Path.cwd() / "config.yaml",
        ]
    )
    return paths


def _load_options_json(
    path: Path = Path("/data/options.json"),
) -> tuple[dict[str, Any], Path | None]:
    """Load add-on style options (JSON). Returns (data, source_path)."""
    if not path.exists():
        logger.debug("[CONFIG] options.json not found: %s", path)
        return {}, None
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        logger.warning("[CONFIG] Failed to parse options.json %s: %s", path, exc)
        return {}, None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("[CONFIG] Failed to read options.json %s: %s", path, exc)
        return {}, None
    if not isinstance(data, dict):
        logger.warning("[CONFIG] options.json root not a mapping: %s", path)
        return {}, None
    logger.info("[CONFIG] Loaded options from: %s", path)
    return data, path


def _load_yaml_cfg(
    paths: list[Path] | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Load YAML config from the first valid candidate path."""
    for pth in paths or _candidate_paths():
        if not pth.exists():
            logger.debug("[CONFIG] Path not found: %s", pth)
            continue
        try:
            with pth.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            logger.warning("[CONFIG] Failed to parse YAML %s: %s", pth, exc)
            continue
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[CONFIG] Failed to read YAML %s: %s", pth, exc)
            continue
        if not isinstance(data, dict):
            logger.warning("[CONFIG] YAML root not a mapping: %s", pth)
            continue
        logger.info("[CONFIG] Loaded YAML config from: %s", pth)
        return data, pth
    return {}, None


def _env_overrides() -> dict[str, Any]:
    return {key: os.environ[key] for key in DEFAULTS if key in os.environ}


def init_config(
    yaml_paths: list[Path] | None = None,
    options_path: Path | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Populate module-level CONFIG & CONFIG_SOURCE and return them.

    Precedence (low to high): DEFAULTS, YAML, options.json, environment.
    Keys are normalized to upper case.
    """
    global CONFIG_SOURCE
    yml, yml_src = _load_yaml_cfg(yaml_paths)
    if options_path is not None:
        opts, opts_src = _load_options_json(options_path)
    else:
        opts, opts_src = _load_options_json()

    merged: dict[str, Any] = dict(DEFAULTS)
    for layer in (yml, opts, _env_overrides()):
        merged.update({str(k).upper(): v for k, v in layer.items()})

    CONFIG.clear()
    CONFIG.update(merged)
    CONFIG_SOURCE = opts_src or yml_src
    if CONFIG_SOURCE is None:
        logger.info("[CONFIG] No configuration file found; using defaults")
    else:
        logger.debug("[CONFIG] Active source: %s", CONFIG_SOURCE)
    return CONFIG, CONFIG_SOURCE


def load_config(force: bool = False) -> tuple[dict[str, Any], Path | None]:
    """Return the effective configuration, loading it on first use."""
    if CONFIG and not force:
        return CONFIG, CONFIG_SOURCE
    return init_config()


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_number(key: str, value: Any, cast, minimum) -> Any:
    try:
        result = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if result < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {result}")
    return result


def _as_list(value: Any) -> list[str]:
    if value in (None, ""):
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v) for v in value]


@dataclass(frozen=True)
class HubSettings:
    """Typed, validated view of the configuration mapping."""

    max_devices: int = 1
    scan_timeout_s: float = 10.0
    reconnect_delay_s: float = 3.0
    connect_timeout_s: float = 10.0
    service_uuid: str = NUS_SERVICE_UUID
    inbound_char_uuid: str = NUS_RX_CHAR_UUID
    outbound_char_uuid: str = NUS_TX_CHAR_UUID
    payload_encoding: str = "utf-8"
    ble_adapter: str | None = None
    device_ids: list[str] = field(default_factory=list)
    auto_connect: bool = True
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = field(default=None, repr=False)
    mqtt_client_id: str = "ble-mqtt-hub"
    mqtt_tls: bool = False
    mqtt_qos: int = 1
    mqtt_keepalive: int = 60
    status_topic: str = "hub/status"
    telemetry_topic: str = "hub/telemetry"
    telemetry_interval_s: float = 30.0
    enable_telemetry: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, cfg: dict[str, Any]) -> HubSettings:
        c = dict(DEFAULTS)
        c.update({str(k).upper(): v for k, v in cfg.items()})
        qos = _as_number("MQTT_QOS", c["MQTT_QOS"], int, 0)
        if qos > 2:
            raise ConfigError(f"MQTT_QOS must be 0, 1 or 2, got {qos}")
        encoding = str(c["PAYLOAD_ENCODING"])
        try:
            "".encode(encoding)
        except LookupError as exc:
            raise ConfigError(f"Unknown PAYLOAD_ENCODING {encoding!r}") from exc
        return cls(
            max_devices=_as_number("MAX_DEVICES", c["MAX_DEVICES"], int, 1),
            scan_timeout_s=_as_number("SCAN_TIMEOUT_S", c["SCAN_TIMEOUT_S"], float, 0.1),
            reconnect_delay_s=_as_number(
                "RECONNECT_DELAY_S", c["RECONNECT_DELAY_S"], float, 0.0
            ),
            connect_timeout_s=_as_number(
                "CONNECT_TIMEOUT_S", c["CONNECT_TIMEOUT_S"], float, 0.1
            ),
            service_uuid=str(c["SERVICE_UUID"]).lower(),
            inbound_char_uuid=str(c["INBOUND_CHAR_UUID"]).lower(),
            outbound_char_uuid=str(c["OUTBOUND_CHAR_UUID"]).lower(),
            payload_encoding=encoding,
            ble_adapter=c["BLE_ADAPTER"] or None,
            device_ids=_as_list(c["DEVICE_IDS"]),
            auto_connect=_as_bool("AUTO_CONNECT", c["AUTO_CONNECT"]),
            mqtt_host=str(c["MQTT_HOST"]),
            mqtt_port=_as_number("MQTT_PORT", c["MQTT_PORT"], int, 1),
            mqtt_username=c["MQTT_USERNAME"] or None,
            mqtt_password=c["MQTT_PASSWORD"] or None,
            mqtt_client_id=str(c["MQTT_CLIENT_ID"]),
            mqtt_tls=_as_bool("MQTT_TLS", c["MQTT_TLS"]),
            mqtt_qos=qos,
            mqtt_keepalive=_as_number("MQTT_KEEPALIVE", c["MQTT_KEEPALIVE"], int, 1),
            status_topic=str(c["STATUS_TOPIC"]),
            telemetry_topic=str(c["TELEMETRY_TOPIC"]),
            telemetry_interval_s=_as_number(
                "TELEMETRY_INTERVAL_S", c["TELEMETRY_INTERVAL_S"], float, 1.0
            ),
            enable_telemetry=_as_bool("ENABLE_TELEMETRY", c["ENABLE_TELEMETRY"]),
            log_level=str(c["LOG_LEVEL"]).upper(),
        )


def load_settings(force: bool = False) -> HubSettings:
    cfg, _src = load_config(force=force)
    return HubSettings.from_mapping(cfg)


__all__ = [
    "CONFIG",
    "CONFIG_SOURCE",
    "DEFAULTS",
    "HubSettings",
    "init_config",
    "load_config",
    "load_settings",
]
