import json

import pytest
from hub_core import hub_config as hc
from hub_core.errors import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in hc.DEFAULTS:
        monkeypatch.delenv(key, raising=False)


def _write_yaml(tmp_path, text):
    p = tmp_path / "config.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_when_no_sources(tmp_path):
    cfg, src = hc.init_config(
        yaml_paths=[tmp_path / "missing.yaml"], options_path=tmp_path / "options.json"
    )
    assert src is None
    assert cfg["MAX_DEVICES"] == 1
    assert cfg["STATUS_TOPIC"] == "hub/status"
    settings = hc.HubSettings.from_mapping(cfg)
    assert settings.service_uuid == hc.NUS_SERVICE_UUID
    assert settings.reconnect_delay_s == 3.0


def test_yaml_then_options_then_env(tmp_path, monkeypatch):
    y = _write_yaml(tmp_path, "max_devices: 2\nmqtt_host: yaml-host\nscan_timeout_s: 5\n")
    opts = tmp_path / "options.json"
    opts.write_text(json.dumps({"mqtt_host": "opts-host", "mqtt_port": 8883}), encoding="utf-8")
    monkeypatch.setenv("MAX_DEVICES", "3")
    cfg, src = hc.init_config(yaml_paths=[y], options_path=opts)
    assert src == opts
    assert cfg["MQTT_HOST"] == "opts-host"
    assert cfg["SCAN_TIMEOUT_S"] == 5
    s = hc.HubSettings.from_mapping(cfg)
    assert s.max_devices == 3
    assert s.mqtt_port == 8883


def test_bad_yaml_falls_through(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("max_devices: [1,\n", encoding="utf-8")
    good = tmp_path / "good.yaml"
    good.write_text("max_devices: 2\n", encoding="utf-8")
    cfg, src = hc.init_config(yaml_paths=[bad, good], options_path=tmp_path / "none.json")
    assert src == good
    assert cfg["MAX_DEVICES"] == 2


def test_non_mapping_options_ignored(tmp_path):
    opts = tmp_path / "options.json"
    opts.write_text("[1, 2]", encoding="utf-8")
    cfg, src = hc.init_config(yaml_paths=[tmp_path / "x.yaml"], options_path=opts)
    assert src is None
    assert cfg["MAX_DEVICES"] == 1


def test_load_config_caches(tmp_path):
    y = _write_yaml(tmp_path, "max_devices: 2\n")
    hc.init_config(yaml_paths=[y], options_path=tmp_path / "none.json")
    cfg, src = hc.load_config()
    assert cfg["MAX_DEVICES"] == 2
    assert src == y


def test_device_ids_from_comma_string():
    s = hc.HubSettings.from_mapping({"DEVICE_IDS": "AA:01, BB:02,,"})
    assert s.device_ids == ["AA:01", "BB:02"]


@pytest.mark.parametrize("raw,expected", [("yes", True), ("0", False), (True, True), ("off", False)])
def test_bool_values(raw, expected):
    assert hc.HubSettings.from_mapping({"AUTO_CONNECT": raw}).auto_connect is expected


@pytest.mark.parametrize(
    "key,value",
    [
        ("MAX_DEVICES", 0),
        ("MAX_DEVICES", "many"),
        ("MQTT_QOS", 3),
        ("PAYLOAD_ENCODING", "klingon-8"),
        ("AUTO_CONNECT", "maybe"),
        ("RECONNECT_DELAY_S", -1),
    ],
)
def test_invalid_values_raise(key, value):
    with pytest.raises(ConfigError):
        hc.HubSettings.from_mapping({key: value})


def test_password_hidden_from_repr():
    s = hc.HubSettings.from_mapping({"MQTT_PASSWORD": "hunter2"})
    assert "hunter2" not in repr(s)
    assert s.mqtt_password == "hunter2"
