"""
mqtt_dispatcher.py

paho-mqtt implementation of the broker port. Owns the one broker connection
shared by every device: availability (LWT) on the status topic, credentials,
optional TLS, paho-managed reconnect, and re-subscription on every connect.

paho runs its network loop on its own thread; every callback handed to this
class is marshalled onto the asyncio loop passed at construction.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any

import paho.mqtt.client as mqtt

from .core_types import ConnectionCallback, MessageCallback
from .errors import TransportError
from .hub_config import HubSettings
from .logging_setup import logger

REASONS = {
    0: "success",
    1: "unacceptable_protocol_version",
    2: "identifier_rejected",
    3: "server_unavailable",
    4: "bad_username_or_password",
    5: "not_authorized",
}


def _rc_value(rc: Any) -> int:
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MqttDispatcher:
    def __init__(self, settings: HubSettings, loop: asyncio.AbstractEventLoop) -> None:
        self.settings = settings
        self.loop = loop
        self.connected = False
        self._subscriptions: dict[str, MessageCallback] = {}
        self._connection_listeners: list[ConnectionCallback] = []
        self.client = self._build_client()

    def _build_client(self) -> mqtt.Client:
        s = self.settings
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=s.mqtt_client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if s.mqtt_username is not None:
            client.username_pw_set(username=s.mqtt_username, password=(s.mqtt_password or ""))
        if s.mqtt_tls:
            client.tls_set()
        # LWT/availability
        client.will_set(s.status_topic, payload="offline", qos=s.mqtt_qos, retain=True)
        # Reconnect backoff (let paho handle retries)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        return client

    # ----- lifecycle -----
    def start(self) -> None:
        s = self.settings
        try:
            resolved = socket.gethostbyname(s.mqtt_host)
        except OSError:
            resolved = "unresolved"
        logger.info(
            {
                "event": "mqtt_connect_attempt",
                "host": s.mqtt_host,
                "port": s.mqtt_port,
                "resolved": resolved,
                "client_id": s.mqtt_client_id,
                "user": bool(s.mqtt_username),
                "tls": s.mqtt_tls,
                "status_topic": s.status_topic,
            }
        )
        self.client.connect_async(s.mqtt_host, s.mqtt_port, s.mqtt_keepalive)
        self.client.loop_start()

    def stop(self) -> None:
        s = self.settings
        try:
            info = self.client.publish(s.status_topic, payload="offline", qos=s.mqtt_qos, retain=True)
            if self.connected:
                info.wait_for_publish(timeout=2.0)
        except (RuntimeError, ValueError) as e:
            logger.warning({"event": "mqtt_offline_publish_error", "error": repr(e)})
        self.client.disconnect()
        self.client.loop_stop()
        logger.info({"event": "mqtt_stopped"})

    # ----- BrokerClient surface -----
    def publish(
        self, topic: str, payload: str | bytes, qos: int | None = None, retain: bool = False
    ) -> Any:
        qos = self.settings.mqtt_qos if qos is None else qos
        info = self.client.publish(topic, payload=payload, qos=qos, retain=retain)
        if info.rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            raise TransportError(f"MQTT publish to {topic} failed: rc={info.rc}")
        return info

    def subscribe(self, pattern: str, on_message: MessageCallback) -> None:
        self._subscriptions[pattern] = on_message

        def _dispatch(_client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self.loop.call_soon_threadsafe(on_message, msg.topic, bytes(msg.payload))

        self.client.message_callback_add(pattern, _dispatch)
        if self.connected:
            self.client.subscribe(pattern, qos=self.settings.mqtt_qos)
        logger.info({"event": "mqtt_subscribe", "pattern": pattern})

    def add_connection_listener(self, callback: ConnectionCallback) -> None:
        self._connection_listeners.append(callback)

    # ----- paho callbacks (network thread) -----
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_value(reason_code)
        reason = REASONS.get(rc, str(reason_code))
        if getattr(reason_code, "is_failure", rc != 0):
            logger.error({"event": "mqtt_connect_failed", "rc": rc, "reason": reason})
            return
        logger.info({"event": "mqtt_connected", "rc": rc, "reason": reason})
        self.connected = True
        client.publish(self.settings.status_topic, payload="online", qos=self.settings.mqtt_qos, retain=True)
        for pattern in list(self._subscriptions):
            client.subscribe(pattern, qos=self.settings.mqtt_qos)
        self._notify_connection(True)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        # rc==0 = clean; >0 = unexpected
        self.connected = False
        logger.warning({"event": "mqtt_disconnected", "rc": _rc_value(reason_code)})
        self._notify_connection(False)

    def _notify_connection(self, up: bool) -> None:
        for cb in list(self._connection_listeners):
            self.loop.call_soon_threadsafe(cb, up)


__all__ = ["REASONS", "MqttDispatcher"]
