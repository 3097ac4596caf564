"""MQTT position feed.

Threaded paho-mqtt runtime that decodes JSON position reports and hands
them to the asyncio loop.  The network loop runs in paho's own thread; all
engine work happens on the loop via ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from geofleet._redact import redact_for_log
from geofleet.config import MqttConfig
from geofleet.exceptions import InvalidPositionError
from geofleet.ingestion.normalize import position_from_payload
from geofleet.models.position import VehiclePosition


def vehicle_id_from_topic(subscription: str, topic: str) -> str | None:
    """Return the topic segment matched by the first ``+`` wildcard of *subscription*.

    ``vehicle_id_from_topic("fleet/+/position", "fleet/V1/position") == "V1"``
    """
    sub_parts = subscription.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(sub_parts):
        if part == "+" and index < len(topic_parts):
            return topic_parts[index] or None
    return None


def decode_position_message(subscription: str, topic: str, payload: bytes) -> VehiclePosition:
    """Decode an MQTT message body into a position.

    The vehicle id is taken from the payload, falling back to the topic
    segment matched by the subscription wildcard.

    Raises
    ------
    InvalidPositionError
        If the body is not a JSON object or the position cannot be parsed.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPositionError(f"MQTT payload on {topic} is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidPositionError(f"MQTT payload on {topic} is not a JSON object")
    return position_from_payload(parsed, vehicle_id=vehicle_id_from_topic(subscription, topic))


class PositionFeed:
    """Threaded paho-mqtt runtime that emits positions onto an asyncio loop."""

    def __init__(
        self,
        *,
        config: MqttConfig,
        loop: asyncio.AbstractEventLoop,
        on_position: Callable[[VehiclePosition], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_position = on_position
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self.rejected = 0

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            position = decode_position_message(self._config.topic, topic, payload)
        except InvalidPositionError as exc:
            self.rejected += 1
            self._logger.warning("Rejected MQTT position topic=%s: %s", topic, exc)
            return
        self._loop.call_soon_threadsafe(self._on_position, position)

    def start(self) -> None:
        """Connect and subscribe to the configured position topic."""
        self.stop()
        cfg = self._config
        self._logger.debug(
            "MQTT feed start requested %s",
            redact_for_log(
                {
                    "host": cfg.host,
                    "port": cfg.port,
                    "topic": cfg.topic,
                    "client_id": cfg.client_id,
                    "password": cfg.password,
                }
            ),
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=cfg.client_id,
        )
        client.enable_logger(self._logger)
        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password)
        if cfg.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected, subscribing topic=%s", cfg.topic)
            c.subscribe(cfg.topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._handle_message(msg.topic, msg.payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.info("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(cfg.host, cfg.port, keepalive=cfg.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
