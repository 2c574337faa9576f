"""Sesión MQTT por tenant (aplicación de The Things Stack).

Usa paho-mqtt con el loop en hilo propio. La reconexión la hace el loop de
paho: `connect_async` + `loop_start` reintenta también la primera conexión,
y `reconnect_delay_set(delay, delay)` fija un retardo constante sin límite de
intentos. Las suscripciones se rehacen en cada `on_connect`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Sequence

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

QOS_AT_LEAST_ONCE = 1

BusMessageHandler = Callable[[str, str, bytes], None]


class BusPublishError(Exception):
    def __init__(self, topic: str, rc: int):
        self.topic = topic
        self.rc = rc
        super().__init__(f"Publish to {topic} failed: {mqtt.error_string(rc)}")


class BusSession:
    """Conexión MQTT de un tenant con sus suscripciones."""

    def __init__(
        self,
        application_id: str,
        username: str,
        password: str,
        topics: Sequence[str],
        on_message: BusMessageHandler,
        broker_host: str = "localhost",
        broker_port: int = 8883,
        client_id: str = "lorawan-connector",
        use_tls: bool = True,
        reconnect_delay: float = 5.0,
        keepalive: int = 60,
        client_factory: Optional[Callable[..., mqtt.Client]] = None,
    ):
        self.application_id = application_id
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.client_id = f"{client_id}-{application_id}"
        self.topics = tuple(topics)
        self.reconnect_delay = reconnect_delay

        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._keepalive = keepalive
        self._message_handler = on_message
        self._client_factory = client_factory or mqtt.Client

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._running = False

        # Stats
        self._connect_count = 0
        self._disconnect_count = 0
        self._messages_received = 0
        self._messages_published = 0
        self._messages_deferred = 0
        self._last_message_at: float = 0

    def start(self) -> None:
        """Arranca la conexión en segundo plano. No bloquea ni falla por red."""
        if self._running:
            return

        self._client = self._client_factory(
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_message = self._on_message

        self._client.username_pw_set(self._username, self._password)
        if self._use_tls:
            self._client.tls_set()

        delay = max(1, int(round(self.reconnect_delay)))
        self._client.reconnect_delay_set(min_delay=delay, max_delay=delay)

        logger.info(
            "[BUS] Connecting application=%s to %s:%d",
            self.application_id, self.broker_host, self.broker_port,
        )
        self._client.connect_async(self.broker_host, self.broker_port, keepalive=self._keepalive)
        self._client.loop_start()
        self._running = True

    def stop(self) -> None:
        self._running = False
        if self._client is not None:
            try:
                self._client.disconnect()
            finally:
                self._client.loop_stop()
        self._connected.clear()
        logger.info("[BUS] Stopped application=%s %s", self.application_id, self.stats)

    def publish(self, topic: str, payload: bytes) -> int:
        """Publica con QoS 1. Devuelve el message id de paho.

        Sin conexión paho guarda el mensaje QoS 1 y lo envía al reconectar
        (rc MQTT_ERR_NO_CONN): cuenta como aceptado.

        Raises:
            BusPublishError si paho no guardó el mensaje (cola llena, sesión sin arrancar).
        """
        if self._client is None:
            raise BusPublishError(topic, mqtt.MQTT_ERR_NO_CONN)

        info = self._client.publish(topic, payload, qos=QOS_AT_LEAST_ONCE)
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            self._messages_deferred += 1
            logger.warning(
                "[BUS] Not connected application=%s, mid=%d queued until reconnect topic=%s",
                self.application_id, info.mid, topic,
            )
        elif info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BusPublishError(topic, info.rc)
        self._messages_published += 1
        return info.mid

    # -- paho callbacks (hilo de red de paho) --------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._connected.clear()
            logger.error(
                "[BUS] Connection refused application=%s reason=%s",
                self.application_id, reason_code,
            )
            return

        self._connected.set()
        self._connect_count += 1
        if self._connect_count > 1:
            logger.info("[BUS] Reconnected application=%s (reconnects=%d)", self.application_id, self._connect_count - 1)
        else:
            logger.info("[BUS] Connected application=%s", self.application_id)

        for topic in self.topics:
            client.subscribe(topic, qos=QOS_AT_LEAST_ONCE)
            logger.info("[BUS] Subscribed application=%s topic=%s", self.application_id, topic)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._connected.clear()
        self._disconnect_count += 1
        if not self._running:
            return
        logger.warning(
            "[BUS] Disconnected application=%s reason=%s, reconnecting in %.0fs",
            self.application_id, reason_code, self.reconnect_delay,
        )

    def _on_connect_fail(self, client, userdata):
        logger.warning(
            "[BUS] Connection failed application=%s, retrying in %.0fs",
            self.application_id, self.reconnect_delay,
        )

    def _on_message(self, client, userdata, msg):
        self._messages_received += 1
        self._last_message_at = time.time()
        try:
            self._message_handler(self.application_id, msg.topic, msg.payload)
        except Exception as e:
            logger.exception(
                "[BUS] Message handler error application=%s topic=%s: %s",
                self.application_id, msg.topic, e,
            )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def stats(self) -> dict:
        return {
            "running": self._running,
            "connected": self.is_connected,
            "broker": f"{self.broker_host}:{self.broker_port}",
            "reconnect_count": max(0, self._connect_count - 1),
            "disconnect_count": self._disconnect_count,
            "messages_received": self._messages_received,
            "messages_published": self._messages_published,
            "messages_deferred": self._messages_deferred,
            "last_message_at": self._last_message_at,
        }
