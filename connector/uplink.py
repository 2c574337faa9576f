"""Uplink: mensaje MQTT `.../up` → evento de telemetría en la sesión cloud."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import orjson
from pydantic import ValidationError

from .errors import CloudSessionError
from .metrics import UPLINKS
from .models import UplinkMessage
from .normalizer import normalize
from .sessions import SessionManager

logger = logging.getLogger(__name__)


def _iso_seconds(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def build_telemetry(
    application_id: str,
    device_id: str,
    port: int,
    decoded_payload: Any,
    raw_payload: Optional[str],
    received_at: datetime,
    simulated: bool = False,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Construye (cuerpo, propiedades) del evento de telemetría."""
    received = _iso_seconds(received_at)
    event: dict[str, Any] = {
        "ApplicationID": application_id,
        "DeviceID": device_id,
        "Port": port,
        "Simulated": simulated,
        "ReceivedAtUtc": received,
        "PayloadRaw": raw_payload,
    }
    for name, value in normalize(decoded_payload).items():
        # Los campos del sobre tienen prioridad sobre los del payload
        event.setdefault(name, value)

    properties = {
        # Fecha de adquisición en lugar de la de subida
        "iothub-creation-time-utc": received,
        "ApplicationId": application_id,
        "DeviceId": device_id,
        "port": str(port),
        "Simulated": str(simulated),
    }
    return event, properties


class UplinkRouter:
    def __init__(self, sessions: SessionManager):
        self._sessions = sessions

    def handle_message(self, application_id: str, topic: str, payload: bytes) -> None:
        """Entrada desde el bus: parsea y enruta. Nunca lanza."""
        try:
            message = UplinkMessage.model_validate(orjson.loads(payload))
        except (orjson.JSONDecodeError, ValidationError) as e:
            UPLINKS.labels(status="invalid").inc()
            logger.warning("[UPLINK] Invalid payload application=%s topic=%s: %s", application_id, topic, e)
            return

        try:
            self.on_uplink(
                application_id=message.application_id,
                device_id=message.device_id,
                port=message.port,
                decoded_payload=message.uplink_message.decoded_payload,
                raw_payload=message.uplink_message.frm_payload,
                received_at=message.received_at_utc,
                simulated=message.simulated,
            )
        except Exception as e:
            logger.exception(
                "[UPLINK] Processing failed application=%s device=%s: %s",
                application_id, message.device_id, e,
            )

    def on_uplink(
        self,
        application_id: str,
        device_id: str,
        port: Optional[int],
        decoded_payload: Any,
        raw_payload: Optional[str],
        received_at: Optional[datetime] = None,
        simulated: bool = False,
    ) -> bool:
        """Envía el uplink como telemetría. Devuelve True si se envió."""
        if port is None:
            UPLINKS.labels(status="control").inc()
            logger.info("[UPLINK] Control message application=%s device=%s", application_id, device_id)
            return False

        logger.info("[UPLINK] application=%s device=%s port=%d payload_raw=%s", application_id, device_id, port, raw_payload)

        device = self._sessions.lookup_device(device_id)
        if device is None:
            UPLINKS.labels(status="unknown_device").inc()
            logger.warning("[UPLINK] Unknown device=%s application=%s", device_id, application_id)
            return False

        body, properties = build_telemetry(
            application_id,
            device_id,
            port,
            decoded_payload,
            raw_payload,
            received_at or datetime.now(timezone.utc),
            simulated,
        )

        try:
            device.cloud.send_event(orjson.dumps(body), properties)
        except CloudSessionError as e:
            UPLINKS.labels(status="send_failed").inc()
            logger.error("[UPLINK] Send failed device=%s application=%s: %s", device_id, application_id, e)
            return False

        UPLINKS.labels(status="sent").inc()
        return True
