"""Downlink: mensaje cloud-to-device → downlink MQTT, y estados de entrega.

Estados por comando:
  Building → Published (token registrado) → Queued | Acked | Nacked | Failed

- queued: terminal solo si el downlink no es confirmado (complete).
- ack: complete. nack: abandon (reentrega según el backend). failed: reject.

El correlation id publicado es el lock token del mensaje cloud
(`az:LockToken:<token>`), y se registra ANTES del publish para que un estado
rápido nunca llegue antes que el registro.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import orjson
from pydantic import ValidationError

from common.config import MethodSetting

from .cloud.base import CloudMessage
from .correlation import (
    CorrelationEntry,
    CorrelationRegistry,
    find_lock_token,
    lock_token_to_correlation_id,
)
from .errors import (
    CloudSessionError,
    DuplicateToken,
    InvalidDownlink,
    MessageLockLost,
    UnknownToken,
)
from .metrics import DOWNLINK_OUTCOMES, DOWNLINKS, PENDING_CORRELATIONS
from .models import (
    DownlinkPriority,
    DownlinkRequest,
    DownlinkStatusMessage,
    MethodResponse,
    QueueSelector,
    parse_bool,
)
from .mqtt.bus import BusPublishError
from .sessions import DeviceSession, SessionManager
from .topics import MessageKind, downlink_topic

logger = logging.getLogger(__name__)

METHOD_NAME_PROPERTY = "method-name"
MAX_PORT = 223

# Acción sobre el mensaje cloud según el estado recibido del network server
_OUTCOME_ACTIONS = {
    MessageKind.QUEUED: "complete",
    MessageKind.ACK: "complete",
    MessageKind.NACK: "abandon",
    MessageKind.FAILED: "reject",
}


@dataclass(frozen=True)
class DownlinkContext:
    """Contexto del receive handler de cada sesión cloud."""
    application_id: str
    device_id: str
    tenant_id: str = ""
    methods: Mapping[str, MethodSetting] = field(default_factory=dict)


def _parse_port(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        port = int(str(value).strip())
    except ValueError:
        return None
    if 0 <= port <= MAX_PORT:
        return port
    return None


def _is_json_container(text: str) -> bool:
    return (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]"))


def resolve_payload(text: str, method_name: Optional[str] = None) -> tuple[Optional[str], Optional[Any]]:
    """Devuelve (payload_raw, payload_decoded); exactamente uno no es None.

    Solo se parsea como JSON un objeto o array completo. En la forma método,
    si falla se intenta como valor JSON suelto y si no como texto, ambos
    envueltos bajo el nombre del método.
    """
    if _is_json_container(text):
        try:
            return None, orjson.loads(text)
        except orjson.JSONDecodeError:
            pass

    if method_name is None:
        return text, None

    try:
        return None, {method_name: orjson.loads(text)}
    except orjson.JSONDecodeError:
        return None, {method_name: text}


def build_request(message: CloudMessage, methods: Mapping[str, MethodSetting]) -> DownlinkRequest:
    """Construye el DownlinkRequest de un mensaje cloud-to-device.

    Raises:
        InvalidDownlink si faltan propiedades válidas o el método no está configurado.
    """
    properties = {name.lower(): value for name, value in message.properties.items()}
    token = lock_token_to_correlation_id(message.lock_token)
    text = message.text

    if METHOD_NAME_PROPERTY not in properties:
        # Mensaje IoT Hub: port/confirmed/priority/queue como propiedades
        port = _parse_port(properties.get("port"))
        if port is None:
            raise InvalidDownlink(f"Port property is invalid: {properties.get('port')!r}")
        confirmed = parse_bool(properties.get("confirmed"))
        if confirmed is None:
            raise InvalidDownlink(f"Confirmed flag is invalid: {properties.get('confirmed')!r}")
        priority = DownlinkPriority.parse(properties.get("priority"))
        if priority is None:
            raise InvalidDownlink(f"Priority value is invalid: {properties.get('priority')!r}")
        queue = QueueSelector.parse(properties.get("queue"))
        if queue is None:
            raise InvalidDownlink(f"Queue value is invalid: {properties.get('queue')!r}")
        payload_raw, payload_decoded = resolve_payload(text)
    else:
        # Comando IoT Central: la configuración del método aporta las propiedades
        method_name = properties[METHOD_NAME_PROPERTY]
        if not method_name or not method_name.strip():
            raise InvalidDownlink("method-name property is empty")
        setting = methods.get(method_name)
        if setting is None:
            raise InvalidDownlink(f"method-name {method_name} has no settings")
        port, confirmed, priority, queue = setting.port, setting.confirmed, setting.priority, setting.queue
        payload_raw, payload_decoded = resolve_payload(text, method_name)

    try:
        return DownlinkRequest(
            port=port,
            confirmed=confirmed,
            priority=priority,
            queue=queue,
            correlation_token=token,
            payload_raw=payload_raw,
            payload_decoded=payload_decoded,
        )
    except ValidationError as e:
        raise InvalidDownlink(str(e)) from e


def default_method_handler(name: str, payload: Any, context: Any) -> MethodResponse:
    """Métodos directos no soportados: siempre 404."""
    logger.warning("[DOWNLINK] Direct method not handled name=%s payload=%s", name, payload)
    return MethodResponse(status=404)


class DownlinkRouter:
    def __init__(self, sessions: SessionManager, registry: CorrelationRegistry):
        self._sessions = sessions
        self._registry = registry

    # -- cloud → bus ---------------------------------------------------------

    def on_cloud_message(self, message: CloudMessage, context: DownlinkContext) -> bool:
        """Receive handler de la sesión cloud. Devuelve True si se publicó. Nunca lanza."""
        try:
            return self._publish(message, context)
        except Exception as e:
            logger.exception(
                "[DOWNLINK] Processing failed application=%s device=%s lock_token=%s: %s",
                context.application_id, context.device_id, message.lock_token, e,
            )
            return False

    def _publish(self, message: CloudMessage, context: DownlinkContext) -> bool:
        device = self._sessions.lookup_device(context.device_id)
        if device is None:
            DOWNLINKS.labels(status="unknown_device").inc()
            logger.warning("[DOWNLINK] Unknown device=%s", context.device_id)
            return False

        tenant = self._sessions.lookup_tenant(context.application_id)
        if tenant is None:
            DOWNLINKS.labels(status="unknown_tenant").inc()
            logger.warning("[DOWNLINK] Unknown application=%s device=%s", context.application_id, context.device_id)
            self._settle(device, "abandon", message.lock_token, "Downlink")
            return False

        try:
            request = build_request(message, context.methods)
        except InvalidDownlink as e:
            DOWNLINKS.labels(status="rejected").inc()
            logger.warning(
                "[DOWNLINK] Rejected device=%s message_id=%s: %s",
                context.device_id, message.message_id, e,
            )
            self._settle(device, "reject", message.lock_token, "Downlink")
            return False

        entry = CorrelationEntry(
            token=request.correlation_token,
            tenant_id=context.application_id,
            device_id=context.device_id,
            lock_token=message.lock_token,
            confirmed=request.confirmed,
        )
        try:
            self._registry.register(entry)
        except DuplicateToken as e:
            DOWNLINKS.labels(status="duplicate").inc()
            logger.error("[DOWNLINK] %s device=%s, message dropped", e, context.device_id)
            return False

        topic = downlink_topic(context.application_id, context.tenant_id, context.device_id, request.queue)
        try:
            tenant.bus.publish(topic, orjson.dumps(request.to_envelope()))
        except BusPublishError as e:
            self._registry.discard(entry.token)
            DOWNLINKS.labels(status="publish_failed").inc()
            logger.error("[DOWNLINK] Publish failed device=%s token=%s: %s", context.device_id, entry.token, e)
            self._settle(device, "abandon", message.lock_token, "Downlink")
            return False
        finally:
            PENDING_CORRELATIONS.set(len(self._registry))

        DOWNLINKS.labels(status="published").inc()
        logger.info(
            "[DOWNLINK] device=%s message_id=%s lock_token=%s port=%d confirmed=%s priority=%s queue=%s",
            context.device_id, message.message_id, message.lock_token,
            request.port, request.confirmed, request.priority.value, request.queue.value,
        )
        return True

    # -- bus status → cloud --------------------------------------------------

    def handle_status(self, kind: MessageKind, application_id: str, topic: str, payload: bytes) -> None:
        """Entrada desde el bus para `.../down/{queued|ack|nack|failed}`. Nunca lanza."""
        label = kind.value.capitalize()
        try:
            status = DownlinkStatusMessage.model_validate(orjson.loads(payload))
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.warning("[DOWNLINK] %s-Invalid payload application=%s topic=%s: %s", label, application_id, topic, e)
            return

        lock_token = find_lock_token(status.all_correlation_ids)
        if lock_token is None:
            DOWNLINK_OUTCOMES.labels(kind=kind.value, result="unknown").inc()
            logger.warning("[DOWNLINK] %s-device=%s LockToken missing from correlation ids", label, status.device_id)
            return

        try:
            self.on_status(kind, lock_token_to_correlation_id(lock_token), device_id=status.device_id)
        except Exception as e:
            logger.exception("[DOWNLINK] %s-Processing error device=%s lock_token=%s: %s", label, status.device_id, lock_token, e)

    def on_status(self, kind: MessageKind, token: str, device_id: Optional[str] = None) -> str:
        """Aplica un estado de entrega. Devuelve el resultado (resolved, pending, unknown, lock_lost, error)."""
        action = _OUTCOME_ACTIONS.get(kind)
        if action is None:
            raise ValueError(f"{kind} is not a downlink status")
        label = kind.value.capitalize()

        if kind is MessageKind.QUEUED:
            entry = self._registry.get(token)
            if entry is None:
                return self._unknown(kind, token, device_id)
            if entry.confirmed:
                # La confirmación llega con ack/nack/failed
                DOWNLINK_OUTCOMES.labels(kind=kind.value, result="pending").inc()
                logger.info("[DOWNLINK] Queued-device=%s confirmed token=%s", entry.device_id, token)
                return "pending"

        try:
            entry = self._registry.resolve(token)
        except UnknownToken:
            return self._unknown(kind, token, device_id)
        finally:
            PENDING_CORRELATIONS.set(len(self._registry))

        device = self._sessions.lookup_device(entry.device_id)
        if device is None:
            DOWNLINK_OUTCOMES.labels(kind=kind.value, result="unknown").inc()
            logger.warning("[DOWNLINK] %s-device=%s unknown, token=%s dropped", label, entry.device_id, token)
            return "unknown"

        result = self._settle(device, action, entry.lock_token, label)
        DOWNLINK_OUTCOMES.labels(kind=kind.value, result=result).inc()
        return result

    def _unknown(self, kind: MessageKind, token: str, device_id: Optional[str]) -> str:
        DOWNLINK_OUTCOMES.labels(kind=kind.value, result="unknown").inc()
        logger.warning(
            "[DOWNLINK] %s-device=%s stale or unknown correlation token=%s",
            kind.value.capitalize(), device_id, token,
        )
        return "unknown"

    @staticmethod
    def _settle(device: DeviceSession, action: str, lock_token: str, label: str) -> str:
        """complete/abandon/reject del mensaje cloud. Un lock expirado se da por resuelto."""
        try:
            getattr(device.cloud, action)(lock_token)
        except MessageLockLost:
            logger.warning("[DOWNLINK] %s-%s device=%s lock_token=%s timeout", label, action, device.device_id, lock_token)
            return "lock_lost"
        except CloudSessionError as e:
            logger.error("[DOWNLINK] %s-%s device=%s lock_token=%s failed: %s", label, action, device.device_id, lock_token, e)
            return "error"

        logger.info("[DOWNLINK] %s-%s device=%s lock_token=%s success", label, action, device.device_id, lock_token)
        return "resolved"

    @property
    def stats(self) -> dict:
        return self._registry.stats
