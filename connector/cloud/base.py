"""Interfaz de sesión cloud por dispositivo.

Desacopla los routers del backend concreto (IoT Hub HTTPS hoy).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..models import MethodResponse


@dataclass
class CloudMessage:
    """Mensaje cloud-to-device pendiente de complete/abandon/reject."""
    lock_token: str
    body: bytes = b""
    message_id: Optional[str] = None
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace").strip()


ReceiveHandler = Callable[[CloudMessage, Any], None]
MethodHandler = Callable[[str, Any, Any], MethodResponse]
SessionLostHandler = Callable[[str, Exception], None]


class CloudSession(ABC):
    """Sesión de un dispositivo contra el backend cloud.

    Implementations:
    - IoTHubDeviceSession: Azure IoT Hub device HTTPS API

    Métodos directos: la API HTTPS de dispositivo no puede recibirlos (solo
    existen sobre MQTT/AMQP), así que con IoTHubDeviceSession el method handler
    registrado nunca se invoca desde el backend. Los comandos de IoT Central
    llegan como mensajes cloud-to-device con la propiedad `method-name`.
    """

    device_id: str

    @abstractmethod
    def open(self) -> None:
        """Abre la sesión. Lanza CloudSessionError si las credenciales no son válidas."""

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def send_event(self, body: bytes, properties: dict[str, str]) -> None:
        """Envía telemetría (device-to-cloud)."""

    @abstractmethod
    def complete(self, lock_token: str) -> None:
        """Entrega correcta; el backend elimina el mensaje."""

    @abstractmethod
    def abandon(self, lock_token: str) -> None:
        """Fallo transitorio; el backend puede reintentar la entrega."""

    @abstractmethod
    def reject(self, lock_token: str) -> None:
        """Fallo permanente; sin reentrega."""

    @abstractmethod
    def set_receive_handler(self, handler: ReceiveHandler, context: Any) -> None:
        pass

    @abstractmethod
    def set_method_handler(self, handler: MethodHandler, context: Any) -> None:
        pass

    @abstractmethod
    def set_lost_handler(self, handler: SessionLostHandler) -> None:
        """Handler invocado una sola vez si la sesión queda inutilizable
        (credenciales revocadas, dispositivo borrado del hub)."""
