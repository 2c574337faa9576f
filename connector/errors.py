"""Excepciones del conector.

Transitorias (reintentar o loggear y seguir): RegistryError, MessageLockLost,
CloudSessionError. Permanentes por ítem: ProvisioningFailed, DeviceUnreachable,
InvalidDownlink, UnknownToken, DuplicateKey. Fatal en arranque:
ConfigurationError.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base de todas las excepciones del conector."""


class ConfigurationError(ConnectorError):
    """Configuración ausente o inválida; aborta el arranque."""


class DuplicateKey(ConnectorError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} session '{key}' already registered")


class DuplicateToken(ConnectorError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Correlation token '{token}' already registered")


class UnknownToken(ConnectorError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Correlation token '{token}' unknown or already resolved")


class ProvisioningFailed(ConnectorError):
    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device '{device_id}' provisioning failed: {reason}")


class DeviceUnreachable(ConnectorError):
    def __init__(self, device_id: str, reason: str):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device '{device_id}' cloud session open failed: {reason}")


class RegistryError(ConnectorError):
    def __init__(self, application_id: str, reason: str, status_code: Optional[int] = None):
        self.application_id = application_id
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Device registry error application={application_id}: {reason}")


class InvalidDownlink(ConnectorError):
    """Comando cloud-to-device que no puede convertirse en downlink."""


class CloudSessionError(ConnectorError):
    def __init__(self, device_id: str, reason: str, status_code: Optional[int] = None):
        self.device_id = device_id
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Cloud session error device={device_id}: {reason}")


class MessageLockLost(CloudSessionError):
    """El lock del mensaje cloud-to-device expiró antes de complete/abandon/reject."""
