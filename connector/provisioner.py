"""Provisioning de dispositivos en el backend cloud.

Estrategias, en orden:
1. Connection string de la aplicación (credencial directa).
2. Group enrollment en DPS con clave derivada por dispositivo.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from common.config import ApplicationSettings, Settings

from .cloud.base import CloudSession
from .cloud.dps import ProvisioningClient, ProvisioningServiceError
from .cloud.iothub import IoTHubDeviceSession
from .cloud.sas import ConnectionString, derive_device_key
from .errors import CloudSessionError, ConfigurationError, DeviceUnreachable, ProvisioningFailed

logger = logging.getLogger(__name__)

# (host_name, device_id, key_b64, key_name) -> CloudSession
SessionFactory = Callable[[str, str, str, Optional[str]], CloudSession]


class DeviceProvisioner:
    def __init__(
        self,
        settings: Settings,
        provisioning_client: Optional[ProvisioningClient] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._settings = settings
        self._dps = provisioning_client or ProvisioningClient(endpoint=settings.dps_endpoint)
        self._session_factory = session_factory or self._default_session_factory

    def provision(self, application_id: str, device_id: str) -> CloudSession:
        """Obtiene credenciales y abre la sesión cloud del dispositivo.

        Raises:
            ProvisioningFailed: sin credenciales o DPS no asigna el dispositivo.
            DeviceUnreachable: la sesión no se pudo abrir.
        """
        app = self._settings.applications.get(application_id)
        if app is None:
            raise ProvisioningFailed(device_id, f"application {application_id} not configured")

        session = self._create_session(app, device_id)
        try:
            session.open()
        except CloudSessionError as e:
            self._close_quietly(session)
            raise DeviceUnreachable(device_id, str(e)) from e
        return session

    def _create_session(self, app: ApplicationSettings, device_id: str) -> CloudSession:
        if app.azure_connection_string:
            try:
                cs = ConnectionString.parse(app.azure_connection_string)
            except ConfigurationError as e:
                raise ProvisioningFailed(device_id, str(e)) from e
            logger.debug("[PROVISION] device=%s using connection string host=%s", device_id, cs.host_name)
            return self._session_factory(cs.host_name, device_id, cs.shared_access_key, cs.shared_access_key_name)

        if app.dps is not None:
            return self._enroll(app, device_id)

        raise ProvisioningFailed(device_id, "no connection string or DPS settings configured")

    def _enroll(self, app: ApplicationSettings, device_id: str) -> CloudSession:
        try:
            device_key = derive_device_key(app.dps.group_enrollment_key, device_id)
        except ConfigurationError as e:
            raise ProvisioningFailed(device_id, str(e)) from e

        try:
            result = self._dps.register(device_id, device_key, app.dps.id_scope)
        except ProvisioningServiceError as e:
            raise ProvisioningFailed(device_id, f"DPS registration error: {e}") from e

        if not result.is_assigned:
            raise ProvisioningFailed(
                device_id,
                f"DPS status {result.status}" + (f" ({result.error_message})" if result.error_message else ""),
            )

        logger.info("[PROVISION] device=%s assigned hub=%s", device_id, result.assigned_hub)
        return self._session_factory(result.assigned_hub, result.device_id or device_id, device_key, None)

    def _default_session_factory(
        self, host_name: str, device_id: str, key_b64: str, key_name: Optional[str]
    ) -> CloudSession:
        return IoTHubDeviceSession(
            host_name=host_name,
            device_id=device_id,
            key_b64=key_b64,
            key_name=key_name,
            poll_interval=self._settings.poll_interval,
        )

    @staticmethod
    def _close_quietly(session: CloudSession) -> None:
        try:
            session.close()
        except Exception as e:
            logger.debug("[PROVISION] close after failed open device=%s: %s", session.device_id, e)
