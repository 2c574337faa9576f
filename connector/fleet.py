"""Sincronización de la flota de dispositivos de una aplicación.

Pagina el registro, decide qué dispositivos se integran con el backend cloud y
los provisiona uno a uno. El fallo de un dispositivo nunca afecta al resto; un
error del registro aborta solo esa aplicación.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from common.config import ApplicationSettings, Settings

from .cloud.base import CloudSession, MethodHandler, ReceiveHandler, SessionLostHandler
from .device_registry import DEFAULT_FIELD_MASK, DeviceRegistryClient
from .downlink import DownlinkContext
from .errors import DeviceUnreachable, DuplicateKey, ProvisioningFailed, RegistryError
from .metrics import DEVICE_SESSIONS, PROVISIONING
from .models import DeviceRecord, parse_bool
from .provisioner import DeviceProvisioner
from .sessions import DeviceSession, SessionManager

logger = logging.getLogger(__name__)


def is_integration_enabled(
    record: DeviceRecord,
    application: Optional[ApplicationSettings],
    global_default: bool,
    attribute: str = "azure-integration",
) -> bool:
    """Atributo del dispositivo > default de la aplicación > default global."""
    raw = record.attributes.get(attribute)
    if raw is not None:
        enabled = parse_bool(raw)
        if enabled is not None:
            return enabled
        logger.warning(
            "[FLEET] device=%s integration attribute %s value %r invalid",
            record.device_id, attribute, raw,
        )

    if application is not None and application.device_integration_default is not None:
        return application.device_integration_default

    return global_default


@dataclass
class FleetSyncResult:
    application_id: str
    enumerated: int = 0
    enabled: int = 0
    provisioned: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False

    def __str__(self) -> str:
        return (
            f"application={self.application_id} enumerated={self.enumerated} enabled={self.enabled} "
            f"provisioned={self.provisioned} failed={self.failed} skipped={self.skipped} aborted={self.aborted}"
        )


class FleetSynchronizer:
    def __init__(
        self,
        settings: Settings,
        registry: DeviceRegistryClient,
        provisioner: DeviceProvisioner,
        sessions: SessionManager,
        receive_handler: ReceiveHandler,
        method_handler: MethodHandler,
        lost_handler: Optional[SessionLostHandler] = None,
        should_stop: Callable[[], bool] = lambda: False,
    ):
        self._settings = settings
        self._registry = registry
        self._provisioner = provisioner
        self._sessions = sessions
        self._receive_handler = receive_handler
        self._method_handler = method_handler
        self._lost_handler = lost_handler
        self._should_stop = should_stop

    def iter_devices(self, application_id: str) -> Iterator[DeviceRecord]:
        """Recorre el registro página a página hasta una página vacía.

        Raises:
            RegistryError (propagado a mitad de iteración).
        """
        page = 1
        while True:
            records = self._registry.list(
                application_id,
                field_mask=DEFAULT_FIELD_MASK,
                page=page,
                page_size=self._settings.device_page_size,
            )
            if not records:
                return
            yield from records
            page += 1

    def sync_fleet(self, application_id: str) -> FleetSyncResult:
        result = FleetSyncResult(application_id=application_id)
        application = self._settings.applications.get(application_id)

        try:
            for record in self.iter_devices(application_id):
                if self._should_stop():
                    logger.info("[FLEET] application=%s sync interrupted by shutdown", application_id)
                    break
                result.enumerated += 1
                if not is_integration_enabled(
                    record,
                    application,
                    self._settings.device_integration_default,
                    self._settings.integration_attribute,
                ):
                    result.skipped += 1
                    PROVISIONING.labels(result="disabled").inc()
                    continue

                result.enabled += 1
                if self.bring_online(record):
                    result.provisioned += 1
                else:
                    result.failed += 1
        except RegistryError as e:
            result.aborted = True
            logger.error("[FLEET] application=%s registry error, sync aborted: %s", application_id, e)

        logger.info("[FLEET] Sync finished %s", result)
        return result

    def bring_online(self, record: DeviceRecord) -> bool:
        """Provisiona, registra y conecta handlers de un dispositivo. Nunca lanza."""
        logger.info("[FLEET] application=%s device=%s provisioning", record.application_id, record.device_id)
        try:
            cloud = self._provisioner.provision(record.application_id, record.device_id)
        except ProvisioningFailed as e:
            PROVISIONING.labels(result="failed").inc()
            logger.warning("[FLEET] application=%s %s", record.application_id, e)
            return False
        except DeviceUnreachable as e:
            PROVISIONING.labels(result="unreachable").inc()
            logger.warning("[FLEET] application=%s %s", record.application_id, e)
            return False
        except Exception as e:
            PROVISIONING.labels(result="failed").inc()
            logger.exception("[FLEET] application=%s device=%s provisioning error: %s", record.application_id, record.device_id, e)
            return False

        try:
            self._sessions.add_device_session(
                DeviceSession(device_id=record.device_id, application_id=record.application_id, cloud=cloud)
            )
        except DuplicateKey as e:
            PROVISIONING.labels(result="duplicate").inc()
            logger.error("[FLEET] %s, device left unmanaged", e)
            self._close_quietly(cloud)
            return False

        self._attach_handlers(record, cloud)
        PROVISIONING.labels(result="provisioned").inc()
        DEVICE_SESSIONS.set(self._sessions.device_count)
        return True

    def _attach_handlers(self, record: DeviceRecord, cloud: CloudSession) -> None:
        application = self._settings.applications.get(record.application_id)
        context = DownlinkContext(
            application_id=record.application_id,
            device_id=record.device_id,
            tenant_id=self._settings.tenant,
            methods=application.methods if application is not None else {},
        )
        cloud.set_receive_handler(self._receive_handler, context)
        cloud.set_method_handler(self._method_handler, context)
        if self._lost_handler is not None:
            cloud.set_lost_handler(self._lost_handler)

    @staticmethod
    def _close_quietly(cloud: CloudSession) -> None:
        try:
            cloud.close()
        except Exception as e:
            logger.debug("[FLEET] close after duplicate device=%s: %s", cloud.device_id, e)
