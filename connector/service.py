"""Orquestación del conector.

Arranque:
  1. Un BusSession por aplicación configurada (suscripciones uplink + estados)
  2. Dispatcher (pool de workers)
  3. Sincronización de flotas en paralelo (una tarea por aplicación)
  4. Hilo de mantenimiento que purga correlaciones huérfanas

Parada: mantenimiento → sesiones (dispositivos, luego buses) → dispatcher.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from common.config import Settings

from .cloud.base import CloudMessage
from .correlation import CorrelationRegistry
from .device_registry import DeviceRegistryClient
from .dispatcher import Dispatcher
from .downlink import DownlinkContext, DownlinkRouter, default_method_handler
from .errors import ConfigurationError, DuplicateKey
from .fleet import FleetSynchronizer, FleetSyncResult
from .metrics import DEVICE_SESSIONS, PENDING_CORRELATIONS
from .mqtt.bus import BusSession
from .provisioner import DeviceProvisioner
from .sessions import SessionManager, TenantSession
from .topics import STATUS_KINDS, MessageKind, classify, subscription_topics
from .uplink import UplinkRouter

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL = 60.0

BusFactory = Callable[..., BusSession]


class Connector:
    """Proceso completo: buses por tenant, sesiones cloud por dispositivo y routers."""

    def __init__(
        self,
        settings: Settings,
        sessions: Optional[SessionManager] = None,
        correlations: Optional[CorrelationRegistry] = None,
        registry: Optional[DeviceRegistryClient] = None,
        provisioner: Optional[DeviceProvisioner] = None,
        dispatcher: Optional[Dispatcher] = None,
        bus_factory: Optional[BusFactory] = None,
        housekeeping_interval: float = HOUSEKEEPING_INTERVAL,
    ):
        self._settings = settings
        self.sessions = sessions or SessionManager()
        self.correlations = correlations or CorrelationRegistry()
        self._registry = registry or DeviceRegistryClient(settings.api_base_url, settings.api_key)
        self._provisioner = provisioner or DeviceProvisioner(settings)
        self._dispatcher = dispatcher or Dispatcher(
            max_queue_size=settings.queue_size,
            num_workers=settings.num_workers,
        )
        self._bus_factory = bus_factory or BusSession
        self._housekeeping_interval = housekeeping_interval

        self.uplink = UplinkRouter(self.sessions)
        self.downlink = DownlinkRouter(self.sessions, self.correlations)
        self.fleet = FleetSynchronizer(
            settings,
            self._registry,
            self._provisioner,
            self.sessions,
            receive_handler=self.on_cloud_message,
            method_handler=default_method_handler,
            lost_handler=self.on_session_lost,
            should_stop=self._stop_event_is_set,
        )

        self._stop_event = threading.Event()
        self._housekeeping: Optional[threading.Thread] = None
        self._running = False
        self._started_at: float = 0
        self._last_sync: dict[str, FleetSyncResult] = {}

    def _stop_event_is_set(self) -> bool:
        return self._stop_event.is_set()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Arranca buses, workers y sincroniza las flotas.

        Raises:
            ConfigurationError si no hay aplicaciones configuradas.
        """
        if self._running:
            return
        if not self._settings.applications:
            raise ConfigurationError("No TTS applications configured")
        if self._stop_event.is_set():
            logger.info("[CONNECTOR] Stop requested before start, not starting")
            return

        self._dispatcher.start()

        for application_id in self._settings.applications:
            self._start_tenant(application_id)

        self._running = True
        self._started_at = time.time()

        self.sync_fleets()

        self._housekeeping = threading.Thread(
            target=self._housekeeping_loop,
            daemon=True,
            name="connector-housekeeping",
        )
        self._housekeeping.start()
        logger.info("[CONNECTOR] Started %s", self.stats())

    def _start_tenant(self, application_id: str) -> None:
        application = self._settings.applications[application_id]
        mqtt_application_id = self._settings.mqtt_application_id(application_id)
        topics = subscription_topics(mqtt_application_id)

        bus = self._bus_factory(
            application_id=application_id,
            username=mqtt_application_id,
            password=application.mqtt_access_key,
            topics=topics,
            on_message=self.on_bus_message,
            broker_host=self._settings.mqtt_server,
            broker_port=self._settings.mqtt_port,
            client_id=self._settings.mqtt_client_id,
            use_tls=self._settings.mqtt_tls,
            reconnect_delay=self._settings.mqtt_reconnect_delay,
        )
        try:
            self.sessions.add_tenant_session(TenantSession(application_id=application_id, bus=bus, topics=topics))
        except DuplicateKey as e:
            logger.error("[CONNECTOR] %s, skipped", e)
            return
        bus.start()

    def sync_fleets(self) -> dict[str, FleetSyncResult]:
        """Sincroniza todas las aplicaciones en paralelo. Un fallo no afecta a las demás."""
        application_ids = self.sessions.tenant_ids()
        if not application_ids:
            return {}

        results: dict[str, FleetSyncResult] = {}
        with ThreadPoolExecutor(max_workers=len(application_ids), thread_name_prefix="fleet-sync") as pool:
            futures = {app_id: pool.submit(self.fleet.sync_fleet, app_id) for app_id in application_ids}
            for app_id, future in futures.items():
                try:
                    results[app_id] = future.result()
                except Exception as e:
                    logger.exception("[CONNECTOR] Fleet sync crashed application=%s: %s", app_id, e)
                    results[app_id] = FleetSyncResult(application_id=app_id, aborted=True)

        self._last_sync = results
        DEVICE_SESSIONS.set(self.sessions.device_count)
        return results

    def request_stop(self) -> None:
        """Pide la parada sin bloquear (seguro desde un signal handler).

        Interrumpe la sincronización de flotas entre dispositivos; `stop()` hace
        el cierre ordenado después.
        """
        if not self._stop_event.is_set():
            logger.info("[CONNECTOR] Stop requested")
        self._stop_event.set()

    def stop(self, timeout: float = 10.0) -> int:
        """Parada ordenada. Devuelve el número de cierres de sesión fallidos."""
        self._stop_event.set()
        if self._housekeeping is not None:
            self._housekeeping.join(timeout=timeout)
            self._housekeeping = None

        failures = self.sessions.close_all()
        self._dispatcher.stop(drain=True, timeout=timeout)
        self._registry.close()
        DEVICE_SESSIONS.set(0)

        self._running = False
        logger.info("[CONNECTOR] Stopped close_failures=%d %s", failures, self.correlations.stats)
        return failures

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Bloquea hasta `request_stop()`/`stop()` (o timeout)."""
        return self._stop_event.wait(timeout)

    # -- entradas ------------------------------------------------------------

    def on_bus_message(self, application_id: str, topic: str, payload: bytes) -> None:
        """Callback de paho: clasifica una sola vez y delega al dispatcher."""
        kind = classify(topic)
        if kind is MessageKind.UPLINK:
            self._dispatcher.submit(
                self.uplink.handle_message, application_id, topic, payload,
                label="uplink", origin=application_id,
            )
        elif kind in STATUS_KINDS:
            self._dispatcher.submit(
                self.downlink.handle_status, kind, application_id, topic, payload,
                label=kind.value, origin=application_id,
            )
        else:
            logger.warning("[CONNECTOR] Unrecognized topic application=%s topic=%s", application_id, topic)

    def on_cloud_message(self, message: CloudMessage, context: DownlinkContext) -> None:
        """Receive handler de cada sesión cloud (hilo de polling)."""
        self._dispatcher.submit(
            self.downlink.on_cloud_message, message, context,
            label="c2d", origin=context.device_id,
        )

    def on_session_lost(self, device_id: str, error: Exception) -> None:
        """La sesión cloud de un dispositivo quedó inutilizable (hilo de polling).

        El cierre se hace en un worker: cerrar desde el propio hilo de polling
        no puede esperar a ese hilo.
        """
        logger.error("[CONNECTOR] Cloud session lost device=%s: %s", device_id, error)
        self._dispatcher.submit(self.drop_device, device_id, label="session_lost", origin=device_id)

    def drop_device(self, device_id: str) -> bool:
        """Saca el dispositivo del gestor de sesiones y cierra su sesión cloud."""
        session = self.sessions.remove_device_session(device_id)
        if session is None:
            return False
        try:
            session.cloud.close()
        except Exception as e:
            logger.warning("[CONNECTOR] Close failed device=%s: %s", device_id, e)
        DEVICE_SESSIONS.set(self.sessions.device_count)
        logger.info("[CONNECTOR] Device removed device=%s application=%s", device_id, session.application_id)
        return True

    # -- mantenimiento -------------------------------------------------------

    def _housekeeping_loop(self) -> None:
        while not self._stop_event.wait(self._housekeeping_interval):
            self.purge_correlations()

    def purge_correlations(self, now: Optional[float] = None) -> int:
        purged = self.correlations.purge_older_than(self._settings.correlation_max_age, now=now)
        PENDING_CORRELATIONS.set(len(self.correlations))
        return purged

    # -- estado --------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "uptime_seconds": time.time() - self._started_at if self._started_at else 0,
            "sessions": self.sessions.stats,
            "correlations": self.correlations.stats,
            "dispatcher": self._dispatcher.metrics,
            "fleet": {app_id: str(result) for app_id, result in self._last_sync.items()},
        }
