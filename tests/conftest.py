"""Fixtures compartidas de los tests del conector."""

from __future__ import annotations

import base64
from typing import Any, Dict
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from common.config import ApplicationSettings, MethodSetting, Settings
from connector.cloud.base import CloudMessage, CloudSession
from connector.correlation import CorrelationRegistry
from connector.downlink import DownlinkContext, DownlinkRouter
from connector.models import DownlinkPriority, QueueSelector
from connector.mqtt.bus import BusSession
from connector.sessions import DeviceSession, SessionManager, TenantSession
from connector.topics import subscription_topics

GROUP_KEY = base64.b64encode(b"group-enrollment-secret-key-0001").decode("ascii")
DEVICE_KEY = base64.b64encode(b"device-primary-key-for-tests-001").decode("ascii")


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        mqtt_server="broker.test",
        mqtt_port=8883,
        mqtt_client_id="connector-test",
        mqtt_tls=True,
        mqtt_reconnect_delay=5.0,
        tenant="acme",
        api_base_url="https://tts.test/api/v3",
        api_key="NNSXS.TEST",
        device_page_size=2,
        device_integration_default=False,
        integration_attribute="azure-integration",
        dps_endpoint="dps.test",
        poll_interval=0.01,
        num_workers=1,
        queue_size=10,
        correlation_max_age=3600.0,
        applications={
            "app1": ApplicationSettings(
                mqtt_access_key="NNSXS.APP1",
                azure_connection_string=f"HostName=hub.test;SharedAccessKeyName=device;SharedAccessKey={DEVICE_KEY}",
                methods={
                    "led": MethodSetting(port=10, confirmed=True, priority=DownlinkPriority.HIGH, queue=QueueSelector.REPLACE),
                },
            ),
        },
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings_factory():
    """Construye Settings con valores de test; kwargs sobrescriben campos."""
    return _settings


@pytest.fixture
def settings() -> Settings:
    return _settings()


@pytest.fixture
def cloud_session() -> MagicMock:
    """Mock de la sesión cloud de un dispositivo."""
    cloud = MagicMock(spec=CloudSession)
    cloud.device_id = "dev1"
    return cloud


@pytest.fixture
def bus() -> MagicMock:
    """Mock del BusSession de un tenant."""
    bus = MagicMock()
    bus.publish = MagicMock(return_value=1)
    bus.stats = {"connected": True}
    return bus


class OfflineClient(mqtt.Client):
    """Cliente paho real sin hilo de red: nunca llega a conectar con el broker."""

    def loop_start(self):
        return mqtt.MQTT_ERR_SUCCESS

    def loop_stop(self):
        return mqtt.MQTT_ERR_SUCCESS


@pytest.fixture
def offline_bus():
    """BusSession arrancado con un cliente paho real desconectado (ventana de reconexión)."""
    bus = BusSession(
        application_id="app1",
        username="app1@acme",
        password="NNSXS.APP1",
        topics=subscription_topics("app1@acme"),
        on_message=MagicMock(),
        broker_host="127.0.0.1",
        broker_port=1883,
        use_tls=False,
        client_factory=OfflineClient,
    )
    bus.start()
    yield bus
    bus.stop()


@pytest.fixture
def sessions(cloud_session, bus) -> SessionManager:
    """SessionManager con el tenant app1 y el dispositivo dev1 registrados."""
    manager = SessionManager()
    manager.add_tenant_session(TenantSession(application_id="app1", bus=bus))
    manager.add_device_session(DeviceSession(device_id="dev1", application_id="app1", cloud=cloud_session))
    return manager


@pytest.fixture
def correlations() -> CorrelationRegistry:
    return CorrelationRegistry()


@pytest.fixture
def downlink_router(sessions, correlations) -> DownlinkRouter:
    return DownlinkRouter(sessions, correlations)


@pytest.fixture
def downlink_context(settings) -> DownlinkContext:
    return DownlinkContext(
        application_id="app1",
        device_id="dev1",
        tenant_id="acme",
        methods=settings.applications["app1"].methods,
    )


@pytest.fixture
def make_cloud_message():
    def _make(body: str = "AQID", lock_token: str = "T1", properties: Dict[str, str] = None) -> CloudMessage:
        return CloudMessage(
            lock_token=lock_token,
            body=body.encode("utf-8"),
            message_id=f"msg-{lock_token}",
            properties=dict(properties or {}),
        )
    return _make
