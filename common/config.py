from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from connector.errors import ConfigurationError
from connector.models import DownlinkPriority, QueueSelector


def _default_env_file() -> str:
    # .env next to the working directory, same as a docker-compose deployment.
    return str(Path.cwd() / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


class MethodSetting(BaseModel):
    """Downlink por nombre de método (IoT Central commands)."""

    port: int = Field(..., ge=0, le=223)
    confirmed: bool = False
    priority: DownlinkPriority = DownlinkPriority.NORMAL
    queue: QueueSelector = QueueSelector.PUSH


class DpsSettings(BaseModel):
    id_scope: str = Field(..., alias="idScope")
    group_enrollment_key: str = Field(..., alias="groupEnrollmentKey")

    model_config = {"populate_by_name": True}


class ApplicationSettings(BaseModel):
    """Configuración de una aplicación (tenant) de The Things Stack.

    Formato JSON esperado (una entrada por applicationId):
    {
        "my-app": {
            "mqttAccessKey": "NNSXS....",
            "azureConnectionString": "HostName=...;SharedAccessKeyName=...;SharedAccessKey=...",
            "dps": {"idScope": "0ne00...", "groupEnrollmentKey": "base64..."},
            "deviceIntegrationDefault": true,
            "methods": {"led": {"port": 10, "confirmed": true, "priority": "normal", "queue": "push"}}
        }
    }
    """

    mqtt_access_key: str = Field(..., alias="mqttAccessKey")
    mqtt_application_id: Optional[str] = Field(default=None, alias="mqttApplicationId")
    azure_connection_string: Optional[str] = Field(default=None, alias="azureConnectionString")
    dps: Optional[DpsSettings] = None
    device_integration_default: Optional[bool] = Field(default=None, alias="deviceIntegrationDefault")
    methods: dict[str, MethodSetting] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


@dataclass(frozen=True)
class Settings:
    mqtt_server: str
    mqtt_port: int
    mqtt_client_id: str
    mqtt_tls: bool
    mqtt_reconnect_delay: float

    tenant: str
    api_base_url: str
    api_key: str
    device_page_size: int
    device_integration_default: bool
    integration_attribute: str

    dps_endpoint: str
    poll_interval: float
    num_workers: int
    queue_size: int
    correlation_max_age: float

    applications: dict[str, ApplicationSettings] = field(default_factory=dict)

    def mqtt_application_id(self, application_id: str) -> str:
        """Usuario MQTT / prefijo de topic: `<app>@<tenant>` en despliegues multi-tenant."""
        app = self.applications.get(application_id)
        if app is not None and app.mqtt_application_id:
            return app.mqtt_application_id
        if self.tenant:
            return f"{application_id}@{self.tenant}"
        return application_id


def load_applications(path: str) -> dict[str, ApplicationSettings]:
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Applications file not found: {path}")

    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError(f"Applications file is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("Applications file must contain an object keyed by applicationId")

    applications = {}
    for application_id, data in raw.items():
        try:
            applications[application_id] = ApplicationSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Application {application_id} settings invalid: {e}") from e
    return applications


def get_settings(env_file: Optional[str] = None, applications_file: Optional[str] = None) -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = env_file or os.getenv("CONNECTOR_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    applications_file = applications_file or os.getenv("CONNECTOR_APPLICATIONS_FILE", "applications.json")
    applications = load_applications(applications_file)
    if not applications:
        raise ConfigurationError("No TTS applications configured")

    return Settings(
        mqtt_server=os.getenv("TTS_MQTT_SERVER", "eu1.cloud.thethings.industries"),
        mqtt_port=int(os.getenv("TTS_MQTT_PORT", "8883")),
        mqtt_client_id=os.getenv("TTS_MQTT_CLIENT_ID", "lorawan-connector"),
        mqtt_tls=_env_bool("TTS_MQTT_TLS", True),
        mqtt_reconnect_delay=float(os.getenv("TTS_MQTT_RECONNECT_DELAY", "5")),
        tenant=os.getenv("TTS_TENANT", ""),
        api_base_url=os.getenv("TTS_API_BASE_URL", "https://eu1.cloud.thethings.industries/api/v3"),
        api_key=os.getenv("TTS_API_KEY", ""),
        device_page_size=int(os.getenv("TTS_DEVICE_PAGE_SIZE", "10")),
        device_integration_default=_env_bool("TTS_DEVICE_INTEGRATION_DEFAULT", False),
        integration_attribute=os.getenv("TTS_INTEGRATION_ATTRIBUTE", "azure-integration"),
        dps_endpoint=os.getenv("AZURE_DPS_ENDPOINT", "global.azure-devices-provisioning.net"),
        poll_interval=float(os.getenv("AZURE_POLL_INTERVAL", "10")),
        num_workers=int(os.getenv("CONNECTOR_NUM_WORKERS", "4")),
        queue_size=int(os.getenv("CONNECTOR_QUEUE_SIZE", "1000")),
        correlation_max_age=float(os.getenv("CORRELATION_MAX_AGE", "3600")),
        applications=applications,
    )
