"""Tests de carga de configuración (.env + fichero de aplicaciones)."""

import json

import pytest

from common.config import get_settings, load_applications
from connector.errors import ConfigurationError
from connector.models import DownlinkPriority, QueueSelector

ENV_KEYS = (
    "CONNECTOR_ENV_FILE",
    "CONNECTOR_APPLICATIONS_FILE",
    "TTS_MQTT_SERVER",
    "TTS_MQTT_PORT",
    "TTS_MQTT_TLS",
    "TTS_TENANT",
    "TTS_DEVICE_PAGE_SIZE",
    "TTS_DEVICE_INTEGRATION_DEFAULT",
    "CORRELATION_MAX_AGE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Aísla el entorno; también deshace lo que cargue load_dotenv."""
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)


@pytest.fixture
def applications_file(tmp_path):
    path = tmp_path / "applications.json"
    path.write_text(json.dumps({
        "app1": {
            "mqttAccessKey": "NNSXS.APP1",
            "azureConnectionString": "HostName=hub.test;SharedAccessKeyName=device;SharedAccessKey=a2V5",
            "deviceIntegrationDefault": True,
            "methods": {
                "led": {"port": 10, "confirmed": True, "priority": "high", "queue": "replace"},
            },
        },
        "app2": {
            "mqttAccessKey": "NNSXS.APP2",
            "mqttApplicationId": "app2@legacy",
            "dps": {"idScope": "0ne000", "groupEnrollmentKey": "Z3JvdXA="},
        },
    }), encoding="utf-8")
    return str(path)


class TestLoadApplications:

    def test_parses_aliases_and_methods(self, applications_file):
        apps = load_applications(applications_file)

        assert apps["app1"].mqtt_access_key == "NNSXS.APP1"
        assert apps["app1"].device_integration_default is True
        led = apps["app1"].methods["led"]
        assert led.port == 10
        assert led.priority is DownlinkPriority.HIGH
        assert led.queue is QueueSelector.REPLACE
        assert apps["app2"].dps.id_scope == "0ne000"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_applications(str(tmp_path / "nope.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_applications(str(path))

    def test_method_port_out_of_range(self, tmp_path):
        path = tmp_path / "apps.json"
        path.write_text(json.dumps({"app1": {"mqttAccessKey": "k", "methods": {"x": {"port": 300}}}}), encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_applications(str(path))


class TestGetSettings:

    def test_defaults(self, applications_file, tmp_path):
        settings = get_settings(env_file=str(tmp_path / "missing.env"), applications_file=applications_file)

        assert settings.mqtt_port == 8883
        assert settings.mqtt_tls is True
        assert settings.device_page_size == 10
        assert settings.device_integration_default is False
        assert settings.correlation_max_age == 3600.0
        assert set(settings.applications) == {"app1", "app2"}

    def test_env_file_does_not_override_environment(self, applications_file, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("TTS_TENANT=from-file\nTTS_DEVICE_PAGE_SIZE=25\n", encoding="utf-8")
        monkeypatch.setenv("TTS_TENANT", "from-env")

        settings = get_settings(env_file=str(env_file), applications_file=applications_file)

        assert settings.tenant == "from-env"
        assert settings.device_page_size == 25

    def test_mqtt_application_id(self, applications_file, tmp_path, monkeypatch):
        monkeypatch.setenv("TTS_TENANT", "acme")

        settings = get_settings(env_file=str(tmp_path / "missing.env"), applications_file=applications_file)

        assert settings.mqtt_application_id("app1") == "app1@acme"
        assert settings.mqtt_application_id("app2") == "app2@legacy"

    def test_no_applications_is_fatal(self, tmp_path):
        path = tmp_path / "apps.json"
        path.write_text("{}", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            get_settings(env_file=str(tmp_path / "missing.env"), applications_file=str(path))
