"""Tests de downlinks: construcción del comando y máquina de estados de entrega.

Escenarios:
1. Payload y propiedades → DownlinkRequest
2. ack completa el mensaje cloud
3. nack lo abandona, failed lo rechaza
4. queued solo es terminal para downlinks no confirmados
5. Errores: token desconocido, comando inválido, publish rechazado, lock expirado
6. Publish durante una reconexión: paho lo conserva y el estado posterior resuelve

Ejecutar:
    pytest tests/test_downlink.py -v
"""

import json
from typing import Any, Dict, List

import orjson
import paho.mqtt.client as mqtt
import pytest

from connector.correlation import CorrelationEntry
from connector.downlink import (
    DownlinkContext,
    DownlinkRouter,
    build_request,
    default_method_handler,
    resolve_payload,
)
from connector.errors import InvalidDownlink, MessageLockLost
from connector.models import DownlinkPriority, QueueSelector
from connector.mqtt.bus import BusPublishError
from connector.sessions import DeviceSession, SessionManager, TenantSession
from connector.topics import MessageKind


IOTHUB_PROPERTIES = {"port": "1", "confirmed": "false", "priority": "normal", "queue": "push"}


def _status_payload(kind: str, correlation_ids: List[str]) -> bytes:
    """Mensaje de estado tal como lo publica The Things Stack."""
    body: Dict[str, Any] = {
        "end_device_ids": {"device_id": "dev1", "application_ids": {"application_id": "app1"}},
        "correlation_ids": ["as:downlink:01HXYZ"],
    }
    inner = {"f_port": 1, "correlation_ids": correlation_ids}
    if kind == "failed":
        body["downlink_failed"] = {"downlink": inner, "error": {"name": "device_not_found"}}
    else:
        body[f"downlink_{kind}"] = inner
    return json.dumps(body).encode("utf-8")


# =============================================================================
# TEST 1: PAYLOAD Y PROPIEDADES
# =============================================================================

class TestResolvePayload:

    def test_plain_text_is_raw(self):
        assert resolve_payload("AQID") == ("AQID", None)

    def test_json_object_is_decoded(self):
        assert resolve_payload('{"led": "on"}') == (None, {"led": "on"})

    def test_json_array_is_decoded(self):
        assert resolve_payload("[1, 2]") == (None, [1, 2])

    def test_broken_json_is_raw(self):
        assert resolve_payload('{"led": "on"') == ('{"led": "on"', None)

    def test_json_scalar_without_method_is_raw(self):
        assert resolve_payload("42") == ("42", None)

    @pytest.mark.parametrize("text,expected", [
        ("on", {"led": "on"}),
        ("true", {"led": True}),
        ("5", {"led": 5}),
        ('{"a": 1}', {"a": 1}),
    ])
    def test_method_form_wraps_value(self, text, expected):
        assert resolve_payload(text, "led") == (None, expected)


class TestBuildRequest:

    def test_iothub_properties(self, make_cloud_message):
        request = build_request(make_cloud_message("AQID", properties=IOTHUB_PROPERTIES), {})

        assert request.port == 1
        assert request.confirmed is False
        assert request.priority is DownlinkPriority.NORMAL
        assert request.queue is QueueSelector.PUSH
        assert request.correlation_token == "az:LockToken:T1"
        assert request.payload_raw == "AQID"
        assert request.payload_decoded is None

    def test_property_names_case_insensitive(self, make_cloud_message):
        props = {"Port": "2", "Confirmed": "TRUE", "Priority": "High", "Queue": "Replace"}

        request = build_request(make_cloud_message("{}", properties=props), {})

        assert request.port == 2
        assert request.confirmed is True
        assert request.priority is DownlinkPriority.HIGH
        assert request.queue is QueueSelector.REPLACE
        assert request.payload_decoded == {}

    @pytest.mark.parametrize("override", [
        {"port": None},
        {"port": "abc"},
        {"port": "224"},
        {"confirmed": "yes"},
        {"priority": "urgent"},
        {"queue": "append"},
    ])
    def test_invalid_properties_raise(self, make_cloud_message, override):
        props = {k: v for k, v in {**IOTHUB_PROPERTIES, **override}.items() if v is not None}

        with pytest.raises(InvalidDownlink):
            build_request(make_cloud_message(properties=props), {})

    def test_method_settings(self, make_cloud_message, downlink_context):
        message = make_cloud_message("on", properties={"method-name": "led"})

        request = build_request(message, downlink_context.methods)

        assert request.port == 10
        assert request.confirmed is True
        assert request.priority is DownlinkPriority.HIGH
        assert request.queue is QueueSelector.REPLACE
        assert request.payload_decoded == {"led": "on"}

    def test_unknown_method_raises(self, make_cloud_message, downlink_context):
        with pytest.raises(InvalidDownlink):
            build_request(make_cloud_message(properties={"method-name": "buzzer"}), downlink_context.methods)

    def test_envelope_wire_format(self, make_cloud_message):
        request = build_request(make_cloud_message("AQID", properties=IOTHUB_PROPERTIES), {})

        assert request.to_envelope() == {
            "downlinks": [{
                "f_port": 1,
                "confirmed": False,
                "priority": "NORMAL",
                "correlation_ids": ["az:LockToken:T1"],
                "frm_payload": "AQID",
            }]
        }


# =============================================================================
# TEST 2-4: CICLO DE VIDA DE UN DOWNLINK
# =============================================================================

class TestDownlinkPublish:

    def test_publish_registers_token_and_envelope(
        self, downlink_router, downlink_context, make_cloud_message, bus, correlations,
    ):
        message = make_cloud_message("AQID", properties=IOTHUB_PROPERTIES)

        assert downlink_router.on_cloud_message(message, downlink_context) is True

        topic, payload = bus.publish.call_args[0]
        assert topic == "v3/app1@acme/devices/dev1/down/push"
        envelope = orjson.loads(payload)
        assert envelope["downlinks"][0]["correlation_ids"] == ["az:LockToken:T1"]
        assert "az:LockToken:T1" in correlations

    def test_method_command_published_to_replace_queue(
        self, downlink_router, downlink_context, make_cloud_message, bus,
    ):
        message = make_cloud_message("on", properties={"method-name": "led"})

        downlink_router.on_cloud_message(message, downlink_context)

        topic, payload = bus.publish.call_args[0]
        assert topic == "v3/app1@acme/devices/dev1/down/replace"
        downlink = orjson.loads(payload)["downlinks"][0]
        assert downlink["f_port"] == 10
        assert downlink["priority"] == "HIGH"
        assert downlink["decoded_payload"] == {"led": "on"}

    def test_publish_during_reconnect_keeps_correlation(
        self, offline_bus, cloud_session, correlations, downlink_context, make_cloud_message,
    ):
        sessions = SessionManager()
        sessions.add_tenant_session(TenantSession(application_id="app1", bus=offline_bus))
        sessions.add_device_session(DeviceSession(device_id="dev1", application_id="app1", cloud=cloud_session))
        router = DownlinkRouter(sessions, correlations)

        message = make_cloud_message(properties={**IOTHUB_PROPERTIES, "confirmed": "true"})
        assert router.on_cloud_message(message, downlink_context) is True

        # paho lo entrega al reconectar; el mensaje cloud sigue bloqueado
        queued = [m.topic for m in offline_bus._client._out_messages.values()]
        assert queued == ["v3/app1@acme/devices/dev1/down/push"]
        assert "az:LockToken:T1" in correlations
        cloud_session.abandon.assert_not_called()

        router.handle_status(
            MessageKind.ACK, "app1", "v3/app1@acme/devices/dev1/down/ack",
            _status_payload("ack", ["az:LockToken:T1"]),
        )

        cloud_session.complete.assert_called_once_with("T1")
        assert len(correlations) == 0


class TestDownlinkOutcomes:

    @pytest.fixture
    def published(self, downlink_router, downlink_context, make_cloud_message):
        """Publica un downlink con lock token T1 y confirmed configurable."""
        def _publish(confirmed: bool = False):
            props = {**IOTHUB_PROPERTIES, "confirmed": "true" if confirmed else "false"}
            assert downlink_router.on_cloud_message(make_cloud_message(properties=props), downlink_context)
        return _publish

    def test_ack_completes(self, downlink_router, published, cloud_session, correlations):
        published()

        downlink_router.handle_status(
            MessageKind.ACK, "app1", "v3/app1/devices/dev1/down/ack",
            _status_payload("ack", ["az:LockToken:T1"]),
        )

        cloud_session.complete.assert_called_once_with("T1")
        cloud_session.abandon.assert_not_called()
        assert len(correlations) == 0

    def test_nack_abandons(self, downlink_router, published, cloud_session, correlations):
        published(confirmed=True)

        downlink_router.handle_status(
            MessageKind.NACK, "app1", "v3/app1/devices/dev1/down/nack",
            _status_payload("nack", ["az:LockToken:T1"]),
        )

        cloud_session.abandon.assert_called_once_with("T1")
        cloud_session.complete.assert_not_called()
        assert len(correlations) == 0

    def test_failed_rejects(self, downlink_router, published, cloud_session):
        published()

        downlink_router.handle_status(
            MessageKind.FAILED, "app1", "v3/app1/devices/dev1/down/failed",
            _status_payload("failed", ["az:LockToken:T1"]),
        )

        cloud_session.reject.assert_called_once_with("T1")

    def test_queued_completes_unconfirmed(self, downlink_router, published, cloud_session, correlations):
        published(confirmed=False)

        result = downlink_router.on_status(MessageKind.QUEUED, "az:LockToken:T1")

        assert result == "resolved"
        cloud_session.complete.assert_called_once_with("T1")
        assert len(correlations) == 0

    def test_queued_keeps_confirmed_pending(self, downlink_router, published, cloud_session, correlations):
        published(confirmed=True)

        result = downlink_router.on_status(MessageKind.QUEUED, "az:LockToken:T1")

        assert result == "pending"
        cloud_session.complete.assert_not_called()
        assert "az:LockToken:T1" in correlations

        assert downlink_router.on_status(MessageKind.ACK, "az:LockToken:T1") == "resolved"
        cloud_session.complete.assert_called_once_with("T1")

    def test_second_status_is_unknown(self, downlink_router, published, cloud_session):
        published()

        assert downlink_router.on_status(MessageKind.ACK, "az:LockToken:T1") == "resolved"
        assert downlink_router.on_status(MessageKind.NACK, "az:LockToken:T1") == "unknown"
        cloud_session.abandon.assert_not_called()

    def test_lock_lost_counts_as_resolved_entry(self, downlink_router, published, cloud_session, correlations):
        published()
        cloud_session.complete.side_effect = MessageLockLost("dev1", "expired", 412)

        assert downlink_router.on_status(MessageKind.ACK, "az:LockToken:T1") == "lock_lost"
        assert len(correlations) == 0

    def test_non_status_kind_rejected(self, downlink_router):
        with pytest.raises(ValueError):
            downlink_router.on_status(MessageKind.UPLINK, "az:LockToken:T1")


# =============================================================================
# TEST 5: ERRORES
# =============================================================================

class TestDownlinkErrors:

    def test_unknown_token_no_cloud_call(self, downlink_router, cloud_session):
        downlink_router.handle_status(
            MessageKind.ACK, "app1", "v3/app1/devices/dev1/down/ack",
            _status_payload("ack", ["az:LockToken:NEVER"]),
        )

        cloud_session.complete.assert_not_called()
        cloud_session.abandon.assert_not_called()
        cloud_session.reject.assert_not_called()

    def test_status_without_lock_token_ignored(self, downlink_router, cloud_session):
        downlink_router.handle_status(
            MessageKind.ACK, "app1", "v3/app1/devices/dev1/down/ack",
            _status_payload("ack", ["as:downlink:01H"]),
        )

        cloud_session.complete.assert_not_called()

    def test_malformed_status_does_not_raise(self, downlink_router, cloud_session):
        downlink_router.handle_status(MessageKind.ACK, "app1", "v3/app1/devices/dev1/down/ack", b"{not json")
        downlink_router.handle_status(MessageKind.ACK, "app1", "v3/app1/devices/dev1/down/ack", b'{"x": 1}')

        cloud_session.complete.assert_not_called()

    def test_invalid_command_rejected(self, downlink_router, downlink_context, make_cloud_message, cloud_session, bus):
        message = make_cloud_message(properties={"port": "999", "confirmed": "false", "priority": "normal", "queue": "push"})

        assert downlink_router.on_cloud_message(message, downlink_context) is False

        cloud_session.reject.assert_called_once_with("T1")
        bus.publish.assert_not_called()

    def test_publish_not_stored_discards_and_abandons(
        self, downlink_router, downlink_context, make_cloud_message, cloud_session, bus, correlations,
    ):
        bus.publish.side_effect = BusPublishError("v3/app1@acme/devices/dev1/down/push", mqtt.MQTT_ERR_QUEUE_SIZE)

        assert downlink_router.on_cloud_message(
            make_cloud_message(properties=IOTHUB_PROPERTIES), downlink_context,
        ) is False

        cloud_session.abandon.assert_called_once_with("T1")
        assert len(correlations) == 0

    def test_duplicate_token_drops_message(
        self, downlink_router, downlink_context, make_cloud_message, bus, correlations,
    ):
        correlations.register(CorrelationEntry(
            token="az:LockToken:T1", tenant_id="app1", device_id="dev1", lock_token="T1",
        ))

        assert downlink_router.on_cloud_message(
            make_cloud_message(properties=IOTHUB_PROPERTIES), downlink_context,
        ) is False
        bus.publish.assert_not_called()

    def test_unknown_tenant_abandons(self, downlink_router, make_cloud_message, cloud_session, bus):
        context = DownlinkContext(application_id="other-app", device_id="dev1", tenant_id="acme")

        assert downlink_router.on_cloud_message(make_cloud_message(properties=IOTHUB_PROPERTIES), context) is False

        cloud_session.abandon.assert_called_once_with("T1")
        bus.publish.assert_not_called()

    def test_unknown_device_ignored(self, downlink_router, make_cloud_message, bus):
        context = DownlinkContext(application_id="app1", device_id="ghost", tenant_id="acme")

        assert downlink_router.on_cloud_message(make_cloud_message(properties=IOTHUB_PROPERTIES), context) is False
        bus.publish.assert_not_called()


class TestDirectMethods:

    def test_default_handler_returns_404(self):
        assert default_method_handler("reboot", {}, None).status == 404
