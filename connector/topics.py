"""Topics MQTT de The Things Stack v3.

Uplink:   v3/{app}/devices/+/up
Estados:  v3/{app}/devices/+/down/{queued|ack|nack|failed}
Downlink: v3/{app}@{tenant}/devices/{device}/down/{push|replace}

El tipo de mensaje se decide una sola vez al recibirlo (`classify`).
"""

from __future__ import annotations

from enum import Enum

from .models import QueueSelector

TOPIC_PREFIX = "v3"


class MessageKind(str, Enum):
    UPLINK = "up"
    QUEUED = "queued"
    ACK = "ack"
    NACK = "nack"
    FAILED = "failed"
    UNRECOGNIZED = "unrecognized"


STATUS_KINDS = (MessageKind.QUEUED, MessageKind.ACK, MessageKind.NACK, MessageKind.FAILED)


def uplink_topic(mqtt_application_id: str) -> str:
    return f"{TOPIC_PREFIX}/{mqtt_application_id}/devices/+/up"


def status_topic(mqtt_application_id: str, kind: MessageKind) -> str:
    return f"{TOPIC_PREFIX}/{mqtt_application_id}/devices/+/down/{kind.value}"


def subscription_topics(mqtt_application_id: str) -> tuple[str, ...]:
    return (uplink_topic(mqtt_application_id),) + tuple(
        status_topic(mqtt_application_id, kind) for kind in STATUS_KINDS
    )


def downlink_topic(application_id: str, tenant_id: str, device_id: str, queue: QueueSelector) -> str:
    if tenant_id:
        scope = f"{application_id}@{tenant_id}"
    else:
        scope = application_id
    return f"{TOPIC_PREFIX}/{scope}/devices/{device_id}/down/{queue.value}"


def classify(topic: str) -> MessageKind:
    parts = topic.split("/")
    if len(parts) < 5 or parts[0] != TOPIC_PREFIX or parts[2] != "devices":
        return MessageKind.UNRECOGNIZED

    tail = [p.lower() for p in parts[4:]]
    if tail == ["up"]:
        return MessageKind.UPLINK
    if len(tail) == 2 and tail[0] == "down":
        for kind in STATUS_KINDS:
            if tail[1] == kind.value:
                return kind
    return MessageKind.UNRECOGNIZED


