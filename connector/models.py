"""Modelos de mensajes del bus (The Things Stack v3) y del dominio de downlinks.

Los payloads MQTT se validan con pydantic; campos desconocidos se ignoran
para tolerar versiones nuevas del network server.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def trim_timestamp(value: Any) -> Any:
    """The Things Stack publica nanosegundos; pydantic acepta hasta microsegundos."""
    if isinstance(value, str):
        return _FRACTION_RE.sub(r"\1", value, count=1)
    return value


def parse_bool(value: Any) -> Optional[bool]:
    """`true`/`false` sin distinguir mayúsculas; cualquier otro valor es None."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    return None


class DownlinkPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def wire_value(self) -> str:
        """Valor del enum de prioridad en la API de The Things Stack."""
        return self.value.upper()

    @classmethod
    def parse(cls, value: Any) -> Optional["DownlinkPriority"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class QueueSelector(str, Enum):
    PUSH = "push"
    REPLACE = "replace"

    @classmethod
    def parse(cls, value: Any) -> Optional["QueueSelector"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class ApplicationIds(BaseModel):
    application_id: str


class EndDeviceIds(BaseModel):
    device_id: str
    application_ids: ApplicationIds
    dev_eui: Optional[str] = None

    @property
    def application_id(self) -> str:
        return self.application_ids.application_id


class DeviceRecord(BaseModel):
    """Dispositivo tal como lo devuelve el registro (solo lectura)."""

    device_id: str
    application_id: str
    attributes: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_registry(cls, item: dict[str, Any]) -> "DeviceRecord":
        ids = EndDeviceIds.model_validate(item["ids"])
        return cls(
            device_id=ids.device_id,
            application_id=ids.application_id,
            attributes=item.get("attributes") or {},
        )


class UplinkData(BaseModel):
    f_port: Optional[int] = None
    frm_payload: Optional[str] = None
    decoded_payload: Optional[dict[str, Any]] = None
    received_at: Optional[datetime] = None

    @field_validator("received_at", mode="before")
    @classmethod
    def validate_received_at(cls, v):
        return trim_timestamp(v)


class UplinkMessage(BaseModel):
    """Mensaje del topic `.../devices/{id}/up`."""

    end_device_ids: EndDeviceIds
    uplink_message: UplinkData
    received_at: Optional[datetime] = None
    simulated: bool = False

    @field_validator("received_at", mode="before")
    @classmethod
    def validate_received_at(cls, v):
        return trim_timestamp(v)

    @property
    def device_id(self) -> str:
        return self.end_device_ids.device_id

    @property
    def application_id(self) -> str:
        return self.end_device_ids.application_id

    @property
    def port(self) -> Optional[int]:
        return self.uplink_message.f_port

    @property
    def received_at_utc(self) -> datetime:
        ts = self.uplink_message.received_at or self.received_at
        if ts is None:
            return datetime.now(timezone.utc)
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)


class DownlinkStatusMessage(BaseModel):
    """Mensaje de los topics `.../down/{queued|ack|nack|failed}`."""

    end_device_ids: EndDeviceIds
    correlation_ids: list[str] = Field(default_factory=list)
    downlink_queued: Optional[dict[str, Any]] = None
    downlink_ack: Optional[dict[str, Any]] = None
    downlink_nack: Optional[dict[str, Any]] = None
    downlink_failed: Optional[dict[str, Any]] = None

    @property
    def device_id(self) -> str:
        return self.end_device_ids.device_id

    @property
    def application_id(self) -> str:
        return self.end_device_ids.application_id

    @property
    def all_correlation_ids(self) -> list[str]:
        ids = list(self.correlation_ids)
        for body in (self.downlink_queued, self.downlink_ack, self.downlink_nack):
            if body:
                ids.extend(body.get("correlation_ids") or [])
        if self.downlink_failed:
            downlink = self.downlink_failed.get("downlink") or {}
            ids.extend(downlink.get("correlation_ids") or [])
        return ids


class DownlinkRequest(BaseModel):
    """Downlink listo para publicar. Inmutable una vez construido."""

    port: int = Field(..., ge=0, le=223)
    confirmed: bool
    priority: DownlinkPriority
    queue: QueueSelector
    correlation_token: str
    payload_raw: Optional[str] = None
    payload_decoded: Optional[Any] = None

    model_config = {"frozen": True}

    @field_validator("correlation_token")
    @classmethod
    def validate_token(cls, v):
        if not v or not v.strip():
            raise ValueError("correlation_token is required")
        return v

    @model_validator(mode="after")
    def validate_payload(self):
        if (self.payload_raw is None) == (self.payload_decoded is None):
            raise ValueError("exactly one of payload_raw/payload_decoded is required")
        return self

    def to_downlink(self) -> dict[str, Any]:
        downlink: dict[str, Any] = {
            "f_port": self.port,
            "confirmed": self.confirmed,
            "priority": self.priority.wire_value,
            "correlation_ids": [self.correlation_token],
        }
        if self.payload_decoded is not None:
            downlink["decoded_payload"] = self.payload_decoded
        else:
            downlink["frm_payload"] = self.payload_raw
        return downlink

    def to_envelope(self) -> dict[str, Any]:
        return {"downlinks": [self.to_downlink()]}


class MethodResponse(BaseModel):
    status: int
    payload: Optional[dict[str, Any]] = None
