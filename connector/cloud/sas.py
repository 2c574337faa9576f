"""Shared Access Signatures y derivación de claves de dispositivo."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote_plus

from ..errors import ConfigurationError

DEFAULT_TOKEN_TTL = 3600


def derive_device_key(group_key_b64: str, device_id: str) -> str:
    """Clave por dispositivo para group enrollment: base64(HMAC-SHA256(group_key, device_id))."""
    try:
        key = base64.b64decode(group_key_b64, validate=True)
    except ValueError as e:
        raise ConfigurationError(f"Group enrollment key is not valid base64: {e}") from e
    digest = hmac.new(key, device_id.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_sas_token(
    resource_uri: str,
    key_b64: str,
    key_name: Optional[str] = None,
    ttl_seconds: int = DEFAULT_TOKEN_TTL,
    now: Optional[float] = None,
) -> tuple[str, int]:
    """Genera un SAS token. Devuelve (token, expiry_epoch)."""
    expiry = int((time.time() if now is None else now) + ttl_seconds)
    encoded_uri = quote_plus(resource_uri)
    to_sign = f"{encoded_uri}\n{expiry}".encode("utf-8")
    signature = base64.b64encode(
        hmac.new(base64.b64decode(key_b64), to_sign, hashlib.sha256).digest()
    ).decode("ascii")

    token = f"SharedAccessSignature sr={encoded_uri}&sig={quote_plus(signature)}&se={expiry}"
    if key_name:
        token += f"&skn={key_name}"
    return token, expiry


@dataclass(frozen=True)
class ConnectionString:
    host_name: str
    shared_access_key: str
    shared_access_key_name: Optional[str] = None
    device_id: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "ConnectionString":
        parts = {}
        for segment in value.split(";"):
            segment = segment.strip()
            if not segment:
                continue
            name, sep, val = segment.partition("=")
            if not sep:
                raise ConfigurationError(f"Connection string segment without '=': {name}")
            parts[name.strip()] = val.strip()

        if "HostName" not in parts or "SharedAccessKey" not in parts:
            raise ConfigurationError("Connection string requires HostName and SharedAccessKey")

        return cls(
            host_name=parts["HostName"],
            shared_access_key=parts["SharedAccessKey"],
            shared_access_key_name=parts.get("SharedAccessKeyName"),
            device_id=parts.get("DeviceId"),
        )


class SasTokenProvider:
    """Cachea un SAS token y lo renueva antes de expirar."""

    def __init__(
        self,
        resource_uri: str,
        key_b64: str,
        key_name: Optional[str] = None,
        ttl_seconds: int = DEFAULT_TOKEN_TTL,
        renew_margin: int = 300,
    ):
        self._resource_uri = resource_uri
        self._key_b64 = key_b64
        self._key_name = key_name
        self._ttl = ttl_seconds
        self._renew_margin = renew_margin
        self._token: Optional[str] = None
        self._expiry = 0

    def token(self) -> str:
        if self._token is None or time.time() > self._expiry - self._renew_margin:
            self._token, self._expiry = generate_sas_token(
                self._resource_uri, self._key_b64, self._key_name, self._ttl,
            )
        return self._token
