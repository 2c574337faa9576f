"""Cliente del Device Provisioning Service (API HTTPS de dispositivo).

PUT  https://{endpoint}/{idScope}/registrations/{id}/register
GET  https://{endpoint}/{idScope}/registrations/{id}/operations/{operationId}

Se hace polling mientras el estado sea `assigning`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from .sas import generate_sas_token

logger = logging.getLogger(__name__)

API_VERSION = "2021-06-01"
STATUS_ASSIGNED = "assigned"
STATUS_ASSIGNING = "assigning"


class ProvisioningServiceError(Exception):
    """Error de red o HTTP hablando con DPS."""


@dataclass(frozen=True)
class RegistrationResult:
    status: str
    assigned_hub: Optional[str] = None
    device_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_assigned(self) -> bool:
        return self.status == STATUS_ASSIGNED and bool(self.assigned_hub)


class ProvisioningClient:
    def __init__(
        self,
        endpoint: str = "global.azure-devices-provisioning.net",
        poll_interval: float = 2.0,
        max_polls: int = 15,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._endpoint = endpoint
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._timeout = timeout
        self._transport = transport

    def register(self, registration_id: str, device_key: str, id_scope: str) -> RegistrationResult:
        token, _ = generate_sas_token(
            f"{id_scope}/registrations/{registration_id}",
            device_key,
            key_name="registration",
        )
        headers = {
            "Authorization": token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        base = f"/{quote(id_scope, safe='')}/registrations/{quote(registration_id, safe='')}"

        with httpx.Client(
            base_url=f"https://{self._endpoint}",
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            body = self._call(
                client, "PUT", f"{base}/register?api-version={API_VERSION}",
                headers=headers, json={"registrationId": registration_id},
            )

            polls = 0
            while body.get("status") == STATUS_ASSIGNING and polls < self._max_polls:
                operation_id = body.get("operationId")
                if not operation_id:
                    break
                time.sleep(self._poll_interval)
                polls += 1
                body = self._call(
                    client, "GET", f"{base}/operations/{quote(operation_id, safe='')}?api-version={API_VERSION}",
                    headers=headers,
                )

        state = body.get("registrationState") or {}
        result = RegistrationResult(
            status=str(state.get("status") or body.get("status") or "unknown"),
            assigned_hub=state.get("assignedHub"),
            device_id=state.get("deviceId"),
            error_message=state.get("errorMessage"),
        )
        logger.debug(
            "[DPS] registration_id=%s status=%s hub=%s",
            registration_id, result.status, result.assigned_hub,
        )
        return result

    @staticmethod
    def _call(client: httpx.Client, method: str, url: str, **kwargs) -> dict:
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ProvisioningServiceError(
                f"{method} {url} returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProvisioningServiceError(f"{method} {url} failed: {e}") from e
