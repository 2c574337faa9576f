"""Cliente del End Device Registry de The Things Stack (API HTTP v3)."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

import httpx

from .errors import RegistryError
from .models import DeviceRecord
from .resilience import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)

DEFAULT_FIELD_MASK = ("attributes",)


class _TransientRegistryError(Exception):
    """5xx o error de red; se reintenta."""


class DeviceRegistryClient:
    def __init__(
        self,
        api_base_url: str,
        api_key: str,
        timeout: float = 30.0,
        retry: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=api_base_url.rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            transport=transport,
        )
        # Solo 5xx y errores de red se reintentan; un 4xx falla a la primera
        config = retry or RetryConfig.from_env()
        self._retry = RetryExecutor(replace(config, retryable_exceptions=(_TransientRegistryError,)))

    def list(
        self,
        application_id: str,
        field_mask: Sequence[str] = DEFAULT_FIELD_MASK,
        page: int = 1,
        page_size: int = 10,
    ) -> list[DeviceRecord]:
        """Una página de dispositivos; lista vacía en la última página.

        Raises:
            RegistryError si la llamada falla tras los reintentos.
        """
        try:
            body = self._retry.execute(self._fetch_page, application_id, field_mask, page, page_size)
        except _TransientRegistryError as e:
            raise RegistryError(application_id, str(e)) from e

        # Sin dispositivos el registro omite `end_devices`
        items = body.get("end_devices") or []
        records = []
        for item in items:
            try:
                records.append(DeviceRecord.from_registry(item))
            except (KeyError, ValueError) as e:
                logger.warning("[REGISTRY] Skipping malformed device application=%s: %s", application_id, e)
        return records

    def close(self) -> None:
        self._client.close()

    def _fetch_page(self, application_id: str, field_mask: Sequence[str], page: int, page_size: int) -> dict:
        try:
            response = self._client.get(
                f"/applications/{application_id}/devices",
                params={"field_mask": ",".join(field_mask), "page": page, "limit": page_size},
            )
        except httpx.HTTPError as e:
            raise _TransientRegistryError(f"page {page} request failed: {e}") from e

        if response.status_code >= 500:
            raise _TransientRegistryError(f"page {page} returned {response.status_code}")
        if response.status_code >= 400:
            raise RegistryError(application_id, f"page {page} returned {response.status_code}", response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise RegistryError(application_id, f"page {page} body is not JSON: {e}") from e
