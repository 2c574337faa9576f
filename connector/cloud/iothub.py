"""Sesión de dispositivo contra Azure IoT Hub (device HTTPS API).

- Telemetría: POST /devices/{id}/messages/events
- Cloud-to-device: GET /devices/{id}/messages/deviceBound (ETag = lock token)
- Complete: DELETE .../deviceBound/{etag}
- Reject:   DELETE .../deviceBound/{etag}?reject
- Abandon:  POST   .../deviceBound/{etag}/abandon

Un lock expirado responde 412 (o 404 si el mensaje ya no existe) y se
traduce en MessageLockLost.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ..errors import CloudSessionError, MessageLockLost
from ..models import MethodResponse
from .base import CloudMessage, CloudSession, MethodHandler, ReceiveHandler, SessionLostHandler
from .sas import SasTokenProvider

logger = logging.getLogger(__name__)

API_VERSION = "2020-03-13"
APP_PROPERTY_PREFIX = "iothub-app-"
LOCK_LOST_STATUS = (404, 412)
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_TIMEOUT = 30.0
# Estados que no se arreglan reintentando: credenciales revocadas o dispositivo borrado
UNRECOVERABLE_STATUS = (401, 403, 404)
MAX_UNRECOVERABLE_FAILURES = 3


class IoTHubDeviceSession(CloudSession):
    """CloudSession sobre la API HTTPS de dispositivo de IoT Hub.

    El receive es por polling: un hilo daemon por dispositivo, para que un
    dispositivo lento no frene al resto. El hilo solo entrega el mensaje al
    handler (que lo encola en el dispatcher) y vuelve a consultar.
    """

    def __init__(
        self,
        host_name: str,
        device_id: str,
        key_b64: str,
        key_name: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        max_unrecoverable_failures: int = MAX_UNRECOVERABLE_FAILURES,
    ):
        self.host_name = host_name
        self.device_id = device_id
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._max_unrecoverable_failures = max_unrecoverable_failures
        self._transport = transport
        self._tokens = SasTokenProvider(
            resource_uri=f"{host_name}/devices/{device_id}",
            key_b64=key_b64,
            key_name=key_name,
        )

        self._client: Optional[httpx.Client] = None
        self._receive_handler: Optional[ReceiveHandler] = None
        self._receive_context: Any = None
        self._method_handler: Optional[MethodHandler] = None
        self._method_context: Any = None
        self._lost_handler: Optional[SessionLostHandler] = None
        self._pending: Optional[CloudMessage] = None
        self._pending_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    # -- lifecycle -----------------------------------------------------------

    def open(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.Client(
            base_url=f"https://{self.host_name}",
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            # Receive inicial: credenciales inválidas o dispositivo inexistente fallan aquí.
            # La API de dispositivo no tiene un GET sin lock: si hay un mensaje
            # pendiente queda bloqueado y cuenta como un intento de entrega
            # (MaxDeliveryCount), así que se guarda para el poller en vez de abandonarlo.
            self._pending = self.receive()
        except CloudSessionError:
            self._client.close()
            self._client = None
            raise

        self._stop_event.clear()
        if self._receive_handler is not None:
            self._start_polling()
        logger.debug("[IOTHUB] Session open device=%s host=%s", self.device_id, self.host_name)

    def close(self) -> None:
        self._stop_event.set()
        if self._poll_thread is not None:
            if self._poll_thread is not threading.current_thread():
                self._poll_thread.join(timeout=self._timeout)
            self._poll_thread = None
        pending = self._take_pending()
        if pending is not None and self._client is not None:
            # Nunca llegó a un handler: se devuelve a la cola para otra sesión
            try:
                self.abandon(pending.lock_token)
            except CloudSessionError as e:
                logger.warning("[IOTHUB] Abandon on close failed device=%s: %s", self.device_id, e)
        if self._client is not None:
            self._client.close()
            self._client = None
        logger.debug("[IOTHUB] Session closed device=%s", self.device_id)

    @property
    def is_open(self) -> bool:
        return self._client is not None

    # -- handlers ------------------------------------------------------------

    def set_receive_handler(self, handler: ReceiveHandler, context: Any) -> None:
        self._receive_handler = handler
        self._receive_context = context
        if self._client is not None:
            self._start_polling()

    def set_method_handler(self, handler: MethodHandler, context: Any) -> None:
        self._method_handler = handler
        self._method_context = context

    def set_lost_handler(self, handler: SessionLostHandler) -> None:
        self._lost_handler = handler

    def handle_method(self, name: str, payload: Any) -> MethodResponse:
        """Despacha una invocación de método directo al handler registrado.

        Sobre HTTPS el hub nunca entrega métodos directos; queda como punto de
        entrada para un transporte que sí los reciba.
        """
        if self._method_handler is None:
            return MethodResponse(status=404)
        return self._method_handler(name, payload, self._method_context)

    # -- device-to-cloud -----------------------------------------------------

    def send_event(self, body: bytes, properties: dict[str, str]) -> None:
        headers = {
            "Content-Type": "application/json",
            "iothub-contenttype": "application/json",
            "iothub-contentencoding": "utf-8",
        }
        for name, value in properties.items():
            if name.startswith("iothub-"):
                headers[name] = str(value)
            else:
                headers[f"{APP_PROPERTY_PREFIX}{name}"] = str(value)

        self._request("POST", f"{self._device_path}/messages/events", content=body, headers=headers)

    # -- cloud-to-device -----------------------------------------------------

    def receive(self) -> Optional[CloudMessage]:
        response = self._request("GET", f"{self._device_path}/messages/deviceBound")
        if response.status_code == 204 or not response.headers.get("etag"):
            return None

        properties = {
            name[len(APP_PROPERTY_PREFIX):]: value
            for name, value in response.headers.items()
            if name.lower().startswith(APP_PROPERTY_PREFIX)
        }
        return CloudMessage(
            lock_token=response.headers["etag"].strip('"'),
            body=response.content,
            message_id=response.headers.get("iothub-messageid"),
            properties=properties,
        )

    def complete(self, lock_token: str) -> None:
        self._settle("DELETE", self._bound_path(lock_token), lock_token)

    def reject(self, lock_token: str) -> None:
        self._settle("DELETE", self._bound_path(lock_token), lock_token, reject=True)

    def abandon(self, lock_token: str) -> None:
        self._settle("POST", f"{self._bound_path(lock_token)}/abandon", lock_token)

    # -- internals -----------------------------------------------------------

    @property
    def _device_path(self) -> str:
        return f"/devices/{quote(self.device_id, safe='')}"

    def _bound_path(self, lock_token: str) -> str:
        return f"{self._device_path}/messages/deviceBound/{quote(lock_token, safe='')}"

    def _settle(self, method: str, path: str, lock_token: str, reject: bool = False) -> None:
        try:
            self._request(method, path, reject=reject)
        except CloudSessionError as e:
            if e.status_code in LOCK_LOST_STATUS:
                raise MessageLockLost(self.device_id, f"lock token {lock_token} expired", e.status_code) from e
            raise

    def _request(self, method: str, path: str, reject: bool = False, **kwargs) -> httpx.Response:
        if self._client is None:
            raise CloudSessionError(self.device_id, "session not open")

        # `reject` va sin valor: ?reject&api-version=...
        query = f"?reject&api-version={API_VERSION}" if reject else f"?api-version={API_VERSION}"
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = self._tokens.token()

        try:
            response = self._client.request(method, path + query, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise CloudSessionError(self.device_id, f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise CloudSessionError(
                self.device_id,
                f"{method} {path} returned {response.status_code}",
                response.status_code,
            )
        return response

    def _start_polling(self) -> None:
        if self._poll_thread is not None and self._poll_thread.is_alive():
            return
        self._poll_thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name=f"c2d-poll-{self.device_id}",
        )
        self._poll_thread.start()

    def _take_pending(self) -> Optional[CloudMessage]:
        with self._pending_lock:
            pending, self._pending = self._pending, None
        return pending

    def _poll_loop(self) -> None:
        unrecoverable = 0
        while not self._stop_event.is_set():
            message = self._take_pending()
            if message is None:
                try:
                    message = self.receive()
                except CloudSessionError as e:
                    if e.status_code in UNRECOVERABLE_STATUS:
                        unrecoverable += 1
                    else:
                        unrecoverable = 0
                    if unrecoverable >= self._max_unrecoverable_failures:
                        self._session_lost(e)
                        return
                    logger.warning("[IOTHUB] Receive failed device=%s: %s", self.device_id, e)
                    self._stop_event.wait(self._poll_interval)
                    continue
                unrecoverable = 0

            if message is None:
                self._stop_event.wait(self._poll_interval)
                continue

            try:
                self._receive_handler(message, self._receive_context)
            except Exception as e:
                logger.exception(
                    "[IOTHUB] Receive handler error device=%s lock_token=%s: %s",
                    self.device_id, message.lock_token, e,
                )

    def _session_lost(self, error: CloudSessionError) -> None:
        """Para el polling y avisa al dueño de la sesión, que la cierra."""
        logger.error(
            "[IOTHUB] Session unusable device=%s after %d failures: %s",
            self.device_id, self._max_unrecoverable_failures, error,
        )
        self._stop_event.set()
        if self._lost_handler is None:
            return
        try:
            self._lost_handler(self.device_id, error)
        except Exception as e:
            logger.exception("[IOTHUB] Lost handler error device=%s: %s", self.device_id, e)
