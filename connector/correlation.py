"""Registro de correlación de downlinks.

Asocia el correlation id publicado en el downlink con el contexto necesario
para resolver el mensaje cloud-to-device cuando llega el estado
(queued/ack/nack/failed) por MQTT.

Concurrencia: callbacks de paho y del poller cloud registran y resuelven en
paralelo. Un único lock protege el dict; dentro de la sección crítica no hay
I/O ni callbacks, así que una resolución nunca re-entra en el mismo slot.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import DuplicateToken, UnknownToken

logger = logging.getLogger(__name__)

LOCK_TOKEN_PREFIX = "az:LockToken:"


def lock_token_to_correlation_id(lock_token: str) -> str:
    return f"{LOCK_TOKEN_PREFIX}{lock_token}"


def find_lock_token(correlation_ids: Iterable[str]) -> Optional[str]:
    """Busca el lock token del mensaje cloud entre los correlation ids del network server."""
    for correlation_id in correlation_ids or ():
        if isinstance(correlation_id, str) and correlation_id.startswith(LOCK_TOKEN_PREFIX):
            lock_token = correlation_id[len(LOCK_TOKEN_PREFIX):]
            if lock_token:
                return lock_token
    return None


@dataclass(frozen=True)
class CorrelationEntry:
    token: str
    tenant_id: str
    device_id: str
    lock_token: str
    confirmed: bool = False
    created_at: float = field(default_factory=time.time)


class CorrelationRegistry:
    """Mapa concurrente token → CorrelationEntry con remove-on-read atómico."""

    def __init__(self):
        self._entries: dict[str, CorrelationEntry] = {}
        self._lock = threading.Lock()
        self._registered = 0
        self._resolved = 0
        self._unknown = 0
        self._purged = 0

    def register(self, entry: CorrelationEntry) -> str:
        with self._lock:
            if entry.token in self._entries:
                raise DuplicateToken(entry.token)
            self._entries[entry.token] = entry
            self._registered += 1
        return entry.token

    def get(self, token: str) -> Optional[CorrelationEntry]:
        """Consulta sin eliminar (estado queued de un downlink confirmado)."""
        with self._lock:
            return self._entries.get(token)

    def resolve(self, token: str) -> CorrelationEntry:
        """Elimina y devuelve la entrada. Dos resoluciones nunca devuelven la misma."""
        with self._lock:
            entry = self._entries.pop(token, None)
            if entry is None:
                self._unknown += 1
            else:
                self._resolved += 1
        if entry is None:
            raise UnknownToken(token)
        return entry

    def discard(self, token: str) -> bool:
        """Elimina sin contar como resolución (p.ej. publish fallido)."""
        with self._lock:
            return self._entries.pop(token, None) is not None

    def purge_older_than(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - max_age_seconds
        with self._lock:
            stale = [token for token, entry in self._entries.items() if entry.created_at < cutoff]
            for token in stale:
                del self._entries[token]
            self._purged += len(stale)
        if stale:
            logger.warning("[CORRELATION] Purged %d stale entries older than %.0fs", len(stale), max_age_seconds)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: str) -> bool:
        with self._lock:
            return token in self._entries

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "pending": len(self._entries),
                "registered": self._registered,
                "resolved": self._resolved,
                "unknown": self._unknown,
                "purged": self._purged,
            }
