"""Normalización del payload decodificado de un uplink.

Aplana el árbol `decoded_payload` en el evento de telemetría manteniendo la
jerarquía de objetos. Regla IoT Central: dentro de un objeto cuya clave empieza
por `GPS_` los campos Latitude/Longitude/Altitude se copian además al nivel
raíz como `lat`/`lon`/`alt`.
"""

from __future__ import annotations

from typing import Any, Mapping

GPS_PREFIX = "gps_"

GPS_ALIASES = {
    "latitude": "lat",
    "longitude": "lon",
    "altitude": "alt",
}


def normalize(document: Any) -> dict[str, Any]:
    """Convierte un payload decodificado en un NormalizedEvent.

    Nunca falla: entradas vacías o que no son objetos devuelven `{}`.
    """
    event: dict[str, Any] = {}
    if not isinstance(document, Mapping):
        return event
    _walk(document, event, event, in_gps=False)
    return event


def _walk(node: Mapping, target: dict[str, Any], root: dict[str, Any], in_gps: bool) -> None:
    for key, value in node.items():
        name = str(key)
        if isinstance(value, Mapping):
            child: dict[str, Any] = {}
            _walk(value, child, root, in_gps=name.lower().startswith(GPS_PREFIX))
            target[name] = child
            continue

        if in_gps and not isinstance(value, list):
            alias = GPS_ALIASES.get(name.lower())
            if alias is not None:
                root[alias] = value
        target[name] = value
