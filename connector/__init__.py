"""Conector LoRaWAN (The Things Stack) ⇄ Azure IoT Hub / IoT Central.

Estructura:
- normalizer.py   → Aplanado del payload decodificado
- correlation.py  → Registro de correlación de downlinks
- sessions.py     → Sesiones MQTT por tenant y cloud por dispositivo
- provisioner.py  → Credenciales cloud (connection string o DPS)
- fleet.py        → Enumeración y alta de dispositivos
- uplink.py       → Uplink MQTT → telemetría cloud
- downlink.py     → Cloud-to-device → downlink MQTT + estados
- mqtt/           → Sesión paho por tenant
- cloud/          → IoT Hub, DPS, SAS
- service.py      → Orquestación del proceso
"""

__version__ = "0.1.0"
