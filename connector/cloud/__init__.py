"""Backend cloud: sesiones de dispositivo, provisioning y SAS tokens."""

from .base import CloudMessage, CloudSession
from .dps import ProvisioningClient, ProvisioningServiceError, RegistrationResult
from .iothub import IoTHubDeviceSession
from .sas import ConnectionString, derive_device_key, generate_sas_token

__all__ = [
    "CloudMessage",
    "CloudSession",
    "ProvisioningClient",
    "ProvisioningServiceError",
    "RegistrationResult",
    "IoTHubDeviceSession",
    "ConnectionString",
    "derive_device_key",
    "generate_sas_token",
]
