"""
Inbound command payloads.

Every command on ``{bridge}/devices/...`` is validated into one of these
models before it reaches a handler. Field names on the bus are camelCase.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import DeviceDTO


class Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_id: Optional[str] = Field(None, alias="callID")

    def reply_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        device_id = getattr(self, "device_id", None)
        if device_id is not None:
            fields["deviceID"] = device_id
        if self.call_id is not None:
            fields["callID"] = self.call_id
        return fields


class ScanCommand(Command):
    duration: float = Field(gt=0)
    registered_reconnect: bool = Field(False, alias="registeredReconnect")


class ConnectCommand(Command):
    device_id: Optional[str] = Field(None, alias="deviceID")
    product_name: Optional[str] = Field(None, alias="productName")
    add_device_to_server: bool = Field(False, alias="addDeviceToServer")

    @model_validator(mode="after")
    def _needs_identity(self) -> "ConnectCommand":
        if not self.device_id and not self.product_name:
            raise ValueError("deviceID or productName is required")
        return self


class DevicesCommand(Command):
    """Registry push used by refresh and reconnect."""
    devices: List[DeviceDTO] = Field(default_factory=list)


class DeviceCommand(Command):
    device_id: str = Field(alias="deviceID", min_length=1)


class ValuesSetCommand(DeviceCommand):
    values: Dict[str, Any]


class ValuesGetCommand(DeviceCommand):
    values: Optional[List[str]] = None


class ListCommand(Command):
    pass


class CreateCommand(DeviceCommand):
    """Server acknowledgement of a device creation."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    product_name: str = Field("", alias="productName")
    vendor_name: str = Field("", alias="vendorName")
    status: str = "ok"
    error: Optional[str] = None

    def metadata(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class UpdateCommand(DeviceCommand):
    updates: Dict[str, Any] = Field(default_factory=dict)
