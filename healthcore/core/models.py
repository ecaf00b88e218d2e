"""
Device and property models.

The internal Device record may hold the adapter's native connection object.
Anything published on the bus goes through DeviceDTO, which has no field for
that handle.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .converters import Converter

logger = logging.getLogger(__name__)


class ValueType(str, Enum):
    STRING = "String"
    INTEGER = "Integer"
    NUMERIC = "Numeric"
    OPTIONS = "Options"
    SUBPROPERTIES = "Subproperties"


class PowerType(str, Enum):
    """How a device is powered. Only mains devices can be probed for liveness."""
    MAINS = "mains"
    BATTERY = "battery"
    UNKNOWN = "unknown"
    UNSUPPORTED = "unsupported"  # no converter for the product


class BridgeStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Property:
    """One controllable or observable attribute of a device model."""
    name: str
    value_type: ValueType
    any_value: Any = 0
    read: bool = True
    write: bool = False
    notify: bool = False
    translation: Optional[str] = None

    @property
    def options(self) -> List[Any]:
        if self.value_type == ValueType.OPTIONS and isinstance(self.any_value, (list, tuple)):
            return list(self.any_value)
        return []

    def to_dict(self) -> dict:
        any_value = self.any_value
        if isinstance(any_value, tuple):
            any_value = list(any_value)
        data = {
            "name": self.name,
            "read": self.read,
            "write": self.write,
            "notify": self.notify,
            "valueType": self.value_type.value,
            "anyValue": any_value,
        }
        if self.translation:
            data["translation"] = self.translation
        return data


@dataclass(frozen=True)
class ConvertedValue:
    """A decoded wire value: display value plus its numeric reading, if any."""
    value: Any
    value_as_numeric: Optional[float] = None

    def to_dict(self) -> dict:
        return {"value": self.value, "valueAsNumeric": self.value_as_numeric}


@dataclass
class Sighting:
    """A device observed by an adapter during discovery."""
    device_id: str
    product_name: str = ""
    rssi: Optional[int] = None
    connectable: bool = True
    native: Any = field(default=None, repr=False, compare=False)


class DeviceDTO(BaseModel):
    """Bus representation of a device."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    device_id: str = Field(alias="deviceID")
    bridge: str
    product_name: str = Field("", alias="productName")
    vendor_name: str = Field("", alias="vendorName")
    power_type: str = Field(PowerType.UNSUPPORTED.value, alias="powerType")
    properties: List[Dict[str, Any]] = Field(default_factory=list)
    connectable: Optional[bool] = None
    rssi: Optional[int] = None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class Device:
    """Internal device record owned by one bridge."""
    device_id: str
    bridge: str
    product_name: str = ""
    vendor_name: str = ""
    converter: Optional["Converter"] = field(default=None, repr=False, compare=False)
    connectable: Optional[bool] = None
    rssi: Optional[int] = None
    # Registry metadata the server attaches (name, description, room, ...)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Adapter-owned native link; never leaves the process
    handle: Any = field(default=None, repr=False, compare=False)
    native: Any = field(default=None, repr=False, compare=False)

    @property
    def properties(self) -> List[Property]:
        return self.converter.properties if self.converter else []

    @property
    def power_type(self) -> PowerType:
        return self.converter.power_type if self.converter else PowerType.UNSUPPORTED

    @property
    def is_supported(self) -> bool:
        return self.converter is not None and self.converter.supported

    def describe_properties(self) -> List[dict]:
        """Flattened property array used in create/announce events."""
        return [prop.to_dict() for prop in self.properties]

    def to_dto(self, include_properties: bool = True) -> DeviceDTO:
        return DeviceDTO(
            deviceID=self.device_id,
            bridge=self.bridge,
            productName=self.product_name,
            vendorName=self.vendor_name or (self.converter.vendor_name if self.converter else ""),
            powerType=self.power_type.value,
            properties=self.describe_properties() if include_properties else [],
            connectable=self.connectable,
            rssi=self.rssi,
            **{k: v for k, v in self.metadata.items() if k not in _RESERVED_KEYS},
        )


_RESERVED_KEYS = {
    "deviceID", "bridge", "productName", "vendorName", "powerType",
    "properties", "connectable", "rssi",
}
