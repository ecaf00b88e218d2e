"""
Converter base class and registry.

A Converter is the codec for one product model: it declares the product's
properties together with their wire addresses, and translates raw wire
values to domain values (``get``) and back (``set``). The registry maps a
product name to its Converter class and is frozen once built.
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Optional, Tuple, Type

from .errors import ConversionError, PropertyError
from .models import ConvertedValue, PowerType, Property, ValueType

logger = logging.getLogger(__name__)


class Converter:
    """
    Base class for product converters.

    Subclasses set ``product_name``, ``vendor_name`` and ``power_type`` and
    declare their properties in ``declare()`` with ``self.add(address, prop)``.
    """

    product_name: str = ""
    vendor_name: str = ""
    power_type: PowerType = PowerType.UNKNOWN
    supported: bool = True

    def __init__(self):
        self._by_address: Dict[Hashable, Property] = {}
        self._by_name: Dict[str, Property] = {}
        self._addresses: Dict[str, Hashable] = {}
        self.declare()

    def declare(self) -> None:
        """Declare the product's properties."""

    def add(self, address: Hashable, prop: Property) -> None:
        address = self.normalize_address(address)
        self._by_address[address] = prop
        self._by_name[prop.name] = prop
        self._addresses[prop.name] = address

    def normalize_address(self, address: Hashable) -> Hashable:
        return address

    # ========================================================================
    # Lookup
    # ========================================================================

    @property
    def properties(self) -> List[Property]:
        return list(self._by_name.values())

    def addresses(self) -> Iterator[Tuple[Hashable, Property]]:
        return iter(self._by_address.items())

    def get_by_name(self, name: str) -> Optional[Property]:
        return self._by_name.get(name)

    def get_by_address(self, address: Hashable) -> Optional[Property]:
        """Resolve a wire address; unknown addresses resolve to None."""
        try:
            return self._by_address.get(self.normalize_address(address))
        except (TypeError, ValueError):
            return None

    def address_of(self, name: str) -> Optional[Hashable]:
        return self._addresses.get(name)

    def required_addresses(self) -> List[Hashable]:
        """Addresses a connected device must expose at least one of."""
        return list(self._by_address)

    def describe(self) -> List[dict]:
        return [prop.to_dict() for prop in self.properties]

    # ========================================================================
    # Conversion
    # ========================================================================

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        """Decode a raw wire value. Returns None for non-readable properties."""
        raise NotImplementedError

    def set(self, prop: Property, value: Any) -> Any:
        """Encode a domain value for writing."""
        raise PropertyError(prop.name, "property is not writable")

    def check_writable(self, prop: Property, value: Any) -> None:
        if not prop.write:
            raise PropertyError(prop.name, "property is not writable")
        if prop.value_type == ValueType.OPTIONS and value not in prop.options:
            raise ConversionError(prop.name, f"{value!r} is not one of {prop.options}")

    def validate(self, name: str, value: Any) -> Optional[str]:
        """
        Check a pushed value before conversion.

        Returns an error message, or None when the value is acceptable.
        """
        prop = self.get_by_name(name)
        if prop is None:
            return f'Unknown property: "{name}"'
        if not prop.read:
            return f'Property "{name}" is not readable'
        if value is None:
            return f'Value for property "{name}" must not be empty'
        if prop.value_type in (ValueType.NUMERIC, ValueType.INTEGER):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f'Property "{name}" expects a numeric value, got {type(value).__name__}'
        elif prop.value_type == ValueType.OPTIONS:
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                return f'Property "{name}" expects a numeric or string value, got {type(value).__name__}'
        return None


class UnsupportedConverter(Converter):
    """Stand-in for products without a converter: no properties, sentinel power type."""

    power_type = PowerType.UNSUPPORTED
    supported = False

    def __init__(self, product_name: str = ""):
        self.requested_name = product_name
        super().__init__()

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        return None


class ConverterRegistry:
    """Immutable mapping from product name to Converter class."""

    def __init__(self, converters: Iterable[Type[Converter]]):
        table: Dict[str, Type[Converter]] = {}
        for cls in converters:
            if not cls.product_name:
                raise ValueError(f"{cls.__name__} has no product_name")
            if cls.product_name in table:
                raise ValueError(f"Duplicate converter for {cls.product_name}")
            table[cls.product_name] = cls
        self._converters = MappingProxyType(table)

    def lookup(self, product_name: Optional[str]) -> Converter:
        """Return a fresh converter, or an UnsupportedConverter for unknown products."""
        cls = self._converters.get(product_name or "")
        if cls is None:
            logger.debug(f"No converter for product {product_name!r}")
            return UnsupportedConverter(product_name or "")
        return cls()

    def is_supported(self, product_name: Optional[str]) -> bool:
        return (product_name or "") in self._converters

    @property
    def product_names(self) -> List[str]:
        return sorted(self._converters)

    def __contains__(self, product_name: object) -> bool:
        return product_name in self._converters

    def __len__(self) -> int:
        return len(self._converters)
