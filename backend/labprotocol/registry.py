"""Instrument and reagent registry lookups used by validation and advice."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol

from . import config
from .data import loaders

# purpose: provide synchronous, caller-supplied registry reads for analysis rules
# inputs: bundled JSON catalogs or records supplied by an external registry service
# outputs: InstrumentRecord and ReagentRecord instances, None when a lookup misses
# status: pilot


@dataclass(frozen=True)
class InstrumentRecord:
    id: str
    type: str
    name: str = ""
    capabilities: tuple[str, ...] = ()
    availability: str = "available"
    calibration_status: str = "valid"
    max_speed: float | None = None
    cost_per_hour: float | None = None

    @property
    def is_available(self) -> bool:
        return self.availability == "available"

    @property
    def is_calibrated(self) -> bool:
        return self.calibration_status == "valid"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InstrumentRecord":
        max_speed = payload.get("max_speed")
        cost = payload.get("cost_per_hour")
        return cls(
            id=str(payload["id"]),
            type=str(payload.get("type", payload["id"])),
            name=str(payload.get("name", "")),
            capabilities=tuple(payload.get("capabilities") or ()),
            availability=str(payload.get("availability", "available")),
            calibration_status=str(payload.get("calibration_status", "valid")),
            max_speed=float(max_speed) if max_speed is not None else None,
            cost_per_hour=float(cost) if cost is not None else None,
        )


@dataclass(frozen=True)
class ReagentRecord:
    id: str
    name: str
    hazards: tuple[str, ...] = ()
    incompatible_with: tuple[str, ...] = ()
    environmental_hazard: bool = False
    stock_status: str = "in_stock"

    @property
    def is_hazardous(self) -> bool:
        return bool(self.hazards)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ReagentRecord":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            hazards=tuple(payload.get("hazards") or ()),
            incompatible_with=tuple(payload.get("incompatible_with") or ()),
            environmental_hazard=bool(payload.get("environmental_hazard", False)),
            stock_status=str(payload.get("stock_status", "in_stock")),
        )


class InstrumentRegistry(Protocol):
    """Read-only registry contract consumed by the analysis engine."""

    def lookup_instrument(self, id_or_type: str) -> InstrumentRecord | None: ...

    def lookup_reagent(self, id_or_name: str) -> ReagentRecord | None: ...

    def instruments_of_type(self, instrument_type: str) -> list[InstrumentRecord]: ...


def _normalize(value: str) -> str:
    return value.strip().lower().replace("_", "-").replace(" ", "-")


class StaticRegistry:
    """In-memory registry backed by pre-loaded records."""

    def __init__(
        self,
        instruments: Iterable[InstrumentRecord] = (),
        reagents: Iterable[ReagentRecord] = (),
    ) -> None:
        self._instruments = {record.id: record for record in instruments}
        self._reagents = {record.id: record for record in reagents}
        self._reagent_names = {_normalize(record.name): record for record in self._reagents.values()}

    def lookup_instrument(self, id_or_type: str) -> InstrumentRecord | None:
        record = self._instruments.get(id_or_type)
        if record is not None:
            return record
        candidates = self.instruments_of_type(id_or_type)
        if not candidates:
            return None
        available = [item for item in candidates if item.is_available]
        return (available or candidates)[0]

    def lookup_reagent(self, id_or_name: str) -> ReagentRecord | None:
        record = self._reagents.get(id_or_name)
        if record is not None:
            return record
        return self._reagent_names.get(_normalize(id_or_name)) or self._reagents.get(
            _normalize(id_or_name)
        )

    def instruments_of_type(self, instrument_type: str) -> list[InstrumentRecord]:
        wanted = _normalize(instrument_type)
        return sorted(
            (record for record in self._instruments.values() if _normalize(record.type) == wanted),
            key=lambda record: record.id,
        )


def load_default_registry(directory: str | None = None) -> StaticRegistry:
    """Build a registry from the bundled catalogs or a configured override."""

    directory = directory or config.REGISTRY_CATALOG_DIR
    return StaticRegistry(
        instruments=[InstrumentRecord.from_payload(item) for item in loaders.get_instrument_catalog(directory)],
        reagents=[ReagentRecord.from_payload(item) for item in loaders.get_reagent_catalog(directory)],
    )
