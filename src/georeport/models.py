from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class ResultStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class AdapterResult:
    """Tagged result of one upstream adapter call.

    Exactly one of three shapes: success (``ok``), degraded (``ok`` with
    ``fallback_used``) or failure (not ``ok``, with ``error``). ``notices``
    carries additional degraded conditions that deserve a limitation entry.
    """

    ok: bool
    source: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    fallback_used: bool = False
    notices: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, source: str, **data: Any) -> "AdapterResult":
        return cls(ok=True, source=source, data=data)

    @classmethod
    def degraded(cls, source: str, **data: Any) -> "AdapterResult":
        return cls(ok=True, source=source, data=data, fallback_used=True)

    @classmethod
    def failure(cls, source: str, error: str, **data: Any) -> "AdapterResult":
        return cls(ok=False, source=source, data=data, error=error)

    @property
    def status(self) -> ResultStatus:
        if not self.ok:
            return ResultStatus.FAILED
        if self.fallback_used:
            return ResultStatus.DEGRADED
        return ResultStatus.OK

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_payload(self) -> Dict[str, Any]:
        """Flatten into the JSON shape shared with the model and the caller."""
        payload: Dict[str, Any] = {"ok": self.ok, "source": self.source, **self.data}
        if self.error is not None:
            payload["error"] = self.error
        if self.fallback_used:
            payload["fallback_used"] = True
        if self.notices:
            payload["notices"] = list(self.notices)
        return payload


@dataclass
class Coordinates:
    """Best-known location of a run."""

    lat: float
    lon: float
    display_name: str | None = None
    address: Dict[str, Any] | None = None

    def merge_place(
        self,
        display_name: str | None,
        address: Dict[str, Any] | None,
        authoritative: bool = False,
    ) -> None:
        """Fill place details; only an authoritative source replaces known values."""
        if display_name and (authoritative or self.display_name is None):
            self.display_name = display_name
        if address and (authoritative or self.address is None):
            self.address = address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "display_name": self.display_name,
            "address": self.address,
        }


@dataclass(frozen=True)
class SourceRef:
    name: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "url": self.url}


class LocationRequest(BaseModel):
    """Body of the analyze/history endpoints: an address or a coordinate pair."""

    address: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    radius_m: int | None = Field(default=None, ge=200, le=5000)

    @property
    def has_coords(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def has_address(self) -> bool:
        return bool(self.address and self.address.strip())


class Point(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class CompareRequest(BaseModel):
    a: Point
    b: Point


class GeocodeRequest(BaseModel):
    address: str = Field(min_length=3)
    country_code: str | None = "es"
    limit: int | None = Field(default=1, ge=1, le=5)


class PointQuery(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    zoom: int | None = Field(default=None, ge=3, le=18)
    radius_m: int | None = Field(default=None, ge=200, le=5000)
