"""Bedrock — Vessel subscription schema & message payloads."""

import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from backend.exceptions import InvalidRequest, InvalidSubscription

# Filter tag used when a subscription has no vessel type filter
ALL_VESSELS = "all"

# Outbound WebSocket actions
VESSEL_UPDATE = "vessel-update"
VESSEL_DETAILS = "vessel-details"
VESSEL_SEARCH_RESULTS = "vessel-search-results"
PORT_INFO = "port-info"
VESSEL_TRACK = "vessel-track"
SUBSCRIPTION_ERROR = "subscription-error"
ERROR = "error"


def _canonical_float(value: float) -> str:
    # -0.0 + 0.0 == 0.0, so both zeros serialise the same way
    return repr(float(value) + 0.0)


class BoundingBox(BaseModel):
    """Geographic viewport. Accepts the camelCase keys browsers send."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    min_lat: float = Field(alias="minLat", ge=-90, le=90)
    max_lat: float = Field(alias="maxLat", ge=-90, le=90)
    min_lon: float = Field(alias="minLon", ge=-180, le=180)
    max_lon: float = Field(alias="maxLon", ge=-180, le=180)

    @model_validator(mode="after")
    def _check_order(self) -> "BoundingBox":
        if self.min_lat > self.max_lat:
            raise ValueError("minLat must not exceed maxLat")
        if self.min_lon > self.max_lon:
            raise ValueError("minLon must not exceed maxLon")
        return self

    def canonical(self) -> str:
        """Stable serialisation independent of field order and float spelling."""
        return json.dumps(
            {
                "maxLat": _canonical_float(self.max_lat),
                "maxLon": _canonical_float(self.max_lon),
                "minLat": _canonical_float(self.min_lat),
                "minLon": _canonical_float(self.min_lon),
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


def normalize_vessel_type(value: Any) -> Optional[str]:
    """Return the filter value, or None when the subscription covers all vessels."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidSubscription(f"Invalid vesselType: {value!r}")
    text = str(value).strip()
    if not text or text.lower() == ALL_VESSELS:
        return None
    return text


def parse_bounds(raw: Any) -> BoundingBox:
    if not isinstance(raw, dict):
        raise InvalidSubscription("Missing bounds object")
    try:
        return BoundingBox.model_validate(raw)
    except ValidationError as e:
        raise InvalidSubscription(
            "Invalid bounds",
            details=[err["msg"] for err in e.errors()],
        ) from e


def parse_subscription(data: Any) -> tuple[BoundingBox, Optional[str]]:
    """Validate an inbound subscribe/unsubscribe body: {bounds, vesselType}."""
    if not isinstance(data, dict):
        raise InvalidSubscription("Subscription body must be an object")
    bounds = parse_bounds(data.get("bounds"))
    return bounds, normalize_vessel_type(data.get("vesselType"))


class VesselQuery(BaseModel):
    """Single-vessel lookup sent over the socket or the REST API."""

    model_config = ConfigDict(populate_by_name=True)

    identifier: str = Field(min_length=1)
    identifier_type: Literal["imo", "mmsi", "name"] = Field("imo", alias="identifierType")

    @field_validator("identifier", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v).strip() if isinstance(v, (str, int)) else v

    @field_validator("identifier_type", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.lower() if isinstance(v, str) else v


class VesselSearch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    search_type: Literal["name", "imo", "mmsi"] = Field("name", alias="searchType")

    @field_validator("search_type", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.lower() if isinstance(v, str) else v


class PortLookup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port_id: Optional[str] = Field(None, alias="portId")
    port_name: Optional[str] = Field(None, alias="portName")

    @field_validator("port_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v) if isinstance(v, int) else v

    @model_validator(mode="after")
    def _need_one(self) -> "PortLookup":
        if not self.port_id and not self.port_name:
            raise ValueError("Either portId or portName must be provided")
        return self


class TrackQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vessel_id: str = Field(alias="vesselId", min_length=1)
    time_span: int = Field(24, alias="timeSpan", ge=1)

    @field_validator("vessel_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v) if isinstance(v, int) else v


def parse_request(model: type[BaseModel], data: Any) -> Any:
    """Validate a request body, raising InvalidRequest with readable details."""
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be an object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidRequest(
            f"Invalid {model.__name__} request",
            details=[err["msg"] for err in e.errors()],
        ) from e


class ClientMessage(BaseModel):
    """Inbound WebSocket frame envelope."""

    action: str
    data: Any = None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_payload(data: Any) -> dict:
    return {"success": True, "timestamp": now_iso(), "data": data}


def failure_payload(error: str) -> dict:
    return {"success": False, "error": error, "timestamp": now_iso()}
