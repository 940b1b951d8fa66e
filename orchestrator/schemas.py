import datetime as dt
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: str = Field(..., min_length=1)
    date: dt.date
    preferences: List[str] = []
    country_code: Optional[str] = Field(default=None, min_length=2, max_length=2)

    @field_validator("city")
    @classmethod
    def _city_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("city must not be blank")
        return v

    @field_validator("country_code")
    @classmethod
    def _upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


# --- Gateway DTOs ---

class GeoResult(BaseModel):
    lat: float
    lon: float
    display_name: str = ""


class Forecast(BaseModel):
    temp_c: float
    precip_prob: float
    wind_kph: float = 0.0
    summary: str = ""


class AirQuality(BaseModel):
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    no2: Optional[float] = None
    o3: Optional[float] = None
    category: str


class Venue(BaseModel):
    name: str
    lat: float
    lon: float
    tags: Dict[str, str] = {}


class NearbyResponse(BaseModel):
    results: List[Venue] = []


class Holiday(BaseModel):
    date: str
    localName: str


class HolidaysResponse(BaseModel):
    holidays: List[Holiday] = []


class Point(BaseModel):
    lat: float
    lon: float


class ETARequest(BaseModel):
    points: List[Point]
    profile: Literal["foot", "bike", "car"]


class Eta(BaseModel):
    distance_km: float
    duration_min: float


# --- Generation DTOs ---

class DraftStop(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    lat: float
    lon: float
    start_time: str


class DraftItinerary(BaseModel):
    model_config = ConfigDict(frozen=True)

    stops: List[DraftStop]

    def route_points(self) -> List[Point]:
        return [Point(lat=s.lat, lon=s.lon) for s in self.stops]
