from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar
import logging
import time
import json
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel, ValidationError

from .config import Config
from .errors import (
    GatewayNetworkError,
    GatewayResponseError,
    GatewayStatusError,
)
from .schemas import (
    AirQuality,
    ETARequest,
    Eta,
    Forecast,
    GeoResult,
    Holiday,
    HolidaysResponse,
    NearbyResponse,
    Point,
    Venue,
)


NEARBY_RADIUS_M = 5000
NEARBY_LIMIT = 15

M = TypeVar("M", bound=BaseModel)


class ToolGatewayClient:
    """Async client for the MCP tools gateway.

    One POST per capability, single attempt, bounded by ``config.http_timeout_sec``.
    Failures are raised as ``GatewayNetworkError`` (transport), ``GatewayStatusError``
    (non-2xx) or ``GatewayResponseError`` (body is not the expected shape) so the
    caller can decide whether to abort or degrade.
    """

    def __init__(self, config: Config, http_client: httpx.AsyncClient) -> None:
        self._client = http_client
        self._base_url = config.mcp_base_url
        self._timeout = config.http_timeout_sec
        self._headers = {
            "X-API-KEY": config.mcp_api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "CityDayNavigator-Orchestrator",
        }

    async def _post(self, tool: str, fn: str, path: str, body: Dict[str, Any], model: Type[M]) -> M:
        start_time = time.monotonic()
        http_status: Optional[int] = None
        ok = False
        try:
            try:
                resp = await self._client.post(
                    f"{self._base_url}{path}",
                    json=body,
                    headers=self._headers,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as e:
                raise GatewayNetworkError(fn, f"request failed: {str(e) or type(e).__name__}") from e

            http_status = resp.status_code
            if not resp.is_success:
                raise GatewayStatusError(fn, resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise GatewayResponseError(fn, f"failed to decode MCP response: {e}") from e

            try:
                parsed = model.model_validate(data)
            except ValidationError as e:
                raise GatewayResponseError(fn, f"unexpected MCP response shape: {e.error_count()} error(s)") from e
            ok = True
            return parsed
        finally:
            latency_ms = (time.monotonic() - start_time) * 1000
            log_data = {
                "ts": datetime.now(timezone.utc).isoformat(),
                "tool": tool,
                "fn": fn,
                "latency_ms": f"{latency_ms:.2f}",
                "ok": ok,
                "http_status": http_status,
            }
            logging.info(json.dumps(log_data))

    async def geocode(self, city: str) -> GeoResult:
        return await self._post("mcp-geo", "geocode", "/geo/geocode", {"city": city}, GeoResult)

    async def forecast(self, lat: float, lon: float, date: str) -> Forecast:
        body = {"lat": lat, "lon": lon, "date": date}
        return await self._post("mcp-weather", "forecast", "/weather/forecast", body, Forecast)

    async def air_quality(self, lat: float, lon: float, date: str) -> AirQuality:
        body = {"lat": lat, "lon": lon, "date": date}
        return await self._post("mcp-air", "aqi", "/air/aqi", body, AirQuality)

    async def nearby(
        self,
        lat: float,
        lon: float,
        query: str,
        radius_m: int = NEARBY_RADIUS_M,
        limit: int = NEARBY_LIMIT,
    ) -> List[Venue]:
        body = {
            "lat": lat,
            "lon": lon,
            "query": query,
            "radius_m": radius_m,
            "limit": limit,
        }
        resp = await self._post("mcp-geo", "nearby", "/geo/nearby", body, NearbyResponse)
        return resp.results

    async def holidays(self, country_code: str, year: int) -> List[Holiday]:
        body = {"country_code": country_code, "year": year}
        resp = await self._post("mcp-calendar", "holidays", "/calendar/holidays", body, HolidaysResponse)
        return resp.holidays

    async def eta(self, profile: str, points: Sequence[Point]) -> Eta:
        req = ETARequest(points=list(points), profile=profile)
        return await self._post("mcp-route", "eta", "/route/eta", req.model_dump(), Eta)
