import asyncio
import enum
import logging
import re
from typing import AsyncIterator, List, Optional, Sequence

from .errors import GatewayError, GenerationError, PlanError, UnparsableModelOutputError
from .gateway import ToolGatewayClient
from .generation import DRAFT_STOP_COUNT, GenerationClient, TokenStream
from .schemas import DraftItinerary, GeoResult, PlanRequest, Venue


WEATHER_UNAVAILABLE = "Weather data unavailable."
AIR_UNAVAILABLE = "Air quality data unavailable."
HOLIDAYS_UNAVAILABLE = "Holiday data unavailable."
HOLIDAYS_NOT_REQUESTED = "Holiday data not requested."
NO_VENUES = "No nearby venues found based on preferences."
ETA_UNAVAILABLE = "Travel times are unavailable due to an API error."
UNKNOWN_INTENT = "unknown"

ROUTE_PROFILE = "car"
# Modifier tag, never sent as a venue query
WALKABLE_TAG = "walkable"

END_MARKER = "[END]"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class PlanState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    GEOCODED = "GEOCODED"
    CONTEXT_GATHERED = "CONTEXT_GATHERED"
    DRAFTED = "DRAFTED"
    ROUTED = "ROUTED"
    STREAMING = "STREAMING"
    DONE = "DONE"
    GEOCODE_FAILED = "GEOCODE_FAILED"
    DRAFT_FAILED = "DRAFT_FAILED"
    STREAM_FAILED = "STREAM_FAILED"


def format_frame(payload: str) -> str:
    """Encode one payload as an SSE event; embedded newlines become extra data lines.

    SSE treats CR, LF and CRLF alike as line ends, so all three are split on and
    the client sees them as LF.
    """
    return "".join(f"data: {line}\n" for line in _LINE_BREAK.split(payload)) + "\n"


def dedupe_venues(batches: Sequence[Sequence[Venue]]) -> List[Venue]:
    seen = set()
    merged: List[Venue] = []
    for batch in batches:
        for venue in batch:
            if venue.name in seen:
                continue
            seen.add(venue.name)
            merged.append(venue)
    return merged


def render_venues(venues: Sequence[Venue]) -> str:
    if not venues:
        return NO_VENUES
    return "\n".join(f"- {v.name} ({v.lat:.6f}, {v.lon:.6f})" for v in venues)


def render_draft(draft: DraftItinerary) -> str:
    return "\n".join(
        f"{i}. {s.start_time} - {s.name} ({s.lat:.6f}, {s.lon:.6f})"
        for i, s in enumerate(draft.stops, start=1)
    )


class PlanContext:
    def __init__(self, weather: str, air: str, holidays: str, venues: List[Venue]) -> None:
        self.weather = weather
        self.air = air
        self.holidays = holidays
        self.venues = venues


class PlanRun:
    """Per-request state; tracks the stage machine and logs every transition."""

    def __init__(self, request: PlanRequest) -> None:
        self.request = request
        self.state = PlanState.RECEIVED

    def advance(self, state: PlanState) -> None:
        logging.info("Plan %s: %s -> %s", self.request.city, self.state.value, state.value)
        self.state = state


def build_draft_prompt(request: PlanRequest, context: PlanContext) -> str:
    return (
        "You are an expert itinerary generator. Based on the data below, select "
        f"{DRAFT_STOP_COUNT} locations from the VENUE LIST and propose a start time (HH:MM) for each.\n"
        "If the VENUE LIST is empty, choose well-known venues in the city that fit the preferences.\n"
        "Your sole output MUST be a JSON object matching the requested schema. Do NOT include any commentary.\n\n"
        f"DATA: City: {request.city}, Date: {request.date.isoformat()}, "
        f"Preferences: {', '.join(request.preferences)}\n"
        f"Weather Summary: {context.weather}\n"
        f"Air Quality Summary: {context.air}\n"
        f"Holidays: {context.holidays}\n"
        f"VENUE LIST:\n{render_venues(context.venues)}\n"
    )


def build_final_prompt(context: PlanContext, eta_summary: str, draft: DraftItinerary) -> str:
    return (
        "You are the final narrative copilot. Your task is to turn the structured draft and travel data "
        "into a professional, easy-to-read, minute-by-minute itinerary.\n\n"
        "**INSTRUCTIONS**\n"
        "1. **Formatting**: Output ONLY the final Markdown itinerary.\n"
        "2. **Trace**: Do NOT include the TRACE or INSTRUCTION blocks in the final output.\n"
        "3. **Check**: Incorporate the WEATHER, AIR QUALITY, and TRAVEL TIMES into the narrative.\n"
        "4. If it's a public holiday, add a caution about closures or crowds.\n\n"
        "**CONTEXT**\n"
        f"- Weather: {context.weather}\n"
        f"- Air Quality: {context.air}\n"
        f"- Holidays: {context.holidays}\n"
        f"- Travel Summary (Use this for travel estimates): {eta_summary}\n\n"
        "**DRAFT ITINERARY (Structured Data)**\n"
        f"{render_draft(draft)}\n"
    )


class PlanStream:
    """The prepared output of a plan: trace lines plus the open token stream."""

    def __init__(self, run: PlanRun, trace: List[str], tokens: TokenStream) -> None:
        self.run = run
        self.trace = trace
        self.tokens = tokens

    @property
    def state(self) -> PlanState:
        return self.run.state

    async def frames(self) -> AsyncIterator[str]:
        self.run.advance(PlanState.STREAMING)
        try:
            for line in self.trace:
                yield format_frame(line)
            async for token in self.tokens:
                yield format_frame(token)
        finally:
            await self.tokens.aclose()
        if self.tokens.truncated:
            logging.warning("Plan stream ended early: %s", self.tokens.error)
        yield format_frame(END_MARKER)
        self.run.advance(PlanState.DONE)

    async def aclose(self) -> None:
        await self.tokens.aclose()


class PlanPipeline:
    def __init__(self, gateway: ToolGatewayClient, generation: GenerationClient) -> None:
        self.gateway = gateway
        self.generation = generation

    async def prepare(self, request: PlanRequest) -> PlanStream:
        """Run every stage up to opening the generation stream.

        Raises ``PlanError`` for the fatal exits; nothing has been written to the
        caller at that point.
        """
        run = PlanRun(request)
        logging.info("Plan service: starting multi-pass generation for %s on %s", request.city, request.date)

        try:
            geo = await self.gateway.geocode(request.city)
        except GatewayError as e:
            run.advance(PlanState.GEOCODE_FAILED)
            raise PlanError("geocode", "Failed to geocode city", str(e))
        run.advance(PlanState.GEOCODED)

        context = await self.gather_context(request, geo)
        run.advance(PlanState.CONTEXT_GATHERED)

        logging.info("--- PASS 1: generating structured itinerary draft...")
        try:
            draft = await self.generation.generate_structured_itinerary(build_draft_prompt(request, context))
        except UnparsableModelOutputError as e:
            run.advance(PlanState.DRAFT_FAILED)
            raise PlanError("draft", "Failed Pass 1 (Draft Generation)", f"{e}; raw output: {e.raw_text}")
        except Exception as e:
            run.advance(PlanState.DRAFT_FAILED)
            raise PlanError("draft", "Failed Pass 1 (Draft Generation)", str(e))
        logging.info("Draft itinerary generated with %d stops", len(draft.stops))
        run.advance(PlanState.DRAFTED)

        logging.info("--- PASS 2: requesting travel times...")
        eta_summary = await self.route_summary(draft)
        run.advance(PlanState.ROUTED)

        logging.info("--- PASS 3: synthesizing final plan...")
        final_prompt = build_final_prompt(context, eta_summary, draft)
        intent = await self.classify(final_prompt)
        try:
            tokens = await self.generation.stream_plan(final_prompt)
        except GenerationError as e:
            run.advance(PlanState.STREAM_FAILED)
            raise PlanError("stream", "Failed to initiate Gemini stream", str(e))

        trace = [
            f"[TRACE] Intent: {intent}",
            f"[TRACE] Geocoded: {geo.display_name}",
            f"[TRACE] Weather Status: {context.weather}",
            f"[TRACE] Route Status: {eta_summary}",
        ]
        return PlanStream(run, trace, tokens)

    async def gather_context(self, request: PlanRequest, geo: GeoResult) -> PlanContext:
        weather, air, holidays, venues = await asyncio.gather(
            self.weather_summary(geo, request.date.isoformat()),
            self.air_summary(geo, request.date.isoformat()),
            self.holiday_summary(request),
            self.nearby_venues(geo, request.preferences),
        )
        return PlanContext(weather, air, holidays, venues)

    async def weather_summary(self, geo: GeoResult, date: str) -> str:
        try:
            forecast = await self.gateway.forecast(geo.lat, geo.lon, date)
        except GatewayError as e:
            logging.warning("Failed to get weather: %s", e)
            return WEATHER_UNAVAILABLE
        return f"Max Temp: {forecast.temp_c:.1f}°C (Precip Prob: {forecast.precip_prob:.0f}%)"

    async def air_summary(self, geo: GeoResult, date: str) -> str:
        try:
            aqi = await self.gateway.air_quality(geo.lat, geo.lon, date)
        except GatewayError as e:
            logging.warning("Failed to get AQI: %s", e)
            return AIR_UNAVAILABLE

        def fmt(v: Optional[float]) -> str:
            return "N/A" if v is None else f"{v:.1f} µg/m³"

        return f"PM2.5: {fmt(aqi.pm25)}, PM10: {fmt(aqi.pm10)}, Category: {aqi.category}"

    async def holiday_summary(self, request: PlanRequest) -> str:
        if not request.country_code:
            return HOLIDAYS_NOT_REQUESTED
        try:
            holidays = await self.gateway.holidays(request.country_code, request.date.year)
        except GatewayError as e:
            logging.warning("Failed to get holidays: %s", e)
            return HOLIDAYS_UNAVAILABLE
        day = request.date.isoformat()
        names = [h.localName for h in holidays if h.date == day]
        if names:
            return f"Public holiday on {day}: {', '.join(names)}."
        return f"No public holiday on {day}."

    async def nearby_venues(self, geo: GeoResult, preferences: Sequence[str]) -> List[Venue]:
        batches: List[List[Venue]] = []
        for pref in preferences:
            query = pref.strip()
            if not query or query == WALKABLE_TAG:
                continue
            logging.info("Getting nearby venues for preference: %s", query)
            try:
                batches.append(await self.gateway.nearby(geo.lat, geo.lon, query))
            except GatewayError as e:
                logging.warning("Failed to get nearby venues for %s: %s", query, e)
        return dedupe_venues(batches)

    async def route_summary(self, draft: DraftItinerary) -> str:
        points = draft.route_points()
        if len(points) < 2:
            logging.warning("Skipping ETA: draft has %d stop(s)", len(points))
            return ETA_UNAVAILABLE
        try:
            eta = await self.gateway.eta(ROUTE_PROFILE, points)
        except GatewayError as e:
            logging.warning("Failed route ETA call: %s", e)
            return ETA_UNAVAILABLE
        return f"Travel distance: {eta.distance_km:.1f} km, Duration: {eta.duration_min:.1f} min."

    async def classify(self, prompt: str) -> str:
        try:
            return await self.generation.classify_intent(prompt)
        except Exception as e:
            logging.warning("Intent classification failed: %s", e)
            return UNKNOWN_INTENT
