import asyncio
import json
import logging
from typing import Any, Optional

import google.generativeai as genai
from pydantic import ValidationError

from .config import Config
from .errors import (
    EmptyDraftError,
    EmptyModelResponseError,
    GenerationError,
    UnparsableModelOutputError,
)
from .schemas import DraftItinerary


DRAFT_STOP_COUNT = 4

INTENT_PROMPT_TEMPLATE = """You are an intent classifier for a travel planner.
Your job is to read the user's request and classify it into one of three categories:
"plan_day", "refine_plan", "compare_options"

User Request: "Plan 10:00-18:00 in Kyoto on 2025-12-12. Prefer temples and walkable."
Classification: "plan_day"

User Request: "Refine: add a specialty coffee stop near the second venue."
Classification: "refine_plan"

User Request: "Compare two options if it rains after 3pm."
Classification: "compare_options"

User Request: "{user_input}"
Classification: """

DRAFT_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "stops": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING", "description": "The name of the venue."},
                    "lat": {"type": "NUMBER", "description": "Latitude of the venue."},
                    "lon": {"type": "NUMBER", "description": "Longitude of the venue."},
                    "start_time": {
                        "type": "STRING",
                        "description": "The suggested start time for the visit (HH:MM).",
                    },
                },
                "required": ["name", "lat", "lon", "start_time"],
            },
        },
    },
    "required": ["stops"],
}


def _response_text(response: Any) -> str:
    # .text raises ValueError when the candidate has no text parts (e.g. blocked)
    try:
        return getattr(response, "text", None) or ""
    except ValueError:
        return ""


_DONE = object()


class TokenStream:
    """Single-consumer async iterator over the text fragments of one streaming call.

    A producer task drains the upstream response into a one-slot queue, so at most
    one token waits for the consumer. An upstream error ends the sequence early:
    the error is kept on ``error`` and iteration stops without raising.
    ``aclose()`` cancels the producer and releases the upstream connection.
    """

    def __init__(self, response: Any) -> None:
        self._response = response
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self.closed = False
        self.error: Optional[BaseException] = None

    @property
    def truncated(self) -> bool:
        return self.error is not None

    async def _produce(self) -> None:
        try:
            async for chunk in self._response:
                text = _response_text(chunk)
                if text:
                    await self._queue.put(text)
        except Exception as e:
            self.error = e
            logging.warning("Gemini stream error: %s", e)
        await self._queue.put(_DONE)

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._produce())
        item = await self._queue.get()
        if item is _DONE:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        self._finished = True
        if self.closed:
            return
        self.closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        close = getattr(self._response, "aclose", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class GenerationClient:
    def __init__(self, config: Config, model: Any = None) -> None:
        if model is None:
            genai.configure(api_key=config.gemini_api_key)
            model = genai.GenerativeModel(
                config.gemini_model,
                generation_config={
                    "temperature": 0.0,
                    "top_p": 1,
                    "top_k": 1,
                },
            )
        self.model = model
        self._request_options = {"timeout": config.generation_timeout_sec}

    async def classify_intent(self, user_input: str) -> str:
        logging.info("Gemini client: classifying intent...")
        prompt = INTENT_PROMPT_TEMPLATE.format(user_input=user_input)
        response = await self.model.generate_content_async(prompt, request_options=self._request_options)
        intent = _response_text(response).strip().strip('"').strip()
        if not intent:
            raise EmptyModelResponseError()
        return intent

    async def generate_structured_itinerary(self, prompt: str) -> DraftItinerary:
        response = await self.model.generate_content_async(
            prompt,
            generation_config={
                "response_mime_type": "application/json",
                "response_schema": DRAFT_RESPONSE_SCHEMA,
            },
            request_options=self._request_options,
        )
        raw = _response_text(response)
        try:
            draft = DraftItinerary.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            logging.error("Failed to decode draft itinerary: %s", raw)
            raise UnparsableModelOutputError(raw, str(e))
        except ValidationError as e:
            logging.error("Draft itinerary does not match schema: %s", raw)
            raise UnparsableModelOutputError(raw, f"{e.error_count()} schema error(s)")

        if not draft.stops:
            raise EmptyDraftError()
        if len(draft.stops) > DRAFT_STOP_COUNT:
            draft = DraftItinerary(stops=draft.stops[:DRAFT_STOP_COUNT])
        return draft

    async def stream_plan(self, prompt: str) -> TokenStream:
        try:
            response = await self.model.generate_content_async(
                prompt,
                stream=True,
                request_options=self._request_options,
            )
        except Exception as e:
            raise GenerationError(f"Failed to initiate Gemini stream: {e}") from e
        return TokenStream(response)
