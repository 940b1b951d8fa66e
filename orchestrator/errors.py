from typing import Optional


class ConfigError(RuntimeError):
    pass


class GatewayError(Exception):
    """Base class for failures talking to the MCP tools gateway."""

    def __init__(self, fn: str, message: str) -> None:
        super().__init__(f"{fn}: {message}")
        self.fn = fn


class GatewayNetworkError(GatewayError):
    pass


class GatewayStatusError(GatewayError):
    def __init__(self, fn: str, status_code: int) -> None:
        super().__init__(fn, f"MCP server returned error: {status_code}")
        self.status_code = status_code


class GatewayResponseError(GatewayError):
    pass


class GenerationError(Exception):
    pass


class EmptyModelResponseError(GenerationError):
    def __init__(self) -> None:
        super().__init__("gemini returned an empty response")


class UnparsableModelOutputError(GenerationError):
    def __init__(self, raw_text: str, reason: str) -> None:
        super().__init__(f"gemini returned unparsable JSON: {reason}")
        self.raw_text = raw_text


class EmptyDraftError(GenerationError):
    def __init__(self) -> None:
        super().__init__("gemini returned a draft itinerary with no stops")


class PlanError(Exception):
    """A fatal pipeline failure, raised before any stream frame is written."""

    def __init__(
        self,
        stage: str,
        message: str,
        details: Optional[str] = None,
        status_code: int = 502,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.details = details
        self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body
