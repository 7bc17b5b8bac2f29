from typing import Optional


class DatachatError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class TurnValidationError(DatachatError):
    """Turn is missing required input; rejected before any collaborator call."""

    status_code = 400
    code = "turn_invalid"


class TurnInProgressError(DatachatError):
    status_code = 409
    code = "turn_in_progress"


class ToolResolutionError(DatachatError):
    """A tool could not resolve a field or record. Always converted to an error result."""

    status_code = 422
    code = "tool_resolution_failed"

    def __init__(self, error_code: str, message: str):
        super().__init__(message, code=error_code)


class UpstreamError(DatachatError):
    status_code = 502
    code = "upstream_failed"


class IngestionFatalError(DatachatError):
    status_code = 502
    code = "ingestion_failed"


class ChannelNotFoundError(IngestionFatalError):
    status_code = 404
    code = "channel_not_found"


class InvalidChannelUrl(DatachatError):
    status_code = 400
    code = "invalid_channel_url"


class SessionNotFoundError(DatachatError):
    status_code = 404
    code = "session_not_found"
