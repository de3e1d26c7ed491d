from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Business failure surfaced to the caller as an OpenAI-style error body."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "server_error"
    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_response(self, request_id: str | None = None) -> JSONResponse:
        headers = {"X-Request-Id": request_id} if request_id else None
        return JSONResponse(
            status_code=self.status_code,
            headers=headers,
            content={
                "error": {
                    "message": self.message,
                    "type": self.error_type,
                    "code": self.code,
                }
            },
        )


class InvalidRequestError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"
    code = "invalid_request"

    def __init__(self, message: str, code: str | None = None, **details: Any) -> None:
        super().__init__(message, **details)
        if code:
            self.code = code


class ModelNotAllowedError(InvalidRequestError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "model_not_allowed"

    def __init__(self, model: str) -> None:
        super().__init__(f"Model {model} is not allowed for this token", model=model)
        self.model = model


class NoChannelAvailableError(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "no_channel_available"

    def __init__(self, model: str) -> None:
        super().__init__(f"No available channel for model {model}", model=model)
        self.model = model


class ChannelSelectionFailedError(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "channel_selection_failed"

    def __init__(self, model: str) -> None:
        super().__init__("Failed to select channel", model=model)
        self.model = model


class UpstreamUnreachableError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "upstream_error"

    def __init__(self, **details: Any) -> None:
        super().__init__("Failed to connect to upstream", **details)
