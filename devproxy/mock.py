import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from .models import HTTPResponse

logger = logging.getLogger(__name__)

MOCK_NOTE = "Backend unavailable - using mock response"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(moment: datetime) -> str:
    """Format a timestamp as ISO-8601 UTC with milliseconds, e.g. 2024-01-01T12:00:00.000Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def _reject_constant(name: str):
    raise ValueError(f"Unexpected token {name} in JSON")


def _as_text(value: Any) -> str:
    """Render a JSON value for a message the way it was written in the request."""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class MockResponseGenerator:
    """Builds stand-in responses for tool download requests when the backend is down."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now,
                 cors_headers: Dict[str, str] = None):
        self._clock = clock
        self._cors_headers = dict(cors_headers or {})

    def generate(self, request_body: bytes) -> Tuple[Dict[str, Any], Optional[int]]:
        """
        Build the mock payload for a request body.

        Returns the payload and an error status, which is None on success.
        Never raises for bad input.
        """
        try:
            request_data = json.loads(request_body.decode('utf-8') or '{}',
                                      parse_constant=_reject_constant)
        except (UnicodeDecodeError, ValueError) as e:
            return {"error": "Invalid JSON in request", "details": str(e)}, 400

        if request_data is None:
            return {"error": "Invalid JSON in request",
                    "details": "Request body is null"}, 400
        if not isinstance(request_data, dict):
            request_data = {}

        tool_name = request_data.get("toolName")
        action = request_data.get("action")
        label = _as_text(tool_name) if tool_name else "unknown tool"
        return {
            "success": True,
            "message": f"Mock installation of {label} completed",
            "status": "installed",
            "details": {
                "tool": tool_name or "unknown",
                "action": action or "install",
                "timestamp": isoformat_z(self._clock()),
                "note": MOCK_NOTE
            }
        }, None

    def build_response(self, request_body: bytes) -> HTTPResponse:
        """Wrap ``generate`` in a JSON HTTP response carrying the CORS headers."""
        logger.info("Using mock download-tool response")
        payload, error_status = self.generate(request_body)
        if error_status is not None:
            return HTTPResponse.create_json(error_status, payload, self._cors_headers)
        return HTTPResponse.create_json(200, payload, self._cors_headers, indent=2)
