from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple


class ErrorEnvelope(Exception):
    """
    Custom exception used internally to simplify control flow.

    Handlers in `quota_gate.main` convert this into the standardized error envelope.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        self.headers = headers
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    service: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    meta = {
        "request_id": request_id,
        "service": service,
    }
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": meta,
    }
    return status_code, body
