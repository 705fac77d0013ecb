"""
Rate limit API: POST /check/{operation_class}/{key}, GET /limits/{key}, DELETE /limits/{key}.

Contract: 200 + decision; 200 + counts per tier; 200 + ok/key/reset.
Error responses use the build_error_envelope body (400/404).
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from quota_gate.config import get_settings
from quota_gate.dependencies import get_rate_limiter
from quota_gate.envelope import build_error_envelope, new_request_id
from quota_gate.rate_limit import (
    InvalidRateLimitArgument,
    MultiTierRateLimiter,
    UnknownOperationClass,
)

logger = logging.getLogger("quota-gate")

router = APIRouter(tags=["limits"])


def _limits_error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        service=get_settings().service_name,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.post("/check/{operation_class}/{key}")
async def check(
    operation_class: str,
    key: str,
    request: Request,
    limiter: MultiTierRateLimiter = Depends(get_rate_limiter),
) -> JSONResponse:
    """
    Charge one request against ``key`` in ``operation_class``.
    Body optional: { "weight": N }. Returns 200 with the decision whether admitted or not.
    """
    weight: Any = 1
    raw_body = await request.body()
    if raw_body.strip():
        try:
            payload = await request.json()
        except ValueError:
            return _limits_error(400, "MALFORMED_REQUEST", "Request body must be valid JSON")
        if not isinstance(payload, dict):
            return _limits_error(400, "MALFORMED_REQUEST", "Request body must be a JSON object")
        weight = payload.get("weight", 1)

    try:
        decision = limiter.evaluate(key, operation_class, weight)
    except UnknownOperationClass as exc:
        return _limits_error(
            404,
            "UNKNOWN_OPERATION_CLASS",
            str(exc),
            details={"known": exc.known},
        )
    except InvalidRateLimitArgument as exc:
        return _limits_error(400, "INVALID_ARGUMENT", str(exc))

    content = {"key": key, **asdict(decision)}
    return JSONResponse(status_code=200, content=content)


@router.get("/limits/{key}")
async def get_limits(key: str, limiter: MultiTierRateLimiter = Depends(get_rate_limiter)) -> JSONResponse:
    """
    Live count for ``key`` in every tier.
    """
    counts = limiter.get_counts(key)
    return JSONResponse(status_code=200, content={"key": key, "counts": counts})


@router.delete("/limits/{key}")
async def delete_limits(key: str, limiter: MultiTierRateLimiter = Depends(get_rate_limiter)) -> JSONResponse:
    """
    Reset ``key`` in every tier.
    """
    limiter.reset(key)
    logger.info("Rate limits reset for key=%s", key)
    return JSONResponse(
        status_code=200,
        content={"ok": True, "key": key, "reset": limiter.operation_classes},
    )
