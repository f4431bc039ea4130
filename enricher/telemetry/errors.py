"""Structured error telemetry helpers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Canonical error codes for operational telemetry."""

    STAGE_FAILED = "STAGE_FAILED"
    PRODUCT_ENRICHMENT_FAILED = "PRODUCT_ENRICHMENT_FAILED"
    FEED_RECORD_INVALID = "FEED_RECORD_INVALID"
    AI_REQUEST_FAILED = "AI_REQUEST_FAILED"
    AI_RESPONSE_INVALID = "AI_RESPONSE_INVALID"
    AI_RATE_LIMITED = "AI_RATE_LIMITED"
    CACHE_LOAD_FAILED = "CACHE_LOAD_FAILED"
    CACHE_SAVE_FAILED = "CACHE_SAVE_FAILED"


def emit_structured_error(
    logger: logging.Logger,
    *,
    code: ErrorCode,
    message: str,
    suppressed: bool,
    product_id: str | None = None,
    stage: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a structured telemetry event via logging."""
    logger.error(
        "enricher_error",
        extra={
            "error_code": code,
            "error_message": message,
            "suppressed": suppressed,
            "product_id": product_id,
            "stage": stage,
            "details": details or {},
        },
    )
