from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from campaign_ingest.domain.outcomes import Deferred, Dropped, Duplicate, Recorded
from campaign_ingest.domain.store_errors import StoreError, store_error_detail
from campaign_ingest.models.events import (
    CampaignEventIn,
    CampaignEventResponse,
    EventDeferredResponse,
    EventDroppedResponse,
    EventDuplicateResponse,
    EventRecordedResponse,
)
from campaign_ingest.observability import log_event
from campaign_ingest.pipeline import IngestionPipeline, get_pipeline


router = APIRouter(prefix="/api/campaigns", tags=["campaign-events"])

DROPPED_RETRY_AFTER_SECONDS = 30
DEFERRED_MESSAGES = {
    "missing_enrollment_id": "Enrollment not yet available, will retry automatically",
    "enrollment_not_found": "Enrollment not yet available, will retry automatically",
    "transient_exhausted": "Event store busy, event queued for retry",
    "store_error": "Event store rejected the write, event queued for retry",
}


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _parse_payload(raw: bytes) -> CampaignEventIn:
    try:
        body: Any = json.loads(raw or b"null")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "invalid_json", "message": "Request body must be valid JSON"},
        )
    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"type": "invalid_payload", "message": "Request body must be a JSON object"},
        )
    try:
        return CampaignEventIn.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "type": "invalid_payload",
                "errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"]}
                    for err in exc.errors(include_url=False, include_context=False, include_input=False)
                ],
            },
        )


@router.post("/events")
async def ingest_campaign_event(
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Record one provider campaign event (sent, opened, bounced, ...) against its enrollment."""
    req_id = _request_id(request)
    payload = _parse_payload(await request.body())

    try:
        result = await run_in_threadpool(pipeline.ingest, payload, request_id=req_id)
    except StoreError as exc:
        log_event(
            "campaign_event_store_unavailable",
            level=logging.ERROR,
            request_id=req_id,
            **store_error_detail(operation="ingest_campaign_event", exc=exc),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"type": "store_unavailable", "message": "Event store unavailable, retry later"},
        )

    if isinstance(result, Recorded):
        response = EventRecordedResponse(
            event=CampaignEventResponse(**asdict(result.event)),
            counter=result.counter,
            enrollment_status=result.enrollment_status,
        )
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=response.model_dump(mode="json"))

    if isinstance(result, Duplicate):
        response = EventDuplicateResponse(event_id=result.event.id)
        return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump(mode="json"))

    if isinstance(result, Deferred):
        response = EventDeferredResponse(
            reason=result.reason,
            queue_id=result.queue.record_id if result.queue else None,
            message=DEFERRED_MESSAGES[result.reason],
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump(mode="json"))

    if isinstance(result, Dropped):
        response = EventDroppedResponse(reason=result.reason, queue_size=result.queue.queue_size)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
            headers={"Retry-After": str(DROPPED_RETRY_AFTER_SECONDS)},
        )

    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"type": "data_integrity", "reason": result.reason, "message": result.detail},
    )
