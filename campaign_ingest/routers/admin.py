from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from campaign_ingest.auth import SuperAdminContext, get_current_super_admin
from campaign_ingest.models.admin import (
    DeadLetterListResponse,
    DeadLetterReplayRequest,
    DeadLetterReplayResponse,
    DeadLetterResponse,
    DeadLetterStatsResponse,
    DeadLetterStatusFilter,
    OrphanQueueStatusResponse,
)
from campaign_ingest.observability import log_event
from campaign_ingest.pipeline import IngestionPipeline, get_pipeline
from campaign_ingest.services.dead_letters import ReplayLimitExceeded


router = APIRouter(prefix="/api/admin", tags=["admin"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@router.get("/dead-letters", response_model=DeadLetterListResponse)
def list_dead_letters(
    status_filter: DeadLetterStatusFilter | None = Query(default=None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    rows, total = pipeline.dead_letters.list(status=status_filter, limit=bounded_limit, offset=bounded_offset)
    log_event(
        "dead_letters_listed",
        status=status_filter,
        returned=len(rows),
        total=total,
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return DeadLetterListResponse(
        items=[DeadLetterResponse(**asdict(row)) for row in rows],
        total=total,
        limit=bounded_limit,
        offset=bounded_offset,
    )


@router.get("/dead-letters/stats", response_model=DeadLetterStatsResponse)
def dead_letter_stats(
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return pipeline.dead_letters.stats()


@router.post("/dead-letters/replay", response_model=DeadLetterReplayResponse)
async def replay_dead_letters(
    data: DeadLetterReplayRequest,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    req_id = _request_id(request)
    try:
        return await run_in_threadpool(pipeline.replay_dead_letters, data.ids, request_id=req_id)
    except ReplayLimitExceeded as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/dead-letters/{entry_id}", response_model=DeadLetterResponse)
def get_dead_letter(
    entry_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    entry = pipeline.dead_letters.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead-letter event not found")
    return DeadLetterResponse(**asdict(entry))


@router.post("/dead-letters/{entry_id}/ignore", response_model=DeadLetterResponse)
def ignore_dead_letter(
    entry_id: str,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    entry = pipeline.dead_letters.ignore(entry_id, request_id=_request_id(request))
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead-letter event not found")
    if entry.status != "ignored":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Dead-letter event in status {entry.status} cannot be ignored",
        )
    return DeadLetterResponse(**asdict(entry))


@router.get("/orphan-queue", response_model=OrphanQueueStatusResponse)
def orphan_queue_status(
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return pipeline.orphan_queue.status()


@router.get("/metrics")
async def metrics(
    pipeline: IngestionPipeline = Depends(get_pipeline),
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    return pipeline.metrics.snapshot()
