import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
import bcrypt as bcrypt_lib
from campaign_ingest.auth import SuperAdminContext, get_current_super_admin, create_super_admin_token
from campaign_ingest.config import settings
from campaign_ingest.domain.store_errors import StoreError
from campaign_ingest.models.admin import (
    MetricsSnapshotFlushRequest,
    MetricsSnapshotFlushResponse,
    MetricsSnapshotRecord,
    SuperAdminLoginRequest,
    SuperAdminLoginResponse,
    SuperAdminMeResponse,
)
from campaign_ingest.observability import persist_metrics_snapshot
from campaign_ingest.pipeline import IngestionPipeline, get_pipeline

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against hash."""
    return bcrypt_lib.checkpw(password.encode(), password_hash.encode())


router = APIRouter(prefix="/api/super-admin", tags=["super-admin"])


# --- Login ---

@router.post("/login", response_model=SuperAdminLoginResponse)
def super_admin_login(
    data: SuperAdminLoginRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Exchange super-admin credentials for a `super_admin` JWT."""
    try:
        super_admin = pipeline.store.get_super_admin_by_email(data.email)
    except StoreError as e:
        logger.error(f"Super-admin lookup failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Event store unavailable: {type(e).__name__}"
        )

    if super_admin is None or not super_admin.password_hash:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    try:
        if not verify_password(data.password, super_admin.password_hash):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password"
            )
    except HTTPException:
        raise
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Password verification failed: {type(e).__name__}"
        )

    try:
        token = create_super_admin_token(super_admin_id=super_admin.id)
    except RuntimeError as e:
        logger.error(f"Token creation error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Token creation failed: {type(e).__name__}"
        )

    return SuperAdminLoginResponse(access_token=token)


# --- Me ---

@router.get("/me", response_model=SuperAdminMeResponse)
async def get_me(ctx: SuperAdminContext = Depends(get_current_super_admin)):
    """Get current super-admin info."""
    return SuperAdminMeResponse(
        super_admin_id=ctx.super_admin_id,
        email=ctx.email,
    )


# --- Observability ---

@router.get("/observability/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    return pipeline.store.list_metric_snapshots(limit=bounded_limit, offset=bounded_offset)


@router.post("/observability/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
def flush_metrics_snapshot(
    data: MetricsSnapshotFlushRequest,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    counter_count = len(pipeline.metrics.snapshot()["counters"])
    persisted = persist_metrics_snapshot(
        metrics=pipeline.metrics,
        store=pipeline.store,
        source=data.source,
        request_id=getattr(request.state, "request_id", None),
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
