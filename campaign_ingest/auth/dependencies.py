from fastapi import Depends, Header, HTTPException, status
from campaign_ingest.auth.context import SuperAdminContext
from campaign_ingest.auth.jwt import decode_super_admin_token
from campaign_ingest.pipeline import IngestionPipeline, get_pipeline


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_super_admin(
    authorization: str | None = Header(None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> SuperAdminContext:
    """
    Super-admin JWT auth. Validates token type is 'super_admin' and the admin still exists.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    payload = decode_super_admin_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired super-admin token",
        )

    super_admin = pipeline.store.get_super_admin(payload["sub"])
    if super_admin is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Super-admin not found",
        )

    return SuperAdminContext(
        super_admin_id=super_admin.id,
        email=super_admin.email,
    )
