from campaign_ingest.auth.context import SuperAdminContext
from campaign_ingest.auth.dependencies import get_current_super_admin
from campaign_ingest.auth.jwt import create_super_admin_token

__all__ = [
    "SuperAdminContext",
    "get_current_super_admin",
    "create_super_admin_token",
]
