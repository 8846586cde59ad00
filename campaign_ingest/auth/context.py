from dataclasses import dataclass


@dataclass
class SuperAdminContext:
    """Identity context for super-admin requests (dead-letter replay, queue and metrics views)."""
    super_admin_id: str
    email: str
