from typing import assert_never

from himsog.domain.models import Role


def dashboard_path(role: Role) -> str:
    """Return the canonical landing page for ``role``."""
    match role:
        case Role.USER:
            return "/dashboard"
        case Role.PROVIDER:
            return "/provider/dashboard"
        case Role.ADMIN:
            return "/admin/dashboard"
        case _:
            assert_never(role)
