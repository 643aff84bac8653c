from app.auth.token import TokenPayload, get_current_user, verify_token
from app.auth.rbac import require_role, RequireViewer, RequireMember, RequireAdmin, RequirePlatformAdmin
from app.auth.dependencies import TenantDB, CurrentUser, Embedder, PageIndex

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "require_role", "RequireViewer", "RequireMember", "RequireAdmin", "RequirePlatformAdmin",
    "TenantDB", "CurrentUser", "Embedder", "PageIndex",
]
