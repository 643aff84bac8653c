"""
Role-Based Access Control

    platform_admin > owner > admin > member > viewer

  viewer          read documents, digests, folders; query
  member          create, upload, replace, process org documents; folders
  admin           delete org documents
  platform_admin  every write on global documents; batch reindex

Usage:
    @router.delete("/{document_id}")
    async def delete_document(user: TokenPayload = Depends(require_role("admin"))): ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status

from app.auth.token import TokenPayload, get_current_user

_ROLE_ORDER: dict[str, int] = {
    "viewer":         0,
    "member":         1,
    "admin":          2,
    "owner":          3,
    "platform_admin": 4,
}


def has_role(user_role: str, required_role: str) -> bool:
    return _ROLE_ORDER.get(user_role, -1) >= _ROLE_ORDER.get(required_role, 999)


def require_role(minimum_role: str):
    """Dependency factory: 403 unless the caller's role meets minimum_role."""
    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: '{minimum_role}', your role: '{user.role}'.",
            )
        return user

    return _dependency


RequireViewer        = Depends(require_role("viewer"))
RequireMember        = Depends(require_role("member"))
RequireAdmin         = Depends(require_role("admin"))
RequirePlatformAdmin = Depends(require_role("platform_admin"))
