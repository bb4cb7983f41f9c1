"""
Principal and role guards

Tokens are issued and checked by the upstream auth gateway, which forwards
the authenticated user as ``X-User-Id`` / ``X-User-Role`` headers. These are
trusted as-is.
"""

from typing import Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from errors import Forbidden, Unauthorized, ValidationError

ROLES = ("customer", "admin", "inventory_manager", "delivery_partner")


class Principal(BaseModel):
    id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id:
        raise Unauthorized()
    role = x_user_role or "customer"
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    return Principal(id=x_user_id, role=role)


def require_roles(*roles: str):
    """Dependency factory: the principal must hold one of ``roles``."""

    def checker(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise Forbidden(f"Role {principal.role} is not authorized to access this route")
        return principal

    return checker


admin_only = require_roles("admin")
inventory_access = require_roles("admin", "inventory_manager")
delivery_access = require_roles("admin", "delivery_partner")
