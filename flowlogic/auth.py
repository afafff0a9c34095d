from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, Request

from flowlogic.errors import BadRequestError, ForbiddenError, UnauthorizedError


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    OPERATOR = "OPERATOR"
    VIEWER = "VIEWER"


@dataclass
class Principal:
    id: int
    username: str
    role: Role
    company_id: int | None
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise UnauthorizedError("Authentication required", message="Please provide a valid access token")
    if not principal.active:
        raise ForbiddenError("Account disabled")
    return principal


def get_company_id(principal: Principal = Depends(get_current_principal)) -> int:
    if principal.company_id is None:
        raise BadRequestError("Company not found")
    return principal.company_id


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise ForbiddenError(
                "Insufficient permissions",
                message=f"This action requires one of the following roles: {', '.join(r.value for r in allowed)}",
            )
        return principal

    return _dep
