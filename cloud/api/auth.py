from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status


def _parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


@dataclass(slots=True)
class Principal:
    employee_id: int
    name: str
    token: str


async def principal_dependency(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
) -> Principal:
    token = _parse_bearer(authorization)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "missing_token"},
        )
    portal = request.app.state.portal
    employee = portal.employee_for_token(token)
    if employee is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_token"},
        )
    if employee.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "inactive_employee", "employee_id": employee.employee_id},
        )
    return Principal(employee_id=employee.employee_id, name=employee.name, token=token)


__all__ = ["Principal", "principal_dependency"]
