from __future__ import annotations

from fastapi import HTTPException, Request


def get_role_from_request(request: Request) -> str:
    # Header-based role for internal dashboards; inspectors never hit these routes.
    return request.headers.get("X-Role", "INSPECTOR").upper()


def require_role(*allowed_roles: str):
    allowed = {r.upper() for r in allowed_roles}

    async def _dependency(request: Request) -> str:
        role = get_role_from_request(request)
        if allowed and role not in allowed:
            raise HTTPException(status_code=403, detail="forbidden")
        return role

    return _dependency
