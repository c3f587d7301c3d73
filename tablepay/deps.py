from dataclasses import dataclass
from typing import Literal

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from tablepay.util.security import decode_token

auth_scheme = HTTPBearer(auto_error=False)

Role = Literal["Guest", "Employee", "Owner"]
STAFF_ROLES = ("Employee", "Owner")


@dataclass(frozen=True)
class Caller:
    """Identity handed to us by the auth service."""
    id: str
    role: Role
    table_number: int | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def require_auth(creds: HTTPAuthorizationCredentials | None = Depends(auth_scheme)) -> Caller:
    if not creds:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        data = decode_token(creds.credentials)
        return Caller(id=data["sub"], role=data.get("role", "Guest"), table_number=data.get("table_number"))
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def require_staff(caller: Caller = Depends(require_auth)) -> Caller:
    if not caller.is_staff:
        raise HTTPException(status_code=403, detail="Staff only")
    return caller


def get_orchestrator(request: Request):
    # built once at startup in tablepay.main
    return request.app.state.orchestrator
