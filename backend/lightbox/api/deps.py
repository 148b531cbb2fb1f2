from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException
from starlette.requests import HTTPConnection

from lightbox.core.config import settings
from lightbox.services.runtime import Runtime

UID_HEADER = "X-Principal-Uid"
ROLE_HEADER = "X-Principal-Role"
SCOPES_HEADER = "X-Principal-Scopes"

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    uid: str
    role: str = "user"
    scopes: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def can_see(self, owner_uid: Optional[str], private: bool) -> bool:
        return not private or self.is_admin or owner_uid == self.uid


def _principal_from_headers(request: HTTPConnection) -> Optional[Principal]:
    if not settings.TRUSTED_PRINCIPAL_HEADERS:
        return None
    uid = (request.headers.get(UID_HEADER) or "").strip()
    if not uid:
        return None
    role = (request.headers.get(ROLE_HEADER) or "user").strip().lower()
    raw_scopes = request.headers.get(SCOPES_HEADER) or ""
    scopes = frozenset(scope.strip() for scope in raw_scopes.replace(",", " ").split() if scope.strip())
    return Principal(uid=uid, role=role, scopes=scopes)


def get_optional_principal(request: HTTPConnection) -> Optional[Principal]:
    return _principal_from_headers(request)


def get_principal(principal: Optional[Principal] = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def get_runtime(request: HTTPConnection) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return runtime
