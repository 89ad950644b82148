import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from helpdesk.core.config import settings

http_bearer = HTTPBearer(auto_error=False)

# scopes granted by role when the token carries none of its own
ROLE_SCOPES: dict[str, set[str]] = {
    "admin": {"*"},
    "supervisor": {
        "tickets:read", "tickets:write", "knowledge:read", "knowledge:write",
        "connectors:read", "connectors:write", "audit:read",
    },
    "operator": {"tickets:read", "tickets:write", "knowledge:read", "connectors:read"},
    "viewer": {"tickets:read", "knowledge:read"},
}

class Principal(BaseModel):
    """Operator behind an API call; ``name`` is what lands in ticket history and audit rows."""

    user_id: uuid.UUID
    name: str = "operator"
    roles: list[str] = []
    scopes: list[str] = []

    def effective_scopes(self) -> set[str]:
        granted = set(self.scopes)
        for role in self.roles:
            granted |= ROLE_SCOPES.get(role, set())
        return granted

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    if creds is None and settings.ENV == "local":
        return Principal(user_id=uuid.UUID(int=0), name="local-operator", roles=["admin"])
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing token")

    data = _decode_token(creds.credentials)
    subject = data.get("sub") or data.get("user_id")
    try:
        user_id = uuid.UUID(str(subject))
    except ValueError:
        raise HTTPException(status_code=401, detail="Token subject is not a user id")
    return Principal(
        user_id=user_id,
        name=data.get("name") or data.get("preferred_username") or "operator",
        roles=data.get("roles", []),
        scopes=data.get("scopes", []),
    )

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        granted = principal.effective_scopes()
        if "*" in granted or set(needed) <= granted:
            return principal
        raise HTTPException(status_code=403, detail=f"Missing scopes: {', '.join(sorted(set(needed) - granted))}")
    return dep
