import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from models.user import Principal, ROLE_CAPABILITIES, Role
from utils.jwt import decode_token

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    subject = payload.get("sub")
    role = payload.get("role")

    if not subject or role not in {r.value for r in ROLE_CAPABILITIES} or role == Role.SYSTEM.value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    return Principal.for_role(subject, role)


def require_capability(capability: str):
    async def checker(principal: Principal = Depends(get_current_principal)):
        if not principal.can(capability):
            logger.warning(
                "AUTHZ_DENIED principal=%s role=%s capability=%s",
                principal.id,
                principal.role.value,
                capability,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return checker
