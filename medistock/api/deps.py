from typing import Annotated
import uuid
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from medistock.database import get_db
from medistock.core.security import verify_access_token
from medistock.core.permissions import Actor, OrgRole


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


def _parse_uuid(value, claim: str):
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning(f"Invalid {claim} in token: {value}")
        raise


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the authenticated actor.

    Identity is issued by the identity service; the token carries the
    organization, role and department the caller acts for.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    claims = verify_access_token(credentials.credentials)
    if claims is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        user_id = _parse_uuid(claims["sub"], "sub")
        organization_id = _parse_uuid(claims["org"], "org")
        department_id = _parse_uuid(claims.get("dept"), "dept")
    except ValueError:
        raise credentials_exception

    role = str(claims.get("role") or OrgRole.MEMBER.value).upper()
    if role not in {r.value for r in OrgRole}:
        logger.warning(f"Unknown role in token: {role}")
        raise credentials_exception

    return Actor(
        user_id=user_id,
        organization_id=organization_id,
        role=role,
        department_id=department_id,
        username=claims.get("username"),
        full_name=claims.get("name"),
    )


# Type aliases for cleaner dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
DB = Annotated[AsyncSession, Depends(get_db)]
