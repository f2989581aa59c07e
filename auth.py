import os
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from pymongo.database import Database

from database import get_db

logger = structlog.get_logger(__name__)


def decode_session_token(token: str) -> dict:
    """Verify an identity-provider session token and return its claims."""
    key = os.getenv("CLERK_JWT_KEY")
    if not key:
        raise RuntimeError("CLERK_JWT_KEY is not set")
    algorithm = os.getenv("CLERK_JWT_ALGORITHM", "RS256")
    return jwt.decode(token, key, algorithms=[algorithm], options={"verify_aud": False})


def get_current_user(authorization: Optional[str] = Header(None), db: Database = Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    token = authorization[len("Bearer "):].strip()
    try:
        claims = decode_session_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    clerk_id = claims.get("sub")
    if not clerk_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user = db["user"].find_one({"clerk_id": clerk_id})
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_crafter(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in ("crafter", "admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden - Crafter access required")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        logger.warning("admin_access_denied", clerk_id=user.get("clerk_id"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden - Admin access required")
    return user
