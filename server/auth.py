"""
Authentication module for JWT token management.

Issues bearer tokens at registration/login and resolves them back to a
user id on protected routes.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field


# Secret key for JWT - set CIPHERCHAT_SECRET_KEY in production
SECRET_KEY = os.environ.get("CIPHERCHAT_SECRET_KEY", "dev-secret-key-change-this-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("CIPHERCHAT_TOKEN_MINUTES", 60 * 24))

bearer_scheme = HTTPBearer(auto_error=False)


class Token(BaseModel):
    """Token response model"""
    model_config = ConfigDict(populate_by_name=True)

    access_token: str
    token_type: str
    user_id: str = Field(alias="userId")
    username: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[str]:
    """
    Verify a JWT token and extract the user id.

    Returns:
        User id if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload.get("sub")
    except JWTError:
        return None


async def require_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency for routes that need an authenticated user"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = verify_token(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id
