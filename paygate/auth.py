from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from paygate.config import get_settings


def verify_token(authorization: Optional[str] = Header(None)):
    """Operator endpoints: HS256 bearer token signed with JWT_SECRET."""
    secret = get_settings().JWT_SECRET
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer" or not secret:
            raise ValueError("unsupported authorization")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
