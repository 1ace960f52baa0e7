from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from reconciler.config import jwt_secret

ADMIN_ROLES = {"ADMIN", "EMPLOYEE"}


def verify_token(authorization: str = Header(None)):
    secret = jwt_secret()
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer" or not secret:
            raise ValueError("unusable credentials")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(claims: dict = Depends(verify_token)):
    if claims.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
