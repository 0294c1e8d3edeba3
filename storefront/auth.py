from fastapi import Header, HTTPException
from jose import JWTError, jwt

from storefront.config import get_settings


def verify_token(authorization: str = Header(...)) -> dict:
    secret = get_settings().jwt_secret
    if not secret:
        raise HTTPException(status_code=500, detail="JWT_SECRET is not configured")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def verify_admin(authorization: str = Header(...)) -> dict:
    claims = verify_token(authorization)
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
