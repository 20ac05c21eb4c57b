from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from coursepay.config import get_settings


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "student"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_token(authorization: Optional[str] = Header(None)) -> Principal:
    if not authorization:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        user_id = claims["sub"]
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return Principal(user_id=str(user_id), role=claims.get("role", "student"), email=claims.get("email"))


def require_admin(principal: Principal = Depends(verify_token)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal
