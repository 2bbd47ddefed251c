from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from commerce_payments.config import Settings, get_settings
from commerce_payments.enums import UserRole
from commerce_payments.errors import ConfigurationError


@dataclass
class CurrentUser:
    id: str
    role: UserRole = UserRole.USER
    email: Optional[str] = None
    first_name: Optional[str] = None


def verify_token(authorization: str = Header(...), settings: Settings = Depends(get_settings)) -> CurrentUser:
    if not settings.jwt_secret:
        raise ConfigurationError("JWT_SECRET is not configured")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise JWTError("Unsupported authorization scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id = claims.get("sub") or claims.get("id")
        if not user_id:
            raise JWTError("Token has no subject")
        role = UserRole(str(claims.get("role", UserRole.USER.value)).upper())
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    return CurrentUser(
        id=str(user_id),
        role=role,
        email=claims.get("email"),
        first_name=claims.get("firstName"),
    )


def require_roles(*roles: UserRole):
    def dependency(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


customer = require_roles(UserRole.USER, UserRole.ADMIN)
