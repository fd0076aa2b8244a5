"""FastAPI dependencies that resolve the caller and gate access by role or hall ownership."""
from typing import Callable

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .auth import decode_token
from .config import get_settings
from .database import get_db
from .models import RoleEnum, User

settings = get_settings()
oauth_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
service_api_key_header = APIKeyHeader(name="X-Service-Key", auto_error=False)


def get_current_user(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> User:
    claims = decode_token(token)
    username: str | None = claims.get("sub")
    if not username:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    user = db.query(User).filter(User.username == username).one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    return current_user


def allow_roles(*roles: RoleEnum) -> Callable[[User], User]:
    """Build a dependency admitting only callers whose role is in ``roles``."""

    def dependency(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency


def can_manage_hall(user: User, merchant_id: int | None) -> bool:
    """Admins manage every hall; merchants only the halls they own."""

    if user.role == RoleEnum.ADMIN:
        return True
    return user.role == RoleEnum.MERCHANT and merchant_id == user.id


def ensure_hall_access(user: User, merchant_id: int | None, detail: str = "Access denied") -> None:
    if not can_manage_hall(user, merchant_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_service_key(api_key: str = Security(service_api_key_header)) -> None:
    if not api_key or api_key != settings.service_api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid service key")
