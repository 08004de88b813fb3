from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.db.session import get_db
from app.models.portal import PortalSession
from app.models.user import User
from app.services.capabilities import user_has_capability
from app.services.portal_auth import validate_session


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return authorization.split(" ", 1)[1].strip()


def get_current_user(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> User:
    token = bearer_token(authorization)
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_alg])
        sub = payload.get("sub")
        if not sub:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        user_id = int(sub)
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = db.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: str):
    def _inner(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _inner


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role.value != "superadmin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return user


def require_capability(code: str):
    def _inner(
        db: Session = Depends(get_db), user: User = Depends(get_current_user)
    ) -> User:
        if not user_has_capability(db, user, code):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing capability: {code}"
            )
        return user

    return _inner


def request_ip(request: Request) -> str | None:
    return request.client.host if request and request.client else None


def request_id(request: Request) -> str | None:
    return request.headers.get("x-request-id")


def get_portal_session(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> PortalSession:
    token = bearer_token(authorization)
    session = validate_session(db, token)
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired session")
    return session
