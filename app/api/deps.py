from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.core.security import decode_access_token
from app.db.database import get_db
from app.models.user import User, UserStatus

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_current_user_optional(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User | None:
    """Return the authenticated user, or None for a missing/invalid token."""
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload or not str(payload.get("sub", "")).isdigit():
        return None

    user = (
        db.query(User)
        .filter(User.id == int(payload["sub"]), User.deleted_at.is_(None))
        .first()
    )
    if user is None or user.status != UserStatus.ACTIVE.value:
        return None
    request.state.user_id = user.id
    return user


def get_current_user(current_user: User | None = Depends(get_current_user_optional)) -> User:
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user


def require_admin(current_user: User | None = Depends(get_current_user_optional)) -> User:
    """Admin-only endpoints answer 403 for anonymous and non-admin callers alike."""
    if current_user is None or not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user
