from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db.database import get_db
from app.models.audit_log import AuditAction
from app.models.user import User, UserStatus
from app.schemas.user import UserResponse, Token
from app.core.security import verify_password, create_access_token
from app.core.utils import client_ip
from app.api.deps import get_current_user
from app.services.audit_service import log_action
from app.core.rate_limit import limiter

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/login", response_model=Token)
@limiter.limit("5/minute")
def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """Exchange a username (or email) and password for an access token."""
    ip = client_ip(request)
    identifier = form_data.username.strip()
    user = (
        db.query(User)
        .filter(
            or_(User.username == identifier, User.email == identifier.lower()),
            User.deleted_at.is_(None),
        )
        .first()
    )
    if (
        not user
        or user.status != UserStatus.ACTIVE.value
        or not verify_password(form_data.password, user.hashed_password)
    ):
        log_action(db, user_id=None, action=AuditAction.LOGIN_FAILED.value, resource_type="user",
                   details={"username": identifier}, ip_address=ip)
        db.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    log_action(db, user_id=user.id, action=AuditAction.LOGIN.value, resource_type="user",
               resource_id=user.id, ip_address=ip)
    db.commit()
    return Token(access_token=create_access_token(data={"sub": str(user.id)}))


@router.get("/me", response_model=UserResponse)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user
