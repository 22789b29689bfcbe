# telemed/routers/auth.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)


@router.post("/token", response_model=schemas.TokenResponse)
def login_for_access_token(db: Optional[Session] = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    if db is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication requires a configured database",
        )
    user = crud.get_user_by_email(db, form_data.username)
    if not user or not user.is_active or not security.verify_password(form_data.password, user.password_hash):
        logger.warning(f"Failed login attempt for: {form_data.username}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    crud.log_audit_action(
        db, user.id, "LOGIN",
        category="AUTHENTICATION",
        details=f"User {user.email} logged in successfully.",
    )
    logger.info(f"User '{user.email}' successfully authenticated.")

    access_token = security.create_access_token(
        data={"sub": user.email, "user_id": user.id, "role": user.role.value}
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": schemas.UserResponse.model_validate(user).model_dump(mode="json"),
    }


@router.get("/users/me", response_model=schemas.UserResponse)
def read_users_me(current_user: models.User = Depends(security.get_current_user)):
    """
    Get the current logged in user's details.
    """
    return current_user
