from typing import Optional

from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, Form, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import create_access_token
from ..crud import users as crud_users
from ..database import get_db
from ..errors import http_error
from ..models import UserRole
from ..schemas import Token, UserOut

router = APIRouter(prefix="/auth", tags=["auth"])

SELF_SERVICE_ROLES = (UserRole.CLIENT.value, UserRole.PRODUCER.value)


@router.post("/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(
    name: str = Form(..., min_length=1, max_length=100, description="**Full name**"),
    email: str = Form(..., description="**Valid email address**"),
    password: str = Form(..., min_length=8, description="**Password (minimum 8 characters)**"),
    phone: Optional[str] = Form(None, max_length=30),
    role: str = Form(UserRole.CLIENT.value, description="CLIENT or PRODUCER"),
    company_name: Optional[str] = Form(None, max_length=150),
    db: Session = Depends(get_db),
):
    # bcrypt only looks at the first 72 bytes
    if len(password.encode("utf-8")) > 72:
        raise HTTPException(status_code=400, detail="Password is too long (72 bytes maximum)")

    role = (role or "").strip().upper()
    if role not in SELF_SERVICE_ROLES:
        raise HTTPException(status_code=400, detail="Role must be CLIENT or PRODUCER")
    try:
        email = validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise HTTPException(status_code=400, detail=f"Invalid email address: {e}")

    try:
        user = crud_users.create_user(
            db,
            name=name,
            email=email,
            password=password,
            phone=phone,
            role=UserRole(role),
            company_name=company_name,
        )
    except ValueError as e:
        raise http_error(e)
    return user


@router.post("/login", response_model=Token)
def login(
    email: str = Form(..., description="**Email used during registration**"),
    password: str = Form(..., description="**Password**"),
    db: Session = Depends(get_db),
):
    user = crud_users.authenticate(db, email, password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This account is disabled")

    access_token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return {"access_token": access_token, "token_type": "bearer"}
