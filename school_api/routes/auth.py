from fastapi import APIRouter, Depends, status

from ..database import Database, get_database
from ..middleware import CurrentUser, get_current_user
from ..responses import ok
from ..schemas import ChangePasswordRequest, LoginRequest, SendOtpRequest, VerifyOtpRequest
from ..services import (
    change_password,
    expose_otp,
    load_profile,
    login_user,
    register_with_otp,
    request_registration_otp,
)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/send-otp")
async def send_otp(payload: SendOtpRequest, db: Database = Depends(get_database)):
    otp = await request_registration_otp(db, phone=payload.phone, role=payload.role)
    if expose_otp():
        return ok(message="OTP sent", otp=otp)
    return ok(message="OTP sent")


@router.post("/verify-otp", status_code=status.HTTP_201_CREATED)
async def verify_otp(payload: VerifyOtpRequest, db: Database = Depends(get_database)):
    await register_with_otp(db, phone=payload.phone, otp=payload.otp, password=payload.password)
    return ok(message="Registration complete, please log in")


@router.post("/login")
async def login(payload: LoginRequest, db: Database = Depends(get_database)):
    session = await login_user(db, phone=payload.phone, password=payload.password, role=payload.role)
    return ok(message="Logged in", **session)


@router.post("/change-password")
async def update_password(
    payload: ChangePasswordRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_database),
):
    await change_password(
        db, user_id=current_user.id, old_password=payload.old_password, new_password=payload.new_password
    )
    return ok(message="Password changed")


@router.get("/me")
async def me(current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_database)):
    profile = await load_profile(db, user_id=current_user.id, phone=current_user.phone, role=current_user.role)
    return ok(profile)


@router.post("/logout")
async def logout(_: CurrentUser = Depends(get_current_user)):
    # Tokens are stateless; the client discards its copy.
    return ok(message="Logged out")
