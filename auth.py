import re
from datetime import timedelta
from typing import Annotated, Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database

from database import create_document, get_db, utcnow
from errors import BadRequest, Conflict, Unauthorized
from mailer import (
    send_in_background,
    send_password_reset_email,
    send_verification_email,
    send_welcome_email,
)
from schemas import Address, Role, User as UserSchema
from security import (
    create_access_token,
    create_refresh_token,
    generate_token,
    get_current_user,
    hash_password,
    hash_token,
    public_user,
    verify_password,
    verify_refresh_token,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
RESET_TOKEN_TTL = timedelta(minutes=10)
FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


def check_password_strength(password: str) -> str:
    if len(password) < 6:
        raise ValueError("Password must be at least 6 characters")
    if not PASSWORD_RULE.match(password):
        raise ValueError("Password must contain at least one lowercase letter, one uppercase letter, and one number")
    return password


StrongPassword = Annotated[str, AfterValidator(check_password_strength)]


# Auth models

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: StrongPassword
    role: Optional[Role] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        return v.strip()


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshInput(BaseModel):
    refresh_token: Optional[str] = None


class ProfileAddress(Address):
    street: Optional[str] = Field(None, min_length=5, max_length=100)
    city: Optional[str] = Field(None, min_length=2, max_length=50)
    state: Optional[str] = Field(None, min_length=2, max_length=50)
    zip_code: Optional[str] = Field(None, pattern=r"^\d{5}(-\d{4})?$")
    country: Optional[str] = Field(None, min_length=2, max_length=50)


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone_number: Optional[str] = Field(None, pattern=r"^\+?[0-9 ()\-]{7,20}$")
    address: Optional[ProfileAddress] = None


class ChangePasswordInput(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: StrongPassword


class EmailInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    password: StrongPassword


class DeleteAccountInput(BaseModel):
    password: str = Field(..., min_length=1)


class AuthData(BaseModel):
    user: Dict[str, Any]
    token: str
    refresh_token: str
    token_type: str = "bearer"


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    data: AuthData


def _issue_tokens(db: Database, user: Dict[str, Any], message: str) -> AuthResponse:
    token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    now = utcnow()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"refresh_token": refresh_token, "last_login": now, "updated_at": now}},
    )
    user = db["user"].find_one({"_id": user["_id"]})
    return AuthResponse(message=message, data=AuthData(user=public_user(user), token=token, refresh_token=refresh_token))


# Routes

@router.post("/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterInput, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("User with this email already exists")
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="admin" if payload.role == "admin" else "user",
    )
    doc = create_document(db, "user", user_model)
    logger.info("user_registered", user_id=str(doc["_id"]), role=doc["role"])

    background_tasks.add_task(send_in_background, send_welcome_email, public_user(doc))
    return _issue_tokens(db, doc, "User registered successfully")


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise Unauthorized("Invalid credentials", code="INVALID_CREDENTIALS")
    if not verify_password(payload.password, user.get("password_hash", "")):
        logger.info("login_failed", user_id=str(user["_id"]))
        raise Unauthorized("Invalid credentials", code="INVALID_CREDENTIALS")
    if not user.get("is_active", True):
        raise Unauthorized("Account is deactivated", code="ACCOUNT_DEACTIVATED")
    return _issue_tokens(db, user, "Login successful")


@router.post("/refresh-token", response_model=AuthResponse)
def refresh_token(payload: RefreshInput, db: Database = Depends(get_db)):
    user = verify_refresh_token(db, payload.refresh_token)
    return _issue_tokens(db, user, "Token refreshed successfully")


@router.post("/logout")
def logout(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"refresh_token": None, "updated_at": utcnow()}})
    return {"success": True, "message": "Logout successful"}


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "data": {"user": public_user(current_user)}}


@router.put("/me")
def update_profile(data: ProfileUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    update_dict = data.model_dump(exclude_unset=True, exclude_none=True)
    if "address" in update_dict:
        update_dict["address"] = {**current_user.get("address", {}), **update_dict["address"]}
    update_dict["updated_at"] = utcnow()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": update_dict})
    user = db["user"].find_one({"_id": current_user["_id"]})
    return {"success": True, "message": "Profile updated successfully", "data": {"user": public_user(user)}}


@router.put("/change-password")
def change_password(
    data: ChangePasswordInput,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not verify_password(data.current_password, current_user.get("password_hash", "")):
        raise BadRequest("Current password is incorrect", code="INCORRECT_PASSWORD")
    # Dropping the stored refresh token signs out every device
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"password_hash": hash_password(data.new_password), "refresh_token": None, "updated_at": utcnow()}},
    )
    logger.info("password_changed", user_id=str(current_user["_id"]))
    return {"success": True, "message": "Password changed successfully"}


@router.post("/forgot-password")
def forgot_password(data: EmailInput, background_tasks: BackgroundTasks, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": data.email.lower(), "is_active": True})
    if user:
        token = generate_token()
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"password_reset_token": hash_token(token), "password_reset_expires": utcnow() + RESET_TOKEN_TTL}},
        )
        background_tasks.add_task(send_in_background, send_password_reset_email, user, token)
        logger.info("password_reset_requested", user_id=str(user["_id"]))
    return {"success": True, "message": FORGOT_PASSWORD_MESSAGE}


@router.post("/reset-password/{token}")
def reset_password(token: str, data: ResetPasswordInput, db: Database = Depends(get_db)):
    user = db["user"].find_one(
        {"password_reset_token": hash_token(token), "password_reset_expires": {"$gt": utcnow()}}
    )
    if not user:
        raise BadRequest("Invalid or expired reset token", code="INVALID_RESET_TOKEN")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {
                "password_hash": hash_password(data.password),
                "password_reset_token": None,
                "password_reset_expires": None,
                "refresh_token": None,
                "updated_at": utcnow(),
            }
        },
    )
    logger.info("password_reset", user_id=str(user["_id"]))
    return {"success": True, "message": "Password reset successful"}


@router.get("/verify-email/{token}")
def verify_email(token: str, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email_verification_token": hash_token(token)})
    if not user:
        raise BadRequest("Invalid verification token", code="INVALID_VERIFICATION_TOKEN")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_email_verified": True, "email_verification_token": None, "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Email verified successfully"}


@router.post("/resend-verification")
def resend_verification(
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if current_user.get("is_email_verified"):
        raise BadRequest("Email is already verified", code="EMAIL_ALREADY_VERIFIED")
    token = generate_token()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": {"email_verification_token": hash_token(token)}})
    background_tasks.add_task(send_in_background, send_verification_email, current_user, token)
    return {"success": True, "message": "Verification email sent"}


@router.delete("/delete-account")
def delete_account(data: DeleteAccountInput, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    if not verify_password(data.password, current_user.get("password_hash", "")):
        raise BadRequest("Incorrect password", code="INCORRECT_PASSWORD")
    db["user"].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"is_active": False, "refresh_token": None, "updated_at": utcnow()}},
    )
    logger.info("account_deleted", user_id=str(current_user["_id"]))
    return {"success": True, "message": "Account deleted successfully"}
