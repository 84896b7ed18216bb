"""
Accounts, sessions and password recovery.

Passwords can be recovered two ways: an emailed reset link carrying a
random token, or a six digit one time code. Only the SHA-256 of either is
stored, together with an expiry, and both are single use. If the email
cannot be sent the stored token is wiped again so no usable credential is
left behind.
"""
import logging
import smtplib
from datetime import timedelta
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
import database
import notifications
import security
from errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# roles a user may switch themselves to
SELF_SERVICE_ROLES = {
    "customer": {"customer", "seller"},
    "seller": {"seller", "customer"},
    "admin": {"admin"},
}

RESET_FIELDS = ("reset_password_token", "reset_password_expire")
OTP_FIELDS = ("otp", "otp_expires")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": str(user["_id"]), "name": user["name"], "email": user["email"], "role": user.get("role", "customer")}


def token_response(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"token": security.create_access_token({"sub": str(user["_id"])}), "user": public_user(user)}


def _find_by_email(email: str) -> Optional[Dict[str, Any]]:
    return database.db["user"].find_one({"email": email.lower()})


def _new_user(name: str, email: str, password: str, role: str, account_balance: float = 0) -> Dict[str, Any]:
    if _find_by_email(email):
        raise ValidationError("User already exists with that email")
    try:
        user_id = database.create_document("user", {
            "name": name,
            "email": email.lower(),
            "password_hash": security.hash_password(password),
            "role": role,
            "account_balance": account_balance,
        })
    except DuplicateKeyError:
        raise ValidationError("User already exists with that email")
    return database.db["user"].find_one({"_id": database.object_id(user_id, "User")})


def register(name: str, email: str, password: str, role: Optional[str] = None) -> Dict[str, Any]:
    user = _new_user(name, email, password, role or "customer")
    logger.info("Registered user %s (%s)", user["_id"], user["role"])
    return token_response(user)


def login(email: str, password: str) -> Dict[str, Any]:
    user = _find_by_email(email)
    if not user or not security.verify_password(password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    return token_response(user)


def user_from_token(token: str) -> Dict[str, Any]:
    try:
        payload = security.jwt_decode(token, config.JWT_SECRET)
        user_id = payload.get("sub")
        if not user_id:
            raise ValueError("No sub")
    except ValueError:
        raise AuthenticationError("Not authorized to access this route")
    user = database.db["user"].find_one({"_id": database.object_id(user_id, "User")})
    if not user:
        raise AuthenticationError("Not authorized, user not found")
    return user


def check_role_change(current: str, requested: str) -> None:
    if requested == current:
        return
    if requested == "admin":
        raise AuthorizationError("Not authorized to change role to admin")
    if requested not in SELF_SERVICE_ROLES.get(current, set()):
        raise ValidationError('Invalid role. Only "customer" and "seller" roles are allowed.')


def _update_user(user_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
    changes["updated_at"] = database.utcnow()
    try:
        updated = database.db["user"].find_one_and_update(
            {"_id": user_id}, {"$set": changes}, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ValidationError("User already exists with that email")
    if not updated:
        raise NotFoundError("User not found")
    return updated


def update_details(user: Dict[str, Any], name: Optional[str] = None, email: Optional[str] = None,
                   role: Optional[str] = None) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if name:
        changes["name"] = name
    if email:
        changes["email"] = email.lower()
    if role:
        check_role_change(user.get("role", "customer"), role)
        changes["role"] = role
    return _update_user(user["_id"], changes)


def update_role(user: Dict[str, Any], role: Optional[str]) -> Dict[str, Any]:
    if not role:
        raise ValidationError("Role is required")
    check_role_change(user.get("role", "customer"), role)
    return _update_user(user["_id"], {"role": role})


def update_password(user: Dict[str, Any], current_password: str, new_password: str) -> Dict[str, Any]:
    if not security.verify_password(current_password, user.get("password_hash", "")):
        raise AuthenticationError("Password is incorrect")
    updated = _update_user(user["_id"], {"password_hash": security.hash_password(new_password)})
    return token_response(updated)


# --- Password recovery ---

def _clear(user_id: Any, fields) -> None:
    database.db["user"].update_one({"_id": user_id}, {"$unset": {f: "" for f in fields}})


def _send_or_rollback(user: Dict[str, Any], kind: str, context: Dict[str, Any], fields) -> None:
    subject, body = notifications.render(kind, context)
    try:
        notifications.send_email(user["email"], subject, body)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Sending %s email to %s failed: %s", kind, user["email"], e)
        _clear(user["_id"], fields)
        raise UpstreamError("Email could not be sent")


def forgot_password(email: str, base_url: str) -> None:
    user = _find_by_email(email)
    if not user:
        raise NotFoundError("No user found with that email")

    token, token_hash = security.generate_reset_token()
    database.db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "reset_password_token": token_hash,
        "reset_password_expire": database.utcnow() + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES),
    }})
    reset_url = f"{base_url.rstrip('/')}/api/auth/resetpassword/{token}"
    _send_or_rollback(user, "password_reset",
                      {"reset_url": reset_url, "minutes": config.RESET_TOKEN_EXPIRE_MINUTES}, RESET_FIELDS)


def reset_password(token: str, password: str) -> Dict[str, Any]:
    user = database.db["user"].find_one({"reset_password_token": security.hash_token(token)})
    expires = database.as_utc(user.get("reset_password_expire")) if user else None
    if not user or not expires or expires <= database.utcnow():
        raise ValidationError("Invalid token")

    # single use: the token hash must still be the stored one
    updated = database.db["user"].find_one_and_update(
        {"_id": user["_id"], "reset_password_token": user["reset_password_token"]},
        {
            "$set": {"password_hash": security.hash_password(password), "updated_at": database.utcnow()},
            "$unset": {f: "" for f in RESET_FIELDS},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ValidationError("Invalid token")
    return token_response(updated)


def forgot_password_otp(email: str) -> Dict[str, Any]:
    user = _find_by_email(email)
    if not user:
        raise NotFoundError("No user found with that email")

    otp, otp_hash = security.generate_otp()
    database.db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "otp": otp_hash,
        "otp_expires": database.utcnow() + timedelta(minutes=config.OTP_EXPIRE_MINUTES),
    }})
    _send_or_rollback(user, "password_otp", {"otp": otp, "minutes": config.OTP_EXPIRE_MINUTES}, OTP_FIELDS)
    return {"email": user["email"]}


def _valid_otp_user(email: str, otp: str) -> Dict[str, Any]:
    user = database.db["user"].find_one({"email": email.lower(), "otp": security.hash_token(otp)})
    expires = database.as_utc(user.get("otp_expires")) if user else None
    if not user or not expires or expires <= database.utcnow():
        raise ValidationError("Invalid or expired OTP")
    return user


def verify_otp(email: str, otp: str) -> Dict[str, Any]:
    user = _valid_otp_user(email, otp)
    return {"email": user["email"]}


def reset_password_with_otp(email: str, otp: str, password: str) -> Dict[str, Any]:
    user = _valid_otp_user(email, otp)
    updated = database.db["user"].find_one_and_update(
        {"_id": user["_id"], "otp": user["otp"]},
        {
            "$set": {"password_hash": security.hash_password(password), "updated_at": database.utcnow()},
            "$unset": {f: "" for f in OTP_FIELDS},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ValidationError("Invalid or expired OTP")
    return token_response(updated)


# --- Admin user management ---

def list_users():
    return database.get_documents("user", sort=[("created_at", -1)])


def get_user(user_id: str) -> Dict[str, Any]:
    user = database.db["user"].find_one({"_id": database.object_id(user_id, "User")})
    if not user:
        raise NotFoundError(f"User not found with id of {user_id}")
    return user


def create_user(name: str, email: str, password: str, role: str = "customer",
                account_balance: float = 0) -> Dict[str, Any]:
    return _new_user(name, email, password, role, account_balance)


def update_user(user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    user = get_user(user_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if "email" in changes:
        changes["email"] = changes["email"].lower()
    return _update_user(user["_id"], changes)


def delete_user(user_id: str) -> None:
    result = database.db["user"].delete_one({"_id": database.object_id(user_id, "User")})
    if result.deleted_count == 0:
        raise NotFoundError(f"User not found with id of {user_id}")
