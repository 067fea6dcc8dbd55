import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session, require_user, verify_admin_pin
from backend.services.admission import Role, capability_for, resource_kind_for
from database.db import (
    ValidationError,
    create_tables,
    run_term_reset,
    scanner_identity,
    update_password,
    verify_user_credentials,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    email: str
    password: str
    pin: str | None = None


class PasswordChange(BaseModel):
    new_password: str


def _profile(user: dict) -> dict:
    capability = capability_for(user["role"])
    return {
        "uid": user["uid"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "assigned_bus": user["assigned_bus"],
        "can_manage": capability.can_manage,
        "checks": resource_kind_for(scanner_identity(user)),
    }


@router.post("/auth/login")
def login(payload: LoginRequest):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(email, password)
    except sqlite3.OperationalError:
        # Self-heal when the schema is missing (e.g. startup skipped).
        try:
            create_tables()
            user = verify_user_credentials(email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    if user["role"] == Role.ADMIN.value and not verify_admin_pin(payload.pin):
        raise HTTPException(status_code=401, detail="Incorrect Admin PIN.")

    term_reset_applied = False
    try:
        term_reset_applied = run_term_reset()["applied"]
    except sqlite3.Error:
        logger.exception("Term reset check failed during login")

    token, claims = issue_session_token(user["uid"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": _profile(user),
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
        "term_reset_applied": term_reset_applied and capability_for(user["role"]).can_manage,
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session), user: dict = Depends(require_user)):
    return {
        **_profile(user),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }


@router.post("/auth/password")
def change_password(payload: PasswordChange, user: dict = Depends(require_user)):
    try:
        update_password(user["uid"], payload.new_password)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True}
