import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_admin, require_user
from database.db import (
    ValidationError,
    add_user,
    get_all_users,
    get_settings,
    remove_user,
    run_term_reset,
    set_term_end,
)

router = APIRouter()


class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    role: str
    assigned_bus: str | None = None


class TermUpdate(BaseModel):
    term_end_date: str


@router.get("/users", dependencies=[Depends(require_admin)])
def list_users():
    return get_all_users()


@router.post("/users", dependencies=[Depends(require_admin)])
def create_user(payload: UserCreate):
    try:
        return add_user(
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role.strip().upper(),
            assigned_bus=payload.assigned_bus,
        )
    except ValidationError as exc:
        status = 409 if "already exists" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already exists.")


@router.delete("/users/{uid}")
def delete_user(uid: str, admin: dict = Depends(require_admin)):
    if uid == admin["uid"]:
        raise HTTPException(status_code=400, detail="You cannot remove your own account.")
    if not remove_user(uid):
        raise HTTPException(status_code=404, detail="User not found.")
    return {"ok": True}


@router.get("/settings", dependencies=[Depends(require_user)])
def read_settings():
    return get_settings()


@router.put("/settings/term", dependencies=[Depends(require_admin)])
def update_term(payload: TermUpdate):
    try:
        return set_term_end(payload.term_end_date.strip())
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/admin/term/check", dependencies=[Depends(require_admin)])
def check_term():
    result = run_term_reset()
    return {"ok": True, **result}
