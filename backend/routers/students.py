import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from backend.security import require_admin, require_scanner, require_user
from backend.services.admission import RESOURCE_KINDS
from backend.services.importer import parse_student_csv, to_registration
from database.db import (
    STUDENT_FILTERS,
    ValidationError,
    add_student,
    bulk_add_students,
    delete_student,
    get_all_students,
    get_dashboard_summary,
    get_student_by_id,
    regenerate_all_student_ids,
    regenerate_student_id,
    set_service_paid,
)
from scanner.capture import render_qr_png

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_user)])


class StudentCreate(BaseModel):
    name: str
    class_name: str
    admin_number: str
    gender: str = "Not Specified"
    drop_location: str = ""
    bus_number: str | None = None
    bus_name: str | None = None
    guardian_name: str | None = None
    guardian_phone: str | None = None
    transport_paid: bool = False
    meal_paid: bool = False


class PaymentUpdate(BaseModel):
    is_paid: bool


class StudentImport(BaseModel):
    csv_text: str


@router.get("/students")
def list_students(
    search: str | None = None,
    filter: str = Query(default="ALL"),
    viewer=Depends(require_scanner),
):
    clean_filter = filter.strip().upper()
    if clean_filter not in STUDENT_FILTERS:
        raise HTTPException(status_code=400, detail="Invalid filter.")
    return get_all_students(search=search, student_filter=clean_filter, viewer=viewer)


@router.post("/students", dependencies=[Depends(require_admin)])
def create_student(payload: StudentCreate):
    try:
        return add_student(payload.model_dump())
    except ValidationError as exc:
        status = 409 if "already exists" in str(exc) else 400
        raise HTTPException(status_code=status, detail=str(exc))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Admin number already exists.")


@router.post("/students/import", dependencies=[Depends(require_admin)])
def import_students(payload: StudentImport):
    rows = parse_student_csv(payload.csv_text)
    if not rows:
        raise HTTPException(status_code=400, detail="No valid rows found.")
    added, skipped = bulk_add_students([to_registration(r) for r in rows])
    logger.info("Imported %s student(s), skipped %s", added, len(skipped))
    return {"added": added, "skipped": skipped}


@router.post("/students/regenerate-ids", dependencies=[Depends(require_admin)])
def regenerate_ids():
    count = regenerate_all_student_ids()
    return {"ok": True, "regenerated": count}


@router.get("/students/{student_id}")
def student_detail(student_id: str):
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return student


@router.delete("/students/{student_id}", dependencies=[Depends(require_admin)])
def remove_student(student_id: str):
    if not delete_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"ok": True}


@router.put("/students/{student_id}/payments/{kind}", dependencies=[Depends(require_admin)])
def update_payment(student_id: str, kind: str, payload: PaymentUpdate):
    if kind not in RESOURCE_KINDS:
        raise HTTPException(status_code=400, detail="Unknown service.")
    student = set_service_paid(student_id, kind, payload.is_paid)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return student


@router.post("/students/{student_id}/regenerate-id", dependencies=[Depends(require_admin)])
def regenerate_id(student_id: str):
    new_id = regenerate_student_id(student_id)
    if not new_id:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"ok": True, "id": new_id}


@router.get("/students/{student_id}/qr")
def student_qr(student_id: str):
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return Response(content=render_qr_png(student["id"]), media_type="image/png")


@router.get("/dashboard/summary")
def dashboard_summary():
    return get_dashboard_summary()
