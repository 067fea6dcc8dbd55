import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import CORS_ALLOW_CREDENTIALS, CORS_ALLOW_ORIGINS, LOG_LEVEL
from backend.routers.admin import router as admin_router
from backend.routers.auth import router as auth_router
from backend.routers.core import router as core_router
from backend.routers.scans import router as scans_router
from backend.routers.students import router as students_router
from database.db import create_tables, run_term_reset

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)

app = FastAPI(title="EduPay API")

# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Startup
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    run_term_reset()


app.include_router(core_router)
app.include_router(auth_router)
app.include_router(students_router)
app.include_router(scans_router)
app.include_router(admin_router)
