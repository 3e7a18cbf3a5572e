from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farmgrid.api.routers import farms, sessions, uploads
from farmgrid.config import settings
from farmgrid.core.errors import FarmGridError, farmgrid_error_handler
from farmgrid.core.middleware import RequestLoggingMiddleware
from farmgrid.db import init_db

app = FastAPI(title="FarmGrid API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_exception_handler(FarmGridError, farmgrid_error_handler)


@app.get("/health")
def health():
    return {"ok": True}


# 初回起動時にDBスキーマを作成
@app.on_event("startup")
def on_startup():
    init_db()


app.include_router(farms.router,    prefix="/farms",   tags=["farms"])
app.include_router(sessions.router, prefix="/farms",   tags=["weekly-sessions"])
app.include_router(uploads.router,  prefix="/uploads", tags=["uploads"])
