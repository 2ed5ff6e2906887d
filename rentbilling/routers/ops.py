# rentbilling/routers/ops.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..schemas import HealthOut
from ..services.runtime_metrics import METRICS

router = APIRouter(tags=["ops"])


@router.get("/health", response_model=HealthOut)
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("select 1"))
        db_state = "ok"
    except SQLAlchemyError as e:
        db_state = f"error: {type(e).__name__}"
    return HealthOut(ok=db_state == "ok", version=settings.app_version, db=db_state)


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return METRICS.render_text()
