from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from audit import AuditSink, LoggingAuditSink
from db import SessionLocal
from reservations import ReservationEngine

audit_sink: AuditSink = LoggingAuditSink()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    if x_actor_id is None:
        return None
    return x_actor_id.strip() or None


def get_audit_sink() -> AuditSink:
    return audit_sink


def get_engine(
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Depends(get_actor_id),
    sink: AuditSink = Depends(get_audit_sink),
) -> ReservationEngine:
    return ReservationEngine(db, actor_id=actor_id, audit=sink)
