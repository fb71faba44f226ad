import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..models.customer import GuestUser
from .eligibility import VisitLookup

logger = logging.getLogger("restopos.customers")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = "".join(ch for ch in str(phone) if ch.isdigit() or ch == "+")
    return digits or None


def visit_count(db: Session, phone: str) -> int:
    row = db.query(GuestUser.visit_count).filter(GuestUser.phone == phone).first()
    return int(row[0] or 0) if row else 0


def db_visit_lookup(session_factory: sessionmaker) -> VisitLookup:
    """Consulta de visitas en BD, fuera del event loop."""

    def _read(phone: str) -> int:
        db = session_factory()
        try:
            return visit_count(db, phone)
        finally:
            db.close()

    async def lookup(phone: str) -> int:
        return await run_in_threadpool(_read, phone)

    return lookup


def best_effort(lookup: VisitLookup, attempts: Optional[int] = None) -> VisitLookup:
    """Reintenta la consulta; si falla siempre devuelve None (cliente no identificado)."""
    tries = max(1, attempts or settings.visit_lookup_attempts)

    async def wrapped(phone: str) -> Optional[int]:
        for attempt in range(1, tries + 1):
            try:
                return await lookup(phone)
            except Exception as exc:
                logger.warning("visit lookup attempt %d/%d failed: %s", attempt, tries, exc)
        return None

    return wrapped


def per_pass(lookup: VisitLookup) -> VisitLookup:
    """Memoiza por teléfono durante una sola pasada de evaluación."""
    pending: Dict[str, asyncio.Task] = {}

    async def memo(phone: str) -> Optional[int]:
        task = pending.get(phone)
        if task is None:
            task = asyncio.ensure_future(lookup(phone))
            pending[phone] = task
        return await task

    return memo


def register_visit(db: Session, phone: Optional[str]) -> None:
    """Suma una visita al cliente (se llama al abrir sesión con teléfono)."""
    phone = normalize_phone(phone)
    if not phone:
        return
    guest = db.query(GuestUser).filter(GuestUser.phone == phone).first()
    if guest is None:
        db.add(GuestUser(phone=phone, visit_count=0, last_visit_at=datetime.utcnow()))
    else:
        guest.visit_count = (guest.visit_count or 0) + 1
        guest.last_visit_at = datetime.utcnow()
