import logging

from fastapi import FastAPI

from .core.config import settings
from .db import Base, engine
from .middleware.idempotency import install_idempotency

# IMPORTA MODELOS antes de create_all
from .models import customer as _customer_models
from .models import menu as _menu_models
from .models import offer as _offer_models
from .models import order as _order_models
from .models import table_session as _table_session_models
from .routers import health, offers, sessions

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Crea tablas faltantes (desarrollo)
Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.app_name, version=settings.app_version)

install_idempotency(app)
app.include_router(health.router)
app.include_router(offers.router)
app.include_router(sessions.router)
