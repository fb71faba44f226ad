import os
import tempfile

# BD temporal antes de importar la app (settings se lee al importar)
_TMP = tempfile.mkdtemp(prefix="restopos-tests-")
os.environ["DB_URL"] = "sqlite:///" + os.path.join(_TMP, "test.db").replace("\\", "/")
os.environ.setdefault("TIMEZONE", "Asia/Kolkata")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from restopos.db import Base, SessionLocal, engine  # noqa: E402
from restopos.main import app  # noqa: E402
from restopos.seed_demo import seed  # noqa: E402


@pytest.fixture()
def ids():
    """BD limpia con el menú y las ofertas demo; devuelve los ids por nombre."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield seed(db)
    finally:
        db.close()


@pytest.fixture()
def db(ids):
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def client(ids):
    return TestClient(app)
