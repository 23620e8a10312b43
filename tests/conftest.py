from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from autovermietung_de import SessionLocal, engine_erstellen, init_db, fahrzeug_anlegen


@pytest.fixture
def engine(tmp_path):
    # Datei statt :memory:, damit Threads eigene Verbindungen bekommen
    eng = engine_erstellen(f"sqlite:///{tmp_path / 'test.db'}", echo=False)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def s(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def fahrzeug(s):
    return fahrzeug_anlegen(s, "VW", "Golf", "B-AV 100", Decimal("50.00"))


@pytest.fixture
def api_engine(engine):
    bind_vorher = SessionLocal.kw.get("bind")
    SessionLocal.configure(bind=engine)
    yield engine
    SessionLocal.configure(bind=bind_vorher)
