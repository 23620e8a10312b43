# autovermietung_de.py
from __future__ import annotations

import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    create_engine, String, Enum as SAEnum, Integer, Numeric, Boolean, Date, DateTime,
    ForeignKey, CheckConstraint, Index, select
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker, Session
)

from fehler import FahrzeugNichtGefunden
from preise import Versicherung, als_decimal
from zeitraum import Zeitraum, heute_utc

logger = logging.getLogger(__name__)

# ================== DB ==================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///autovermietung.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true")

def engine_erstellen(url: str = DATABASE_URL, echo: bool = SQL_ECHO, **pool_optionen) -> Engine:
    # SQLite: Verbindungen werden von Request-Threads geteilt
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, future=True, connect_args=connect_args, **pool_optionen)

ENGINE = engine_erstellen()
SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, expire_on_commit=False, future=True)
# ========================================

class Base(DeclarativeBase):
    pass

# -------------------- Enums --------------------

class VermietStatus(str, Enum):
    AKTIV = "AKTIV"
    ZURUECKGEGEBEN = "ZURUECKGEGEBEN"
    STORNIERT = "STORNIERT"

class FahrzeugStatus(str, Enum):
    # abgeleitet, nie gespeichert
    VERFUEGBAR = "VERFUEGBAR"
    VERMIETET = "VERMIETET"

# -------------------- Tabellen --------------------

class Fahrzeug(Base):
    __tablename__ = "fahrzeug"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    marke: Mapped[str] = mapped_column(String(80), nullable=False)
    modell: Mapped[str] = mapped_column(String(120), nullable=False)
    kennzeichen: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    tagessatz: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # Wartung o.ae., unabhaengig von Buchungen
    vermietbar: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    vermietungen: Mapped[List["Vermietung"]] = relationship(back_populates="fahrzeug")

    __table_args__ = (
        CheckConstraint("tagessatz > 0", name="ck_tagessatz_positiv"),
    )

class Vermietung(Base):
    __tablename__ = "vermietung"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fahrzeug_id: Mapped[int] = mapped_column(ForeignKey("fahrzeug.id", ondelete="RESTRICT"), nullable=False)
    kunde_ref: Mapped[Optional[str]] = mapped_column(String(80))

    start_datum: Mapped[date] = mapped_column(Date, nullable=False)
    end_datum: Mapped[date] = mapped_column(Date, nullable=False)  # exklusiv

    versicherung: Mapped[Versicherung] = mapped_column(SAEnum(Versicherung), nullable=False, default=Versicherung.KEINE)
    betrag: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[VermietStatus] = mapped_column(SAEnum(VermietStatus), default=VermietStatus.AKTIV, nullable=False)
    erstellt_am: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    beendet_am: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    fahrzeug: Mapped[Fahrzeug] = relationship(back_populates="vermietungen")

    __table_args__ = (
        CheckConstraint("end_datum > start_datum", name="ck_zeitraum_nicht_leer"),
        Index("ix_vermietung_fahrzeug_status", "fahrzeug_id", "status"),
    )

    @property
    def zeitraum(self) -> Zeitraum:
        return Zeitraum(self.start_datum, self.end_datum)

# -------------------- Setup --------------------

def init_db(engine: Optional[Engine] = None) -> None:
    Base.metadata.create_all(engine or ENGINE)

# -------------------- Katalog (nur was die Buchung braucht) --------------------

def fahrzeug_anlegen(
    s: Session, marke: str, modell: str, kennzeichen: str, tagessatz, vermietbar: bool = True
) -> Fahrzeug:
    satz = als_decimal(tagessatz)
    if satz <= 0: raise ValueError("tagessatz muss positiv sein")
    f = Fahrzeug(marke=marke, modell=modell, kennzeichen=kennzeichen, tagessatz=satz, vermietbar=vermietbar)
    s.add(f)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise ValueError(f"Kennzeichen '{kennzeichen}' existiert bereits.")
    s.refresh(f); return f

def fahrzeug_laden(s: Session, fahrzeug_id: int) -> Fahrzeug:
    f = s.get(Fahrzeug, fahrzeug_id)
    if not f: raise FahrzeugNichtGefunden(fahrzeug_id)
    return f

def fahrzeug_vermietbar_setzen(s: Session, fahrzeug_id: int, vermietbar: bool) -> Fahrzeug:
    f = fahrzeug_laden(s, fahrzeug_id)
    f.vermietbar = vermietbar
    s.commit(); s.refresh(f)
    logger.info(f"[KATALOG] Fahrzeug {fahrzeug_id} vermietbar={vermietbar}")
    return f

# -------------------- Verfuegbarkeit --------------------

def aktive_vermietungen(s: Session, fahrzeug_id: int) -> List[Vermietung]:
    """Aktive Vermietungen eines Fahrzeugs, aufsteigend nach Startdatum.

    Stand zum Zeitpunkt des Aufrufs; ``populate_existing`` verhindert, dass
    bereits geladene Objekte der Session einen veralteten Status liefern.
    """
    v = Vermietung
    q = (
        select(v)
        .where(v.fahrzeug_id == fahrzeug_id, v.status == VermietStatus.AKTIV)
        .order_by(v.start_datum, v.id)
        .execution_options(populate_existing=True)
    )
    return list(s.scalars(q))

def finde_konflikt(s: Session, fahrzeug_id: int, zeitraum: Zeitraum) -> Optional[Vermietung]:
    # geordneter Scan: die frueheste ueberlappende Vermietung gewinnt
    for m in aktive_vermietungen(s, fahrzeug_id):
        if m.zeitraum.ueberlappt(zeitraum):
            return m
    return None

def naechster_freier_tag(s: Session, fahrzeug_id: int, zeitraum: Zeitraum) -> Optional[date]:
    konflikt = finde_konflikt(s, fahrzeug_id, zeitraum)
    return None if konflikt is None else konflikt.end_datum

def fahrzeug_status(s: Session, fahrzeug_id: int, stichtag: Optional[date] = None) -> FahrzeugStatus:
    fahrzeug_laden(s, fahrzeug_id)
    tag = stichtag or heute_utc()
    for m in aktive_vermietungen(s, fahrzeug_id):
        if m.zeitraum.enthaelt(tag):
            return FahrzeugStatus.VERMIETET
    return FahrzeugStatus.VERFUEGBAR
