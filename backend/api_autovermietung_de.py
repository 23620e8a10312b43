# api_autovermietung_de.py
import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from autovermietung_de import (
    SessionLocal, init_db,
    # Enums
    VermietStatus, FahrzeugStatus,
    # Funktionen
    fahrzeug_anlegen, fahrzeug_laden, fahrzeug_vermietbar_setzen, fahrzeug_status, aktive_vermietungen,
    # Modelle
    Fahrzeug, Vermietung,
)
from buchung_de import reservieren, zurueckgeben, stornieren, fahrzeug_zurueckgeben
from fehler import (
    VermietungsFehler, EingabeFehler, Ablehnung, VoruebergehenderFehler,
    FahrzeugNichtGefunden, FahrzeugNichtVermietbar, VermietungNichtGefunden,
)
from konflikt import BuchungsKonflikt
from preise import Versicherung, preis_aufschluesseln
from zeitraum import Zeitraum

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # DB anlegen (falls nicht vorhanden)
    init_db(SessionLocal.kw.get("bind"))
    yield

app = FastAPI(title="Autovermietung API (DE)", version="1.0.0", lifespan=lifespan)

class CORSUndLogging(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.debug(f"[HTTP] {request.method} {request.url} from {request.headers.get('origin', 'unknown')}")

        if request.method == "OPTIONS":
            return Response(
                status_code=200,
                headers={
                    "access-control-allow-origin": "*",
                    "access-control-allow-methods": "GET, POST, PUT, OPTIONS",
                    "access-control-allow-headers": "*",
                    "access-control-max-age": "86400",
                }
            )

        response = await call_next(request)
        response.headers["access-control-allow-origin"] = "*"
        logger.debug(f"[HTTP] {request.method} {request.url.path} -> {response.status_code}")
        return response

app.add_middleware(CORSUndLogging)

# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------
class IdOut(BaseModel):
    id: int

class FahrzeugCreate(BaseModel):
    marke: str
    modell: str
    kennzeichen: str = Field(..., min_length=1, max_length=20)
    tagessatz: Decimal = Field(..., gt=0)
    vermietbar: bool = True

class FahrzeugVermietbar(BaseModel):
    vermietbar: bool

class FahrzeugOut(BaseModel):
    id: int
    marke: str
    modell: str
    kennzeichen: str
    tagessatz: Decimal
    vermietbar: bool
    status: FahrzeugStatus  # live berechnet

class AngebotAnfrage(BaseModel):
    fahrzeug_id: int
    start_datum: date
    end_datum: date
    versicherung: Versicherung = Versicherung.KEINE

class AngebotOut(BaseModel):
    fahrzeug_id: int
    start_datum: date
    end_datum: date
    versicherung: Versicherung
    tage: int
    basis: Decimal
    zuschlag: Decimal
    betrag: Decimal

class BuchungAnfrage(BaseModel):
    # Preisfelder des Clients werden ignoriert (nicht Teil des Schemas)
    start_datum: date
    end_datum: date
    versicherung: Versicherung = Versicherung.KEINE
    kunde_ref: Optional[str] = Field(default=None, max_length=80)

class RueckgabeAnfrage(BaseModel):
    stichtag: Optional[date] = None

class VermietungOut(BaseModel):
    id: int
    fahrzeug_id: int
    kunde_ref: Optional[str] = None
    start_datum: date
    end_datum: date
    tage: int
    versicherung: Versicherung
    betrag: Decimal
    status: VermietStatus
    erstellt_am: Optional[datetime] = None
    beendet_am: Optional[datetime] = None

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _session():
    return SessionLocal()

def _vm_to_out(v: Vermietung) -> VermietungOut:
    return VermietungOut(
        id=v.id, fahrzeug_id=v.fahrzeug_id, kunde_ref=v.kunde_ref,
        start_datum=v.start_datum, end_datum=v.end_datum, tage=v.zeitraum.tage,
        versicherung=v.versicherung, betrag=v.betrag, status=v.status,
        erstellt_am=v.erstellt_am, beendet_am=v.beendet_am
    )

def _fz_to_out(f: Fahrzeug, status: FahrzeugStatus) -> FahrzeugOut:
    return FahrzeugOut(
        id=f.id, marke=f.marke, modell=f.modell, kennzeichen=f.kennzeichen,
        tagessatz=f.tagessatz, vermietbar=f.vermietbar, status=status
    )

def _http_fehler(ex: VermietungsFehler) -> HTTPException:
    if isinstance(ex, BuchungsKonflikt):
        return HTTPException(409, {"meldung": str(ex), "konflikt": ex.bericht.als_dict()})
    if isinstance(ex, (FahrzeugNichtGefunden, VermietungNichtGefunden)):
        return HTTPException(404, str(ex))
    if isinstance(ex, EingabeFehler):
        return HTTPException(400, str(ex))
    if isinstance(ex, Ablehnung):
        return HTTPException(409, str(ex))
    if isinstance(ex, VoruebergehenderFehler):
        return HTTPException(503, str(ex), headers={"Retry-After": "1"})
    logger.error(f"[HTTP] Unbekannter Fachfehler: {ex!r}", exc_info=ex)
    return HTTPException(500, "Interner Fehler")

# -----------------------------------------------------------------------------
# Basis
# -----------------------------------------------------------------------------
@app.get("/health")
def health():
    db = "ok"
    with _session() as s:
        try:
            s.execute(text("SELECT 1"))
        except SQLAlchemyError as ex:
            logger.error(f"[HEALTH] DB nicht erreichbar: {ex}", exc_info=True)
            db = "fehler"
    return {"status": "ok" if db == "ok" else "degradiert", "db": db,
            "time": datetime.now(timezone.utc).isoformat()}

# -----------------------------------------------------------------------------
# Fahrzeuge (minimaler Katalog)
# -----------------------------------------------------------------------------
@app.post("/fahrzeuge", response_model=IdOut, status_code=201)
def api_fahrzeug_anlegen(payload: FahrzeugCreate):
    with _session() as s:
        try:
            f = fahrzeug_anlegen(s, payload.marke, payload.modell, payload.kennzeichen,
                                 payload.tagessatz, payload.vermietbar)
            return IdOut(id=f.id)
        except ValueError as ex:
            raise HTTPException(400, str(ex))

@app.get("/fahrzeuge/{fahrzeug_id}", response_model=FahrzeugOut)
def api_fahrzeug_get(fahrzeug_id: int):
    with _session() as s:
        try:
            f = fahrzeug_laden(s, fahrzeug_id)
            return _fz_to_out(f, fahrzeug_status(s, fahrzeug_id))
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

@app.put("/fahrzeuge/{fahrzeug_id}/vermietbar", response_model=FahrzeugOut)
def api_fahrzeug_vermietbar(fahrzeug_id: int, payload: FahrzeugVermietbar):
    with _session() as s:
        try:
            f = fahrzeug_vermietbar_setzen(s, fahrzeug_id, payload.vermietbar)
            return _fz_to_out(f, fahrzeug_status(s, fahrzeug_id))
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

# -----------------------------------------------------------------------------
# Angebot & Buchung
# -----------------------------------------------------------------------------
@app.post("/angebote", response_model=AngebotOut)
def api_angebot(payload: AngebotAnfrage):
    with _session() as s:
        try:
            f = fahrzeug_laden(s, payload.fahrzeug_id)
            z = Zeitraum(payload.start_datum, payload.end_datum)
            p = preis_aufschluesseln(f.tagessatz, z, payload.versicherung)
            return AngebotOut(
                fahrzeug_id=f.id, start_datum=z.start, end_datum=z.ende, versicherung=payload.versicherung,
                tage=p.tage, basis=p.basis, zuschlag=p.zuschlag, betrag=p.betrag
            )
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

@app.post("/fahrzeuge/{fahrzeug_id}/vermieten", response_model=VermietungOut, status_code=201)
def api_vermieten(fahrzeug_id: int, payload: BuchungAnfrage):
    with _session() as s:
        try:
            # Fahrzeug vor dem Zeitraum pruefen: 404/409 gehen vor 400
            f = fahrzeug_laden(s, fahrzeug_id)
            if not f.vermietbar:
                raise FahrzeugNichtVermietbar(fahrzeug_id)
            z = Zeitraum(payload.start_datum, payload.end_datum)
            v = reservieren(s, fahrzeug_id, z, payload.versicherung, payload.kunde_ref)
            return _vm_to_out(v)
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

@app.get("/fahrzeuge/{fahrzeug_id}/vermietungen", response_model=List[VermietungOut])
def api_aktive_vermietungen(fahrzeug_id: int):
    with _session() as s:
        try:
            fahrzeug_laden(s, fahrzeug_id)
            return [_vm_to_out(v) for v in aktive_vermietungen(s, fahrzeug_id)]
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

@app.post("/fahrzeuge/{fahrzeug_id}/rueckgabe", response_model=VermietungOut)
def api_fahrzeug_rueckgabe(fahrzeug_id: int, payload: Optional[RueckgabeAnfrage] = None):
    with _session() as s:
        try:
            v = fahrzeug_zurueckgeben(s, fahrzeug_id, stichtag=payload.stichtag if payload else None)
            return _vm_to_out(v)
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

# -----------------------------------------------------------------------------
# Vermietungen
# -----------------------------------------------------------------------------
@app.get("/vermietungen/{vermietung_id}", response_model=VermietungOut)
def api_vermietung_get(vermietung_id: int):
    with _session() as s:
        v = s.get(Vermietung, vermietung_id)
        if not v:
            raise HTTPException(404, "Vermietung nicht gefunden")
        return _vm_to_out(v)

@app.post("/vermietungen/{vermietung_id}/rueckgabe", response_model=VermietungOut)
def api_rueckgabe(vermietung_id: int):
    with _session() as s:
        try:
            return _vm_to_out(zurueckgeben(s, vermietung_id))
        except VermietungsFehler as ex:
            raise _http_fehler(ex)

@app.post("/vermietungen/{vermietung_id}/stornieren", response_model=VermietungOut)
def api_stornieren(vermietung_id: int):
    with _session() as s:
        try:
            return _vm_to_out(stornieren(s, vermietung_id))
        except VermietungsFehler as ex:
            raise _http_fehler(ex)
