# buchung_de.py
"""Buchungskoordinator: Angebot, Reservierung, Rueckgabe, Stornierung.

Die Konfliktpruefung und das Anlegen der Vermietung laufen als ein atomarer
Abschnitt pro Fahrzeug:

* eine prozesslokale Sperre je Fahrzeug (``threading.Lock``), die mit
  begrenzter Wartezeit erworben wird, und
* innerhalb davon ``SELECT ... FOR UPDATE`` auf die Fahrzeugzeile, das auf
  Datenbanken mit Zeilensperren (PostgreSQL) auch mehrere Prozesse serialisiert.

SQLite (Standard fuer ``DATABASE_URL``) ignoriert ``FOR UPDATE``. Dort gilt
die Atomaritaet nur innerhalb eines Prozesses; mehrere Worker auf derselben
SQLite-Datei koennen doppelt buchen. Fuer mehrere Prozesse PostgreSQL nutzen.

Vor dem Warten auf die Sperre wird die Transaktion beendet, damit wartende
Buchungen keine Verbindung aus dem Pool belegen. Buchungen verschiedener
Fahrzeuge teilen weder Sperre noch Verbindung. Kein Aufruf wartet auf das
Freiwerden eines Zeitraums: ein belegter Zeitraum fuehrt sofort zu
``BuchungsKonflikt``.
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from autovermietung_de import (
    Fahrzeug, Vermietung, VermietStatus,
    fahrzeug_laden, finde_konflikt, aktive_vermietungen,
)
from fehler import (
    FahrzeugNichtGefunden, FahrzeugNichtVermietbar, VermietungNichtGefunden,
    VermietungNichtAktiv, StornierungNichtMoeglich, VoruebergehenderFehler,
)
from konflikt import BuchungsKonflikt, konflikt_bericht
from preise import Versicherung, preis_berechnen
from zeitraum import Zeitraum, heute_utc

logger = logging.getLogger(__name__)

SPERR_TIMEOUT_S = float(os.getenv("BUCHUNG_SPERR_TIMEOUT_S", "5.0"))

# -------------------- Sperren je Fahrzeug --------------------

_sperren: Dict[int, threading.Lock] = {}
_sperren_lock = threading.Lock()

def _sperre_fuer(fahrzeug_id: int) -> threading.Lock:
    with _sperren_lock:
        sperre = _sperren.get(fahrzeug_id)
        if sperre is None:
            sperre = _sperren[fahrzeug_id] = threading.Lock()
        return sperre

@contextmanager
def fahrzeug_gesperrt(fahrzeug_id: int, timeout: Optional[float] = None) -> Iterator[None]:
    sperre = _sperre_fuer(fahrzeug_id)
    wartezeit = SPERR_TIMEOUT_S if timeout is None else timeout
    if not sperre.acquire(timeout=wartezeit):
        logger.warning(f"[SPERRE] Fahrzeug {fahrzeug_id}: Sperre nach {wartezeit}s nicht erhalten")
        raise VoruebergehenderFehler(f"Fahrzeug {fahrzeug_id} ist gerade in Bearbeitung, bitte erneut versuchen")
    try:
        yield
    finally:
        sperre.release()

# -------------------- Helper --------------------

def _zeitraum_pruefen(zeitraum: Zeitraum) -> None:
    if not isinstance(zeitraum, Zeitraum):
        raise TypeError("zeitraum muss ein Zeitraum sein")

def _fahrzeug_fuer_update(s: Session, fahrzeug_id: int) -> Fahrzeug:
    q = (
        select(Fahrzeug).where(Fahrzeug.id == fahrzeug_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    f = s.scalar(q)
    if f is None: raise FahrzeugNichtGefunden(fahrzeug_id)
    return f

def _vermietung_fuer_update(s: Session, vermietung_id: int) -> Vermietung:
    q = (
        select(Vermietung).where(Vermietung.id == vermietung_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    v = s.scalar(q)
    if v is None: raise VermietungNichtGefunden(vermietung_id)
    return v

def _beenden(s: Session, vermietung_id: int, ziel: VermietStatus, heute: Optional[date] = None) -> Vermietung:
    try:
        v = s.get(Vermietung, vermietung_id)
        if not v: raise VermietungNichtGefunden(vermietung_id)
        fahrzeug_id = v.fahrzeug_id
        # keine Verbindung halten, solange auf die Sperre gewartet wird
        s.rollback()

        with fahrzeug_gesperrt(fahrzeug_id):
            v = _vermietung_fuer_update(s, vermietung_id)
            ablehnung = None
            if v.status != VermietStatus.AKTIV:
                ablehnung = VermietungNichtAktiv(v.id, v.status)
            elif ziel == VermietStatus.STORNIERT and (heute or heute_utc()) >= v.start_datum:
                ablehnung = StornierungNichtMoeglich(v.id, v.start_datum)
            if ablehnung is not None:
                s.rollback()
                raise ablehnung
            v.status = ziel
            v.beendet_am = datetime.now(timezone.utc)
            s.commit(); s.refresh(v)
    except SQLAlchemyError as ex:
        s.rollback()
        logger.warning(f"[{ziel.value}] Vermietung {vermietung_id}: Transaktion abgebrochen: {ex}")
        raise VoruebergehenderFehler(f"Vermietung {vermietung_id} konnte nicht beendet werden, bitte erneut versuchen") from ex
    logger.info(f"[{ziel.value}] Vermietung {v.id} (Fahrzeug {v.fahrzeug_id}, {v.zeitraum})")
    return v

# -------------------- Angebot --------------------

def angebot(
    s: Session, fahrzeug_id: int, zeitraum: Zeitraum, versicherung: Versicherung = Versicherung.KEINE
) -> Decimal:
    """Preisvorschau ohne Reservierung. Prueft weder Verfuegbarkeit noch Vermietbarkeit."""
    try:
        f = fahrzeug_laden(s, fahrzeug_id)
    except SQLAlchemyError as ex:
        s.rollback()
        raise VoruebergehenderFehler(f"Fahrzeug {fahrzeug_id} konnte nicht geladen werden, bitte erneut versuchen") from ex
    _zeitraum_pruefen(zeitraum)
    return preis_berechnen(f.tagessatz, zeitraum, versicherung)

# -------------------- Reservieren --------------------

def reservieren(
    s: Session, fahrzeug_id: int, zeitraum: Zeitraum,
    versicherung: Versicherung = Versicherung.KEINE, kunde_ref: Optional[str] = None
) -> Vermietung:
    """Reserviert ``fahrzeug_id`` fuer ``zeitraum`` und gibt die neue Vermietung zurueck.

    Der Preis wird hier aus Tagessatz, Zeitraum und Versicherung berechnet;
    einen vom Aufrufer genannten Preis gibt es nicht. Bei ``BuchungsKonflikt``
    oder ``VoruebergehenderFehler`` ist nichts geschrieben worden.
    """
    try:
        f = fahrzeug_laden(s, fahrzeug_id)
        if not f.vermietbar: raise FahrzeugNichtVermietbar(fahrzeug_id)
        _zeitraum_pruefen(zeitraum)
        versicherung = Versicherung(versicherung)
        # keine Verbindung halten, solange auf die Sperre gewartet wird
        s.rollback()

        with fahrzeug_gesperrt(fahrzeug_id):
            f = _fahrzeug_fuer_update(s, fahrzeug_id)
            if not f.vermietbar:
                s.rollback()
                raise FahrzeugNichtVermietbar(fahrzeug_id)

            konflikt = finde_konflikt(s, fahrzeug_id, zeitraum)
            if konflikt is not None:
                bericht = konflikt_bericht(konflikt)
                s.rollback()
                logger.info(f"[RESERVIEREN] Fahrzeug {fahrzeug_id} {zeitraum} abgelehnt: belegt {bericht.konflikt_zeitraum}")
                raise BuchungsKonflikt(fahrzeug_id, bericht, angefragt=zeitraum)

            betrag = preis_berechnen(f.tagessatz, zeitraum, versicherung)
            v = Vermietung(
                fahrzeug_id=fahrzeug_id, kunde_ref=kunde_ref,
                start_datum=zeitraum.start, end_datum=zeitraum.ende,
                versicherung=versicherung, betrag=betrag, status=VermietStatus.AKTIV,
            )
            s.add(v)
            s.commit(); s.refresh(v)
    except SQLAlchemyError as ex:
        s.rollback()
        logger.warning(f"[RESERVIEREN] Fahrzeug {fahrzeug_id} {zeitraum}: Transaktion abgebrochen: {ex}")
        raise VoruebergehenderFehler(f"Reservierung fuer Fahrzeug {fahrzeug_id} fehlgeschlagen, bitte erneut versuchen") from ex

    logger.info(f"[RESERVIEREN] Vermietung {v.id}: Fahrzeug {fahrzeug_id} {zeitraum}, {versicherung.value}, {v.betrag}")
    return v

# -------------------- Rueckgabe & Stornierung --------------------

def zurueckgeben(s: Session, vermietung_id: int) -> Vermietung:
    return _beenden(s, vermietung_id, VermietStatus.ZURUECKGEGEBEN)

def stornieren(s: Session, vermietung_id: int, heute: Optional[date] = None) -> Vermietung:
    """Storniert eine aktive Vermietung; nur vor ihrem Starttag (UTC) moeglich."""
    return _beenden(s, vermietung_id, VermietStatus.STORNIERT, heute=heute)

def fahrzeug_zurueckgeben(s: Session, fahrzeug_id: int, stichtag: Optional[date] = None) -> Vermietung:
    try:
        fahrzeug_laden(s, fahrzeug_id)
        aktiv = aktive_vermietungen(s, fahrzeug_id)
    except SQLAlchemyError as ex:
        s.rollback()
        raise VoruebergehenderFehler(f"Vermietungen von Fahrzeug {fahrzeug_id} nicht lesbar, bitte erneut versuchen") from ex
    if not aktiv:
        raise VermietungNichtGefunden(meldung=f"Fahrzeug {fahrzeug_id} hat keine aktive Vermietung")
    tag = stichtag or heute_utc()
    laufend = next((m for m in aktiv if m.zeitraum.enthaelt(tag)), aktiv[0])
    return zurueckgeben(s, laufend.id)
