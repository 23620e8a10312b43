"""
Gleichzeitige Reservierungen: pro Fahrzeug gewinnt genau eine von mehreren
ueberlappenden Buchungen, verschiedene Fahrzeuge blockieren sich nicht.
"""
import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

import buchung_de
from autovermietung_de import Vermietung, engine_erstellen, fahrzeug_anlegen, init_db
from buchung_de import reservieren, fahrzeug_gesperrt
from fehler import VoruebergehenderFehler
from konflikt import BuchungsKonflikt
from zeitraum import Zeitraum

N = 12


def _gleichzeitig_reservieren(session_factory, auftraege):
    """Startet alle Auftraege (fahrzeug_id, zeitraum) moeglichst gleichzeitig."""
    start = threading.Barrier(len(auftraege))
    ergebnisse = [None] * len(auftraege)

    def lauf(i, fahrzeug_id, zeitraum):
        with session_factory() as s:
            start.wait()
            try:
                ergebnisse[i] = reservieren(s, fahrzeug_id, zeitraum)
            except Exception as ex:  # Ergebnis wird im Test ausgewertet
                ergebnisse[i] = ex

    threads = [threading.Thread(target=lauf, args=(i, fid, z)) for i, (fid, z) in enumerate(auftraege)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return ergebnisse


def test_genau_ein_gewinner_bei_gleichem_zeitraum(s, session_factory, fahrzeug):
    z = Zeitraum(date(2024, 1, 1), date(2024, 1, 5))
    ergebnisse = _gleichzeitig_reservieren(session_factory, [(fahrzeug.id, z)] * N)

    gewinner = [e for e in ergebnisse if isinstance(e, Vermietung)]
    konflikte = [e for e in ergebnisse if isinstance(e, BuchungsKonflikt)]
    assert len(gewinner) == 1
    assert len(konflikte) == N - 1
    # jeder Verlierer sieht den Zeitraum des Gewinners
    assert all(k.konflikt_zeitraum == z and k.frei_ab == date(2024, 1, 5) for k in konflikte)
    assert s.scalar(select(func.count(Vermietung.id))) == 1


def test_ueberlappende_varianten_hoechstens_nicht_ueberlappend(s, session_factory, fahrzeug):
    zeitraeume = [Zeitraum(date(2024, 2, 1 + i), date(2024, 2, 4 + i)) for i in range(N)]
    ergebnisse = _gleichzeitig_reservieren(session_factory, [(fahrzeug.id, z) for z in zeitraeume])

    assert all(isinstance(e, (Vermietung, BuchungsKonflikt)) for e in ergebnisse)
    gebucht = sorted(
        (Zeitraum(v.start_datum, v.end_datum) for v in s.scalars(select(Vermietung))),
        key=lambda z: z.start,
    )
    assert gebucht
    for a, b in zip(gebucht, gebucht[1:]):
        assert not a.ueberlappt(b)


def test_verschiedene_fahrzeuge_alle_erfolgreich(s, session_factory):
    ids = [fahrzeug_anlegen(s, "Skoda", "Octavia", f"HH-AV {i}", Decimal("45.00")).id for i in range(6)]
    z = Zeitraum(date(2024, 3, 1), date(2024, 3, 8))
    ergebnisse = _gleichzeitig_reservieren(session_factory, [(fid, z) for fid in ids])
    assert all(isinstance(e, Vermietung) for e in ergebnisse)
    assert sorted(e.fahrzeug_id for e in ergebnisse) == sorted(ids)


def test_gesperrtes_fahrzeug_blockiert_andere_nicht(s, fahrzeug):
    zweites = fahrzeug_anlegen(s, "Fiat", "500", "K-AV 5", Decimal("30.00"))
    with fahrzeug_gesperrt(fahrzeug.id):
        v = reservieren(s, zweites.id, Zeitraum(date(2024, 1, 1), date(2024, 1, 2)))
    assert v.betrag == Decimal("30.00")


def test_sperre_nicht_erhalten_ist_voruebergehend(s, fahrzeug, monkeypatch):
    monkeypatch.setattr(buchung_de, "SPERR_TIMEOUT_S", 0.05)
    with fahrzeug_gesperrt(fahrzeug.id):
        with pytest.raises(VoruebergehenderFehler):
            reservieren(s, fahrzeug.id, Zeitraum(date(2024, 1, 1), date(2024, 1, 2)))
    assert s.scalar(select(func.count(Vermietung.id))) == 0
    # nach Freigabe normal buchbar
    assert reservieren(s, fahrzeug.id, Zeitraum(date(2024, 1, 1), date(2024, 1, 2))).id is not None


@pytest.fixture
def kleiner_pool(tmp_path):
    # genau eine Verbindung, kurze Wartezeit auf den Pool
    eng = engine_erstellen(
        f"sqlite:///{tmp_path / 'pool.db'}", echo=False, pool_size=1, max_overflow=0, pool_timeout=0.2
    )
    init_db(eng)
    yield sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    eng.dispose()


class _MeldendeSperre:
    def __init__(self, sperre, wartet):
        self.sperre, self.wartet = sperre, wartet

    def acquire(self, timeout=-1):
        self.wartet.set()
        return self.sperre.acquire(timeout=timeout)

    def release(self):
        self.sperre.release()


def test_wartende_buchung_belegt_keine_verbindung(kleiner_pool, monkeypatch):
    with kleiner_pool() as s:
        a = fahrzeug_anlegen(s, "Opel", "Corsa", "D-AV 1", Decimal("40.00")).id
        b = fahrzeug_anlegen(s, "Opel", "Astra", "D-AV 2", Decimal("55.00")).id
    z = Zeitraum(date(2024, 4, 1), date(2024, 4, 3))
    wartet = threading.Event()
    ergebnis = []

    def lauf():
        with kleiner_pool() as s_a:
            try:
                ergebnis.append(reservieren(s_a, a, z))
            except Exception as ex:  # Ergebnis wird im Test ausgewertet
                ergebnis.append(ex)

    with fahrzeug_gesperrt(a):
        sperre_fuer = buchung_de._sperre_fuer
        monkeypatch.setattr(
            buchung_de, "_sperre_fuer",
            lambda fid: _MeldendeSperre(sperre_fuer(fid), wartet) if fid == a else sperre_fuer(fid),
        )
        t = threading.Thread(target=lauf)
        t.start()
        assert wartet.wait(5)
        # A wartet auf seine Sperre, B bekommt trotzdem die einzige Verbindung
        with kleiner_pool() as s_b:
            v = reservieren(s_b, b, z)
            assert v.fahrzeug_id == b and v.betrag == Decimal("110.00")
    t.join(timeout=10)

    assert len(ergebnis) == 1 and isinstance(ergebnis[0], Vermietung)
    assert ergebnis[0].fahrzeug_id == a


def test_erschoepfter_pool_ist_voruebergehend(kleiner_pool):
    with kleiner_pool() as s:
        fid = fahrzeug_anlegen(s, "Opel", "Corsa", "D-AV 3", Decimal("40.00")).id
    z = Zeitraum(date(2024, 4, 1), date(2024, 4, 3))

    with kleiner_pool() as belegt, kleiner_pool() as s:
        belegt.connection()
        with pytest.raises(VoruebergehenderFehler):
            reservieren(s, fid, z)
        belegt.rollback()
        assert reservieren(s, fid, z).fahrzeug_id == fid
