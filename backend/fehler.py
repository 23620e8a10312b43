# fehler.py
from __future__ import annotations

from typing import Optional


class VermietungsFehler(Exception):
    """Basis aller fachlichen Fehler der Autovermietung."""
    wiederholbar = False


# -------------------- Eingabefehler --------------------
# ValueError als zweite Basis: bestehende "except ValueError"-Aufrufer fangen weiter.

class EingabeFehler(VermietungsFehler, ValueError):
    pass

class UngueltigerZeitraum(EingabeFehler):
    def __init__(self, start, ende, meldung: Optional[str] = None):
        self.start = start
        self.ende = ende
        super().__init__(meldung or f"Ungueltiger Zeitraum: start {start} muss vor ende {ende} liegen")

class ZeitraumOhneDauer(UngueltigerZeitraum):
    def __init__(self, start, ende):
        super().__init__(start, ende, f"Zeitraum ohne Dauer: {start} bis {ende} umfasst keinen Miettag")

class FahrzeugNichtGefunden(EingabeFehler):
    def __init__(self, fahrzeug_id: int):
        self.fahrzeug_id = fahrzeug_id
        super().__init__(f"Fahrzeug {fahrzeug_id} nicht gefunden")

class VermietungNichtGefunden(EingabeFehler):
    def __init__(self, vermietung_id: Optional[int] = None, meldung: Optional[str] = None):
        self.vermietung_id = vermietung_id
        super().__init__(meldung or f"Vermietung {vermietung_id} nicht gefunden")


# -------------------- Fachliche Ablehnungen --------------------

class Ablehnung(VermietungsFehler):
    """Erwartetes Ergebnis einer Geschaeftsregel, kein technischer Fehler."""

class FahrzeugNichtVermietbar(Ablehnung):
    def __init__(self, fahrzeug_id: int):
        self.fahrzeug_id = fahrzeug_id
        super().__init__(f"Fahrzeug {fahrzeug_id} ist derzeit nicht vermietbar")

class VermietungNichtAktiv(Ablehnung):
    def __init__(self, vermietung_id: int, status):
        self.vermietung_id = vermietung_id
        self.status = status
        super().__init__(f"Vermietung {vermietung_id} ist nicht aktiv (Status {getattr(status, 'value', status)})")

class StornierungNichtMoeglich(Ablehnung):
    def __init__(self, vermietung_id: int, start_datum):
        self.vermietung_id = vermietung_id
        self.start_datum = start_datum
        super().__init__(f"Vermietung {vermietung_id} hat am {start_datum} begonnen und kann nicht mehr storniert werden")


# -------------------- Infrastruktur --------------------

class VoruebergehenderFehler(VermietungsFehler):
    """Atomarer Abschnitt nicht abgeschlossen; der Aufruf kann komplett wiederholt werden."""
    wiederholbar = True
