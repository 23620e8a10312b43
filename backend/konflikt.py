# konflikt.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

from fehler import Ablehnung
from zeitraum import Zeitraum, datum_de


@dataclass(frozen=True)
class Konfliktbericht:
    """Ablehnungsdaten fuer die Oberflaeche.

    Enthaelt bewusst nur Daten: keine Vermietungs-ID und keine Kundenreferenz
    der fremden Buchung.
    """

    konflikt_zeitraum: Zeitraum
    frei_ab: date

    def als_dict(self) -> Dict[str, object]:
        return {
            "konflikt_zeitraum": {
                "start": self.konflikt_zeitraum.start.isoformat(),
                "ende": self.konflikt_zeitraum.ende.isoformat(),
            },
            "frei_ab": self.frei_ab.isoformat(),
        }


def konflikt_bericht(vermietung) -> Konfliktbericht:
    z = Zeitraum(vermietung.start_datum, vermietung.end_datum)
    return Konfliktbericht(konflikt_zeitraum=z, frei_ab=z.ende)


class BuchungsKonflikt(Ablehnung):
    def __init__(self, fahrzeug_id: int, bericht: Konfliktbericht, angefragt: Optional[Zeitraum] = None):
        self.fahrzeug_id = fahrzeug_id
        self.bericht = bericht
        self.angefragt = angefragt
        super().__init__(
            f"Fahrzeug {fahrzeug_id} ist im Zeitraum {bericht.konflikt_zeitraum} bereits vermietet, "
            f"wieder frei ab {datum_de(bericht.frei_ab)}"
        )

    @property
    def konflikt_zeitraum(self) -> Zeitraum:
        return self.bericht.konflikt_zeitraum

    @property
    def frei_ab(self) -> date:
        return self.bericht.frei_ab
