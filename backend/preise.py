# preise.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

from zeitraum import Zeitraum

CENT = Decimal("0.01")

Betrag = Union[Decimal, int, float, str]


class Versicherung(str, Enum):
    KEINE = "KEINE"
    TEILKASKO = "TEILKASKO"
    VOLLKASKO = "VOLLKASKO"

# Zuschlag pro Miettag
TAGESZUSCHLAG: Mapping[Versicherung, Decimal] = MappingProxyType({
    Versicherung.KEINE: Decimal("0.00"),
    Versicherung.TEILKASKO: Decimal("10.00"),
    Versicherung.VOLLKASKO: Decimal("20.00"),
})


@dataclass(frozen=True)
class Preisaufschluesselung:
    tage: int
    basis: Decimal
    zuschlag: Decimal
    betrag: Decimal


def runden(wert: Decimal) -> Decimal:
    return wert.quantize(CENT, rounding=ROUND_HALF_UP)

def als_decimal(wert: Betrag) -> Decimal:
    # float ueber str, damit 0.1 nicht als 0.1000000000000000055511151231257827 eingeht
    if isinstance(wert, Decimal):
        return wert
    if isinstance(wert, float):
        return Decimal(str(wert))
    return Decimal(wert)

def preis_aufschluesseln(
    tagessatz: Betrag, zeitraum: Zeitraum, versicherung: Versicherung = Versicherung.KEINE
) -> Preisaufschluesselung:
    satz = als_decimal(tagessatz)
    if not satz.is_finite() or satz <= 0:
        raise ValueError(f"tagessatz muss positiv sein, erhalten: {tagessatz}")
    tage = zeitraum.tage
    basis = satz * tage
    zuschlag = TAGESZUSCHLAG[Versicherung(versicherung)] * tage
    return Preisaufschluesselung(
        tage=tage, basis=runden(basis), zuschlag=runden(zuschlag), betrag=runden(basis + zuschlag)
    )

def preis_berechnen(
    tagessatz: Betrag, zeitraum: Zeitraum, versicherung: Versicherung = Versicherung.KEINE
) -> Decimal:
    """Gesamtpreis fuer ``zeitraum``: (tagessatz + Versicherungszuschlag) * Tage.

    Reine Funktion. Gerundet wird genau einmal, kaufmaennisch auf Cent
    (ROUND_HALF_UP) und erst auf die Summe.
    """
    return preis_aufschluesseln(tagessatz, zeitraum, versicherung).betrag
