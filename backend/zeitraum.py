# zeitraum.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from fehler import UngueltigerZeitraum, ZeitraumOhneDauer


def heute_utc() -> date:
    return datetime.now(timezone.utc).date()

def tag_utc(zeitpunkt: datetime) -> date:
    """Kalendertag eines Zeitpunkts in UTC. Naive Zeitpunkte gelten als UTC."""
    if zeitpunkt.tzinfo is None:
        return zeitpunkt.date()
    return zeitpunkt.astimezone(timezone.utc).date()

def tage_zwischen(start: date, ende: date) -> int:
    # Ende exklusiv, nie negativ
    return max(0, (ende - start).days)


@dataclass(frozen=True)
class Zeitraum:
    """Halboffenes Intervall ganzer Kalendertage: ``start`` inklusiv, ``ende`` exklusiv.

    ``Zeitraum(date(2024, 1, 1), date(2024, 1, 3))`` umfasst zwei Miettage.
    Zwei Zeitraeume, die sich nur beruehren (``a.ende == b.start``), ueberlappen
    nicht; das erlaubt Rueckgabe und Neuvermietung am selben Tag.
    """

    start: date
    ende: date

    def __post_init__(self) -> None:
        if isinstance(self.start, datetime) or isinstance(self.ende, datetime):
            raise TypeError("Zeitraum erwartet date, nicht datetime (siehe aus_zeitpunkten)")
        if self.start == self.ende:
            raise ZeitraumOhneDauer(self.start, self.ende)
        if self.start > self.ende:
            raise UngueltigerZeitraum(self.start, self.ende)

    @classmethod
    def aus_zeitpunkten(cls, start: datetime, ende: datetime) -> "Zeitraum":
        return cls(tag_utc(start), tag_utc(ende))

    @property
    def tage(self) -> int:
        return tage_zwischen(self.start, self.ende)

    def ueberlappt(self, other: "Zeitraum") -> bool:
        return ueberlappt(self, other)

    def enthaelt(self, tag: date) -> bool:
        return self.start <= tag < self.ende

    def verschoben(self, tage: int) -> "Zeitraum":
        delta = timedelta(days=tage)
        return Zeitraum(self.start + delta, self.ende + delta)

    def __str__(self) -> str:
        return f"{datum_de(self.start)} - {datum_de(self.ende)}"


def ueberlappt(a: Zeitraum, b: Zeitraum) -> bool:
    return a.start < b.ende and b.start < a.ende


# -------------------- Datumsformat DE --------------------

def datum_de(d: date) -> str:
    return f"{d.day:02d}.{d.month:02d}.{d.year}"

def datum_aus_de(text: str) -> date:
    """``"DD.MM.YYYY"`` -> date. Wirft ValueError bei anderem Format."""
    teile = [t.strip() for t in text.split(".")]
    if len(teile) != 3 or not all(teile):
        raise ValueError(f"Datum '{text}' nicht im Format TT.MM.JJJJ")
    tag, monat, jahr = (int(t) for t in teile)
    return date(jahr, monat, tag)
