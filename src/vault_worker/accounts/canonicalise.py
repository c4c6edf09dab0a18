"""
Institution and employer name canonicalisation.

Statement headers spell the same bank many ways ("MONZO BANK LTD",
"Monzo"). The canonical name identifies the account; the raw spelling is
kept alongside it as a variant.
"""

from dataclasses import dataclass

# Lowercased, whitespace-collapsed raw name -> canonical name
INSTITUTION_ALIASES: dict[str, str] = {
    "monzo bank ltd": "Monzo",
    "monzo bank limited": "Monzo",
    "monzo": "Monzo",
    "halifax plc": "Halifax",
    "halifax": "Halifax",
    "the vanguard group": "Vanguard",
    "vanguard uk": "Vanguard",
    "vanguard asset management": "Vanguard",
    "barclays bank uk plc": "Barclays",
    "barclays bank plc": "Barclays",
    "barclays": "Barclays",
    "hsbc uk bank plc": "HSBC",
    "hsbc": "HSBC",
    "lloyds bank plc": "Lloyds",
    "lloyds bank": "Lloyds",
    "nationwide building society": "Nationwide",
    "national westminster bank plc": "NatWest",
    "natwest": "NatWest",
    "starling bank": "Starling",
    "santander uk plc": "Santander",
}


@dataclass(frozen=True)
class CanonicalName:
    canonical: str | None
    raw: str | None


def _simplify(name: str) -> str:
    return " ".join(name.replace(",", " ").replace(".", " ").split()).lower()


def canonicalise_institution(name: str | None) -> CanonicalName:
    """Map a raw institution name to its canonical form.

    Unknown names are their own canonical form; empty input yields
    (None, None).
    """
    if name is None:
        return CanonicalName(None, None)
    raw = " ".join(str(name).split())
    if not raw:
        return CanonicalName(None, None)
    return CanonicalName(INSTITUTION_ALIASES.get(_simplify(raw), raw), raw)


def canonicalise_employer(name: str | None) -> str | None:
    """Trim an employer name; blank becomes None."""
    if name is None:
        return None
    trimmed = " ".join(str(name).split())
    return trimmed or None
