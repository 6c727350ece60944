"""
Canonical facility locations.

Raw upstream location strings are mapped onto this whitelist by exact
(case-insensitive) match. Anything else is rejected, never guessed.
"""

from typing import Optional


CANONICAL_LOCATIONS: tuple[str, ...] = (
    "Cincinnati — Broadwell Road",
    "Cincinnati — Colerain Avenue",
    "Cincinnati — School Road",
    "Cincinnati — Waycross Road",
    "Cincinnati — West Seymour Avenue",
    "Elizabethtown — Peterson Drive",
    "Erlanger — Kenton Lane Road 100",
    "Florence — Industrial Road",
    "Franklin — Washington Way",
    "Georgetown — Triport Road",
    "Louisville — Intermodal Drive",
    "Sparta — Johnson Road",
)

# Upstream locationId filter used when fetching each canonical location
LOCATION_ID_MAP: dict[str, str] = {
    "Cincinnati — Broadwell Road": "23",
    "Cincinnati — Colerain Avenue": "23",
    "Cincinnati — School Road": "23",
    "Cincinnati — Waycross Road": "23",
    "Cincinnati — West Seymour Avenue": "23",
    "Elizabethtown — Peterson Drive": "22",
    "Erlanger — Kenton Lane Road 100": "21",
    "Florence — Industrial Road": "21",
    "Franklin — Washington Way": "22",
    "Georgetown — Triport Road": "31",
    "Louisville — Intermodal Drive": "34",
    "Sparta — Johnson Road": "34",
}

# Rule location identifier -> keywords looked for in an item's location text
LOCATION_KEYWORDS: dict[str, list[str]] = {
    "637": ["louisville", "intermodal", "7300"],
    "21": ["florence", "industrial", "7405"],
    "22": ["elizabethtown", "peterson", "204"],
    "23": ["cincinnati", "school", "7660"],
    "24": ["dayton", "edwin", "moses", "835"],
    "25": ["columbus", "chantry"],
    "34": ["amelia", "ohio", "1260"],
    "35": ["vandalia", "industrial"],
}

_CANONICAL_BY_KEY = {name.lower(): name for name in CANONICAL_LOCATIONS}


def map_location(raw: Optional[str]) -> Optional[str]:
    """Map a raw location string to its canonical name, or None."""
    if not raw:
        return None
    return _CANONICAL_BY_KEY.get(raw.strip().lower())


def get_location_id(location_name: str) -> Optional[str]:
    """Upstream locationId for a canonical location."""
    return LOCATION_ID_MAP.get(location_name)


def keywords_for(location_identifier: str) -> list[str]:
    """Keywords that identify a rule location in free-form location text."""
    key = location_identifier.strip().lower()
    keywords = list(LOCATION_KEYWORDS.get(key, []))
    if key and key not in keywords:
        keywords.append(key)
    return keywords
