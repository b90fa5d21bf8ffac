"""Facility-code location directory.

The bundled table maps IATA-style facility codes (the ``colo=`` value an
edge reports) to region, country and city.  A user-supplied JSON file in the
same shape can replace it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from edgeprobe.config import UNKNOWN_COUNTRY, UNKNOWN_COUNTRY_FLAG, UNKNOWN_FLAG
from edgeprobe.exceptions import SetupError
from edgeprobe.models import LocationInfo

logger = logging.getLogger(__name__)

BUNDLED_LOCATIONS = Path(__file__).parent / "data" / "locations.json"


class LocationDirectory:
    """Static mapping from facility code to :class:`LocationInfo`."""

    def __init__(self, entries: dict[str, LocationInfo]):
        self._entries = entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, code: str) -> bool:
        return code.upper() in self._entries

    def lookup(self, code: str) -> Optional[LocationInfo]:
        """Return the location for *code*, or None when it is not known."""
        return self._entries.get(code.upper())

    @classmethod
    def from_records(cls, records: list[dict]) -> LocationDirectory:
        entries: dict[str, LocationInfo] = {}
        for rec in records:
            code = rec.get("code")
            if not code:
                raise ValueError(f"location entry without code: {rec!r}")
            entries[code.upper()] = LocationInfo(
                region=rec.get("region", ""),
                country_code=rec.get("country_code", ""),
                country_name=rec.get("country", ""),
                city=rec.get("city", ""),
                lat=rec.get("lat"),
                lon=rec.get("lon"),
            )
        return cls(entries)

    @classmethod
    def load(cls, path: Optional[str | Path] = None) -> LocationDirectory:
        """Load a directory from *path*, or the bundled table when omitted.

        Raises
        ------
        SetupError
            If the file cannot be read or does not hold a list of entries.
        """
        path = Path(path) if path else BUNDLED_LOCATIONS
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("expected a JSON list of location entries")
            directory = cls.from_records(data)
        except (OSError, ValueError) as exc:
            raise SetupError(f"Failed to load location data from {path}: {exc}") from exc

        logger.debug("Loaded %d facility locations from %s", len(directory), path)
        return directory


def country_flag(country_code: str) -> str:
    """Return the regional-indicator flag emoji for a two-letter country code."""
    if country_code == UNKNOWN_COUNTRY:
        return UNKNOWN_COUNTRY_FLAG
    code = country_code.upper()
    if len(code) != 2 or not code.isascii() or not code.isalpha():
        return UNKNOWN_FLAG
    return "".join(chr(0x1F1E6 + ord(c) - ord("A")) for c in code)
