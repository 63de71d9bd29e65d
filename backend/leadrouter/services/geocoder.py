# backend/leadrouter/services/geocoder.py
"""
Postal code geocoding with a tiered fallback chain

Tiers:
1. External provider (Google Geocoding API) - only when an API key is configured
2. Static postal-code lookup table (injected ZipCodeDirectory)
3. Coarse regional estimate from the leading ZIP digit

Provider failures never reach callers; they just move resolution to the next tier.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from leadrouter.config import settings
from leadrouter.services.geo import is_valid_coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    """Resolved coordinates plus how they were obtained."""
    latitude: float
    longitude: float
    method: str = "provider"
    estimated: bool = False
    region: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "method": self.method,
            "estimated": self.estimated,
        }
        if self.region:
            data["region"] = self.region
        return data


# Known ZIP centroids used when the provider is unavailable
DEFAULT_ZIP_COORDINATES: Dict[str, Tuple[float, float]] = {
    "10001": (40.7505, -73.9934),   # New York
    "90210": (34.0901, -118.4065),  # Beverly Hills
    "60601": (41.8827, -87.6233),   # Chicago
    "77001": (29.7749, -95.3656),   # Houston
    "85001": (33.4484, -112.0740),  # Phoenix
}

# Leading ZIP digit -> rough regional centroid
REGIONAL_CENTROIDS: Dict[int, Tuple[float, float, str]] = {
    0: (42.0, -71.0, "Northeast"),
    1: (40.7, -74.0, "NY/NJ area"),
    2: (38.9, -77.0, "DC/MD/VA area"),
    3: (33.7, -84.4, "Southeast"),
    4: (36.2, -86.8, "Kentucky/Tennessee"),
    5: (41.9, -87.6, "Great Lakes"),
    6: (32.8, -96.8, "South Central"),
    7: (39.1, -94.6, "Plains"),
    8: (39.7, -104.9, "Mountain"),
    9: (37.4, -122.1, "West Coast"),
}

# 000-004 are not assigned by USPS; the lowest real ZIP is 00501
UNASSIGNED_ZIP_PREFIXES = {"000", "001", "002", "003", "004"}

US_ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")


def clean_postal_code(postal_code) -> str:
    """Strip everything but digits and hyphens, truncated to ZIP+4 length."""
    if postal_code is None:
        return ""
    cleaned = re.sub(r"[^\d-]", "", str(postal_code))
    if re.fullmatch(r"\d{9}", cleaned):
        cleaned = f"{cleaned[:5]}-{cleaned[5:]}"
    return cleaned[:10]


def base_zip(postal_code: str) -> str:
    """The 5-digit part of a cleaned ZIP or ZIP+4."""
    return postal_code.split("-")[0]


def is_valid_us_zip(postal_code: str) -> bool:
    return bool(US_ZIP_PATTERN.match(postal_code or ""))


class ZipCodeDirectory:
    """Explicitly scoped postal-code -> coordinate lookup table."""

    def __init__(self, entries: Optional[Dict[str, Tuple[float, float]]] = None):
        self._entries = dict(DEFAULT_ZIP_COORDINATES if entries is None else entries)

    def lookup(self, zip_code: str) -> Optional[Tuple[float, float]]:
        return self._entries.get(zip_code)

    def add(self, zip_code: str, latitude: float, longitude: float) -> None:
        self._entries[zip_code] = (latitude, longitude)

    def __len__(self) -> int:
        return len(self._entries)


class GoogleGeocodingProvider:
    """Google Geocoding API client."""

    GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def geocode(self, postal_code: str) -> Optional[Tuple[float, float]]:
        """Return (lat, lon) for a postal code, or None when the API has no match."""
        params = {
            "address": postal_code,
            "components": "country:US",
            "key": self.api_key,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.GEOCODE_URL, params=params)
            response.raise_for_status()
            data = response.json()

        results = data.get("results") or []
        if data.get("status") not in (None, "OK") or not results:
            return None

        location = results[0].get("geometry", {}).get("location", {})
        lat, lng = location.get("lat"), location.get("lng")
        if not is_valid_coordinates(lat, lng):
            return None
        return float(lat), float(lng)


class Geocoder:
    """Resolve postal codes to coordinates through provider -> table -> estimate."""

    def __init__(
        self,
        provider: Optional[GoogleGeocodingProvider] = None,
        directory: Optional[ZipCodeDirectory] = None,
    ):
        self.provider = provider
        self.directory = directory if directory is not None else ZipCodeDirectory()

    async def resolve(self, postal_code) -> Optional[Coordinates]:
        """
        Resolve a postal code.

        Returns None (NotFound) when no tier can place it.
        """
        clean_zip = clean_postal_code(postal_code)
        if not clean_zip:
            logger.warning("No zip code provided for geocoding")
            return None

        zip5 = base_zip(clean_zip)

        if self.provider is not None:
            try:
                result = await self.provider.geocode(clean_zip)
                if result:
                    logger.info(f"Geocoded zip {clean_zip} via provider: {result}")
                    return Coordinates(latitude=result[0], longitude=result[1], method="google_api")
            except Exception as e:
                logger.warning(f"Geocoding provider failed for {clean_zip}, falling back: {e}")

        fallback = self.directory.lookup(zip5)
        if fallback:
            logger.info(f"Using fallback coordinates for zip {zip5}")
            return Coordinates(latitude=fallback[0], longitude=fallback[1], method="fallback_database")

        estimated = self.estimate(zip5)
        if estimated:
            logger.warning(
                f"Using estimated coordinates for zip {zip5}: "
                f"{estimated.latitude}, {estimated.longitude} ({estimated.region})"
            )
            return estimated

        logger.warning(f"Could not geocode zip code {clean_zip}")
        return None

    @staticmethod
    def estimate(zip_code: str) -> Optional[Coordinates]:
        """Rough regional centroid for a 5-digit US ZIP, shifted by its second digit."""
        if not is_valid_us_zip(zip_code) or zip_code[:3] in UNASSIGNED_ZIP_PREFIXES:
            return None

        first_digit = int(zip_code[0])
        second_digit = int(zip_code[1])
        lat, lon, region = REGIONAL_CENTROIDS[first_digit]
        variance = (second_digit - 5) * 0.5

        return Coordinates(
            latitude=lat + variance,
            longitude=lon + variance,
            method="estimation",
            estimated=True,
            region=region,
        )


def create_geocoder(directory: Optional[ZipCodeDirectory] = None) -> Geocoder:
    """Geocoder wired from settings (provider only when an API key is set)."""
    provider = None
    if settings.GOOGLE_MAPS_API_KEY:
        provider = GoogleGeocodingProvider(
            api_key=settings.GOOGLE_MAPS_API_KEY,
            timeout=settings.GEOCODER_TIMEOUT_SECONDS,
        )
    return Geocoder(provider=provider, directory=directory)
