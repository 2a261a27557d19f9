import logging
import os
from dataclasses import dataclass
from typing import Optional

import geoip2.database
import geoip2.errors

logger = logging.getLogger(__name__)

DEFAULT_CITY_DB = os.path.join(os.getcwd(), "GeoLite2-City.mmdb")


@dataclass(frozen=True)
class GeoInfo:
    city: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def label(self) -> str:
        return ", ".join(p for p in (self.city, self.country) if p) or "Unknown"


class GeoResolver:
    """Maps an IP to city/country/coordinates using a GeoLite2-City database.

    When the database file is missing every lookup returns None; the rest of
    the observatory keeps running without locations.
    """

    def __init__(self, city_db: Optional[str] = DEFAULT_CITY_DB, reader=None):
        self.reader = reader
        if self.reader is None and city_db:
            if os.path.isfile(city_db):
                self.reader = geoip2.database.Reader(city_db)
            else:
                logger.warning(f"[!] GeoIP database not found at {city_db}; locations disabled")

    def lookup_ip(self, ip: str) -> Optional[GeoInfo]:
        if self.reader is None:
            return None
        try:
            response = self.reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        return GeoInfo(
            city=response.city.name,
            country=response.country.iso_code,
            region=response.subdivisions.most_specific.iso_code,
            latitude=response.location.latitude,
            longitude=response.location.longitude,
        )

    def close(self):
        if self.reader is not None:
            self.reader.close()
            self.reader = None
