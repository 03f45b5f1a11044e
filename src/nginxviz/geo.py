from __future__ import annotations

import ipaddress
import logging
from typing import Optional, Tuple

import geoip2.database
import geoip2.errors
from maxminddb import MODE_MEMORY
from maxminddb.errors import InvalidDatabaseError

from nginxviz.models import LogEntry

log = logging.getLogger(__name__)


class GeoLookupError(LookupError):
    INVALID = "not an IP address"
    NOT_FOUND = "no record"
    NO_COUNTRY = "record has no country"

    def __init__(self, ip: str, reason: str):
        super().__init__(f"no country for {ip!r}: {reason}")
        self.ip = ip
        self.reason = reason


class GeoDatabaseError(RuntimeError):
    pass


class GeoEnricher:
    """
    IP -> country lookups against an offline .mmdb country or city database.

    The reader is read-only once loaded, so one enricher can serve any number
    of concurrent lookups.
    """

    def __init__(self, reader, record_type: str = "country"):
        self._reader = reader
        self.record_type = record_type
        # both record types carry the same `country` block
        self._find = reader.city if record_type == "city" else reader.country

    @classmethod
    def open(cls, path: str) -> "GeoEnricher":
        try:
            reader = geoip2.database.Reader(path, mode=MODE_MEMORY)
        except FileNotFoundError as e:
            raise GeoDatabaseError(f"geo database not found at {path!r}") from e
        except (InvalidDatabaseError, ValueError, OSError) as e:
            raise GeoDatabaseError(f"geo database at {path!r} is unreadable: {e}") from e
        meta = reader.metadata()
        record_type = record_type_for(meta.database_type)
        if record_type is None:
            reader.close()
            raise GeoDatabaseError(
                f"geo database at {path!r} is a {meta.database_type} database, need a country or city one"
            )
        log.info("Loaded geo database %s (%s, built %s)", path, meta.database_type, meta.build_epoch)
        return cls(reader, record_type)

    def lookup(self, ip: str) -> Tuple[str, str]:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            raise GeoLookupError(ip, GeoLookupError.INVALID) from None

        try:
            resp = self._find(str(addr))
        except geoip2.errors.AddressNotFoundError:
            raise GeoLookupError(ip, GeoLookupError.NOT_FOUND) from None

        iso = resp.country.iso_code
        if not iso:
            raise GeoLookupError(ip, GeoLookupError.NO_COUNTRY)
        return iso, (resp.country.names or {}).get("en", "")

    def enrich(self, entry: LogEntry) -> LogEntry:
        iso, name = self.lookup(entry.ip)
        return entry.model_copy(update={"country": iso, "country_full": name})

    def close(self) -> None:
        self._reader.close()


def record_type_for(database_type: str) -> Optional[str]:
    """
    Which geoip2 lookup fits a database type such as "GeoLite2-City" or
    "DBIP-Country-Lite". geoip2 refuses country() on city databases and
    vice versa.
    """
    if "City" in database_type:
        return "city"
    if "Country" in database_type:
        return "country"
    return None
