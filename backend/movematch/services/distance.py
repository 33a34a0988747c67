"""Postal-code to postal-code distance resolution.

``DistanceResolver.resolve`` asks a distance provider for a driving distance
and degrades to a deterministic department-prefix estimate whenever the
provider is missing, fails, or times out. It never raises on provider outage.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Optional, Protocol, Tuple

from ..errors import ProviderUnavailable
from ..schemas import DistanceResult
from ..settings import get_settings
from ..utils import compose_location, digits_only
from . import geocoding, routing

logger = logging.getLogger(__name__)

# average road speed used to derive a duration from a fallback distance
FALLBACK_SPEED_KMH = 70.0

# |prefix_a - prefix_b| -> km
_PREFIX_GAP_KM = {0: 25, 1: 50, 2: 80}
_FAR_KM = 120


def normalize_postal_code(value: Optional[str]) -> Tuple[str, bool]:
    """Return ``(code, well_formed)``.

    A French postal code must reduce to exactly five digits; anything else is
    returned trimmed and verbatim with ``well_formed=False``.
    """
    raw = str(value or '').strip()
    digits = digits_only(raw)
    if len(digits) == 5:
        return digits, True
    return raw, False


def fallback_km(origin: str, destination: str) -> int:
    if origin == destination:
        return 0
    a, b = origin[:2], destination[:2]
    if a == b and a:
        return _PREFIX_GAP_KM[0]
    if not (a.isdigit() and b.isdigit()):
        return _FAR_KM
    return _PREFIX_GAP_KM.get(abs(int(a) - int(b)), _FAR_KM)


def fallback_distance(origin: str, destination: str, *, confident: bool = True) -> DistanceResult:
    km = fallback_km(origin, destination)
    return DistanceResult(
        distance_km=km,
        duration_min=int(round(km / FALLBACK_SPEED_KMH * 60)),
        source='identical' if origin == destination else 'fallback',
        confident=confident,
    )


class DistanceProvider(Protocol):
    async def lookup(self, origin: str, destination: str) -> DistanceResult:
        """Return the driving distance between two location strings.

        Raises ``ProviderUnavailable`` when no answer can be produced.
        """
        ...


class RoutingDistanceProvider:
    """Geocode both ends then ask the routing engine for a driving route."""

    def __init__(self, *, timeout: Optional[float] = None) -> None:
        self._timeout = timeout if timeout is not None else get_settings().distance_provider_timeout_seconds

    async def lookup(self, origin: str, destination: str) -> DistanceResult:
        a, b = await asyncio.gather(
            geocoding.geocode_address(origin, timeout=self._timeout),
            geocoding.geocode_address(destination, timeout=self._timeout),
        )
        if not a or not b:
            raise ProviderUnavailable(f"could not geocode {origin!r} or {destination!r}")
        summary = await routing.route_summary([a, b], timeout=self._timeout)
        if summary is None:
            raise ProviderUnavailable(f"no route between {origin!r} and {destination!r}")
        metres, seconds = summary
        return DistanceResult(distance_km=int(round(metres / 1000.0)), duration_min=int(round(seconds / 60.0)))


class DistanceCache:
    """Bounded TTL memo of provider answers, owned by whoever builds the resolver."""

    def __init__(self, *, ttl_seconds: float = 900.0, max_entries: int = 2048, clock=time.monotonic) -> None:
        self._ttl = float(ttl_seconds)
        self._max = max(1, int(max_entries))
        self._clock = clock
        self._entries: OrderedDict[tuple, Tuple[float, DistanceResult]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: tuple) -> Optional[DistanceResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self._ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def put(self, key: tuple, value: DistanceResult) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class DistanceResolver:
    def __init__(
        self,
        provider: Optional[DistanceProvider] = None,
        *,
        cache: Optional[DistanceCache] = None,
        timeout: Optional[float] = None,
        country: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.cache = cache
        self.timeout = timeout if timeout is not None else settings.distance_provider_timeout_seconds
        self.country = country if country is not None else settings.geocode_country

    async def resolve(
        self,
        origin_postal: Optional[str],
        dest_postal: Optional[str],
        origin_city: Optional[str] = None,
        dest_city: Optional[str] = None,
    ) -> DistanceResult:
        origin, origin_ok = normalize_postal_code(origin_postal)
        destination, dest_ok = normalize_postal_code(dest_postal)
        confident = origin_ok and dest_ok
        if origin == destination or self.provider is None:
            return fallback_distance(origin, destination, confident=confident)

        key = (origin, destination, (origin_city or '').strip().lower(), (dest_city or '').strip().lower())
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        origin_query = compose_location(origin, origin_city, self.country) or origin
        dest_query = compose_location(destination, dest_city, self.country) or destination
        try:
            answer = await asyncio.wait_for(self.provider.lookup(origin_query, dest_query), timeout=self.timeout)
        except ProviderUnavailable as exc:
            logger.info('distance.fallback origin=%s destination=%s reason=%s', origin, destination, exc)
            return fallback_distance(origin, destination, confident=confident)
        except asyncio.TimeoutError:
            logger.warning('distance.fallback origin=%s destination=%s reason=timeout timeout=%.1fs', origin, destination, self.timeout)
            return fallback_distance(origin, destination, confident=confident)
        except Exception as exc:
            logger.warning(
                'distance.fallback origin=%s destination=%s reason=provider_error err=%s: %s',
                origin, destination, type(exc).__name__, exc,
            )
            return fallback_distance(origin, destination, confident=confident)

        result = DistanceResult(
            distance_km=int(round(answer.distance_km)),
            duration_min=int(round(answer.duration_min)),
            source='provider',
            confident=confident,
        )
        if self.cache is not None:
            self.cache.put(key, result)
        logger.debug('distance.provider origin=%s destination=%s km=%s', origin, destination, result.distance_km)
        return result


__all__ = [
    'DistanceCache',
    'DistanceProvider',
    'DistanceResolver',
    'RoutingDistanceProvider',
    'fallback_distance',
    'fallback_km',
    'normalize_postal_code',
]
