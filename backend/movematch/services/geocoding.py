import asyncio
import logging
import os
from typing import Optional, Tuple

import httpx

# Postal-code geocoding with Pelias search and Nominatim fallback
# Environment variables used:
# - PELIAS_BASE (e.g., https://pelias.example.org)
# - NOMINATIM_URL (e.g., https://nominatim.openstreetmap.org/search)
# - GEOCODER_USER_AGENT
# - GEOCODER_NOMINATIM_DELAY (seconds between requests)
# - GEOCODER_DISABLE (true/false)
# - GEOCODER_COUNTRY_CODES (default: fr)

PELIAS_DEFAULT = os.getenv('PELIAS_BASE', 'https://pelias.cephlabs.de')
NOMINATIM_DEFAULT = os.getenv('NOMINATIM_URL', 'https://nominatim.openstreetmap.org/search')
UA = os.getenv('GEOCODER_USER_AGENT', 'movematch-backend/1.0')
NOM_DELAY = float(os.getenv('GEOCODER_NOMINATIM_DELAY', '1.0') or '1.0')
COUNTRY_CODES = os.getenv('GEOCODER_COUNTRY_CODES', 'fr')

logger = logging.getLogger(__name__)


def geocoder_disabled() -> bool:
    return os.getenv('GEOCODER_DISABLE', 'false').lower() in ('1', 'true', 'yes')


async def _pelias_geocode(query: str, client: httpx.AsyncClient) -> Optional[Tuple[float, float]]:
    url = f"{PELIAS_DEFAULT.rstrip('/')}/v1/search"
    params = {'text': query, 'size': 1}
    if COUNTRY_CODES:
        params['boundary.country'] = COUNTRY_CODES.upper()
    try:
        r = await client.get(url, params=params, headers={'User-Agent': UA})
        if r.status_code != 200:
            return None
        feats = (r.json() or {}).get('features') or []
        if feats:
            coords = feats[0].get('geometry', {}).get('coordinates') or []
            if len(coords) == 2:
                lon, lat = coords
                return (float(lat), float(lon))
    except (httpx.HTTPError, ValueError, TypeError, AttributeError, IndexError) as exc:
        logger.debug('geocode.pelias_error query=%s err=%s', query, exc)
    return None


async def _nominatim_geocode(query: str, client: httpx.AsyncClient) -> Optional[Tuple[float, float]]:
    params = {'q': query, 'format': 'jsonv2', 'limit': 1}
    if COUNTRY_CODES:
        params['countrycodes'] = COUNTRY_CODES
    # public instances ask for at most one request per second
    await asyncio.sleep(NOM_DELAY)
    try:
        r = await client.get(NOMINATIM_DEFAULT, params=params, headers={'User-Agent': UA})
        if r.status_code != 200:
            return None
        arr = r.json() if 'application/json' in r.headers.get('content-type', '') else []
        if isinstance(arr, list) and arr:
            return (float(arr[0].get('lat')), float(arr[0].get('lon')))
    except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
        logger.debug('geocode.nominatim_error query=%s err=%s', query, exc)
    return None


async def geocode_address(query: str, *, timeout: float = 8.0) -> Optional[Tuple[float, float]]:
    """Return (lat, lon) for a free-text location such as ``'75001 Paris, France'``."""
    if geocoder_disabled() or not (query or '').strip():
        return None
    async with httpx.AsyncClient(timeout=timeout) as client:
        latlon = await _pelias_geocode(query, client)
        if latlon:
            return latlon
        return await _nominatim_geocode(query, client)
