import os
import logging
from typing import List, Optional, Tuple

import httpx

# Driving route summaries between geocoded points
# Env:
# - OSRM_BASE (e.g., https://router.project-osrm.org)
# - ORS_BASE (e.g., https://api.openrouteservice.org)
# - ORS_API_KEY (optional)
# - ROUTING_PREFER (osrm|ors)
# - OSRM_PROFILE (default: driving)

OSRM_BASE = os.getenv('OSRM_BASE', os.getenv('OSRM_URL', 'https://router.project-osrm.org')).rstrip('/')
ORS_BASE = os.getenv('ORS_BASE', os.getenv('ORS_URL', 'https://api.openrouteservice.org')).rstrip('/')
ORS_API_KEY = os.getenv('ORS_API_KEY')
PREFER = os.getenv('ROUTING_PREFER', 'osrm').lower()
OSRM_PROFILE = os.getenv('OSRM_PROFILE', 'driving')

logger = logging.getLogger(__name__)

# (distance metres, duration seconds)
RouteSummary = Tuple[float, float]


# non-JSON or malformed bodies count as no answer
_PARSE_ERRORS = (httpx.HTTPError, ValueError, TypeError, AttributeError, IndexError, KeyError)


async def _osrm_route(coords: List[Tuple[float, float]], timeout: float) -> Optional[RouteSummary]:
    # coords: list of (lat,lon); OSRM expects lon,lat semicolon separated
    pairs = [f"{lon:.6f},{lat:.6f}" for (lat, lon) in coords]
    url = f"{OSRM_BASE}/route/v1/{OSRM_PROFILE}/" + ";".join(pairs)
    params = {'overview': 'false', 'alternatives': 'false', 'steps': 'false'}
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.get(url, params=params)
        if r.status_code != 200:
            return None
        routes = (r.json() or {}).get('routes') or []
        if not routes:
            return None
        return (float(routes[0].get('distance') or 0.0), float(routes[0].get('duration') or 0.0))
    except _PARSE_ERRORS as exc:
        logger.debug('routing.osrm_error err=%s', exc)
        return None


async def _ors_route(coords: List[Tuple[float, float]], timeout: float) -> Optional[RouteSummary]:
    # ORS expects [[lon,lat], [lon,lat]]
    locations = [[c[1], c[0]] for c in coords]
    url = f"{ORS_BASE}/v2/directions/driving-car"
    headers = {'Content-Type': 'application/json'}
    if ORS_API_KEY:
        headers['Authorization'] = ORS_API_KEY
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.post(url, json={'coordinates': locations, 'units': 'm'}, headers=headers)
        if r.status_code != 200:
            return None
        summary = (((r.json() or {}).get('routes') or [{}])[0].get('summary') or {})
        if 'distance' not in summary:
            return None
        return (float(summary.get('distance') or 0.0), float(summary.get('duration') or 0.0))
    except _PARSE_ERRORS as exc:
        logger.debug('routing.ors_error err=%s', exc)
        return None


async def route_summary(coords: List[Tuple[float, float]], *, timeout: float = 10.0) -> Optional[RouteSummary]:
    """Return (distance metres, duration seconds) of a driving route through ``coords``.

    Tries the preferred engine first then falls back to the other.
    """
    if not coords or len(coords) < 2:
        return (0.0, 0.0)
    engines = (_ors_route, _osrm_route) if PREFER == 'ors' else (_osrm_route, _ors_route)
    for engine in engines:
        summary = await engine(coords, timeout)
        if summary is not None:
            return summary
    return None
