from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from ...enums import CandidateType, EntityKind
from ...datetime_utils import day_difference
from ...schemas import DistanceResult, EntityRef, MatchCandidate, Move, TransportationRequest
from ..distance import DistanceCache, DistanceResolver, RoutingDistanceProvider

from .config import (
    date_weight,
    default_volume_m3,
    distance_cache_enabled,
    distance_cache_max_entries,
    distance_cache_ttl_seconds,
    distance_parallelism,
    max_date_diff_days,
    max_leg_km,
    missing_date_diff_days,
    pair_timeout_seconds,
    truck_capacity_m3,
)
from .data import request_volume

logger = logging.getLogger(__name__)

ACTION_GROUP = 'group on one truck'
ACTION_ADD_TO_MOVE = 'add to this move'
ACTION_DEDICATED = 'contact a carrier for a dedicated route'


def _has_route(entity) -> bool:
    return bool(entity.departure_postal_code) and bool(entity.arrival_postal_code)


def _ref(entity) -> EntityRef:
    kind = EntityKind.move if isinstance(entity, Move) else EntityKind.client
    return EntityRef(kind=kind, id=entity.id)


def date_gap(first, second) -> int:
    diff = day_difference(first, second)
    return missing_date_diff_days() if diff is None else diff


def score(legs: Dict[str, int], days: int) -> float:
    return float(max(legs.values()) + days * date_weight())


def _legs_ok(legs: Dict[str, int]) -> bool:
    limit = max_leg_km()
    return all(km <= limit for km in legs.values())


class CandidateGenerator:
    """Pairwise scan of a request (and move) snapshot into ranked candidates.

    Every pair is evaluated in its own task, bounded by a semaphore and a
    per-pair timeout. A failing pair is logged and dropped; the batch goes on.
    """

    def __init__(
        self,
        resolver: DistanceResolver,
        *,
        parallelism: Optional[int] = None,
        pair_timeout: Optional[float] = None,
    ) -> None:
        self.resolver = resolver
        self._parallelism = max(1, parallelism or distance_parallelism())
        self._pair_timeout = pair_timeout if pair_timeout is not None else pair_timeout_seconds()

    async def generate(self, requests: Sequence[TransportationRequest]) -> List[MatchCandidate]:
        snapshot = tuple(requests)
        pairs = [
            (snapshot[i], snapshot[j])
            for i in range(len(snapshot))
            for j in range(i + 1, len(snapshot))
        ]
        return await self._run(pairs, self._evaluate_request_pair, label='requests')

    async def generate_for_moves(
        self,
        requests: Sequence[TransportationRequest],
        moves: Sequence[Move],
    ) -> List[MatchCandidate]:
        snapshot = tuple(requests)
        trucks = tuple(moves)
        pairs = [(request, move) for request in snapshot for move in trucks]
        return await self._run(pairs, self._evaluate_move_pair, label='moves')

    async def _run(self, pairs, evaluate, *, label: str) -> List[MatchCandidate]:
        start = time.perf_counter()
        sem = asyncio.Semaphore(self._parallelism)
        results = await asyncio.gather(*(self._guarded(sem, evaluate, left, right) for left, right in pairs))
        # gather keeps submission order, so ties below stay in discovery order
        found = [candidate for batch in results for candidate in batch]
        found.sort(key=lambda c: c.match_score)
        logger.info(
            'matching.candidates kind=%s pairs=%d candidates=%d duration=%.3fs',
            label, len(pairs), len(found), time.perf_counter() - start,
        )
        return found

    async def _guarded(self, sem: asyncio.Semaphore, evaluate, left, right) -> List[MatchCandidate]:
        async with sem:
            try:
                return await asyncio.wait_for(evaluate(left, right), timeout=self._pair_timeout)
            except asyncio.TimeoutError:
                logger.warning('matching.pair_timeout left=%s right=%s timeout=%.1fs', _ref(left).reference, _ref(right).reference, self._pair_timeout)
            except Exception:
                logger.exception('matching.pair_failed left=%s right=%s', _ref(left).reference, _ref(right).reference)
        return []

    async def _legs(self, pairs: Dict[str, Tuple[object, str, object, str]]) -> Dict[str, DistanceResult]:
        """Resolve named legs concurrently; values are (postal_a, city_a, postal_b, city_b)."""
        names = list(pairs)
        values = await asyncio.gather(*(
            self.resolver.resolve(pa, pb, ca, cb) for (pa, ca, pb, cb) in (pairs[n] for n in names)
        ))
        return dict(zip(names, values))

    async def _evaluate_request_pair(self, a: TransportationRequest, b: TransportationRequest) -> List[MatchCandidate]:
        if not (_has_route(a) and _has_route(b)):
            logger.debug('matching.pair_skipped left=%s right=%s reason=missing_postal_code', a.reference, b.reference)
            return []
        days = date_gap(a.desired_date, b.desired_date)
        if days > max_date_diff_days():
            return []

        legs = await self._legs({
            'departure': (a.departure_postal_code, a.departure_city, b.departure_postal_code, b.departure_city),
            'arrival': (a.arrival_postal_code, a.arrival_city, b.arrival_postal_code, b.arrival_city),
            'departure_to_arrival': (a.departure_postal_code, a.departure_city, b.arrival_postal_code, b.arrival_city),
            'arrival_to_departure': (a.arrival_postal_code, a.arrival_city, b.departure_postal_code, b.departure_city),
        })
        combined = request_volume(a, default_volume_m3()) + request_volume(b, default_volume_m3())
        feasible = combined <= truck_capacity_m3()
        action = ACTION_GROUP if feasible else ACTION_DEDICATED

        found: List[MatchCandidate] = []
        same = {'departure': legs['departure'].distance_km, 'arrival': legs['arrival'].distance_km}
        if _legs_ok(same):
            found.append(self._build(
                a, b, CandidateType.same_route, same, days, combined, feasible, action,
                f"Same route: departures {same['departure']} km apart, arrivals {same['arrival']} km apart, "
                f"{days} day(s) between desired dates, {combined:g} m³ combined.",
            ))
        cross = {
            'departure_to_arrival': legs['departure_to_arrival'].distance_km,
            'arrival_to_departure': legs['arrival_to_departure'].distance_km,
        }
        if _legs_ok(cross):
            found.append(self._build(
                a, b, CandidateType.complementary_route, cross, days, combined, feasible, action,
                f"Complementary route: {a.reference} leaves {cross['departure_to_arrival']} km from where "
                f"{b.reference} arrives and arrives {cross['arrival_to_departure']} km from where it leaves, "
                f"{days} day(s) between desired dates, {combined:g} m³ combined.",
            ))
        return found

    async def _evaluate_move_pair(self, request: TransportationRequest, move: Move) -> List[MatchCandidate]:
        if not (_has_route(request) and _has_route(move)):
            logger.debug('matching.pair_skipped left=%s right=%s reason=missing_postal_code', request.reference, move.reference)
            return []
        days = date_gap(request.desired_date, move.departure_date)
        if days > max_date_diff_days():
            return []

        legs = await self._legs({
            'departure': (request.departure_postal_code, request.departure_city, move.departure_postal_code, move.departure_city),
            'arrival': (request.arrival_postal_code, request.arrival_city, move.arrival_postal_code, move.arrival_city),
            'departure_to_arrival': (request.departure_postal_code, request.departure_city, move.arrival_postal_code, move.arrival_city),
            'arrival_to_departure': (request.arrival_postal_code, request.arrival_city, move.departure_postal_code, move.departure_city),
        })
        volume = request_volume(request, default_volume_m3())
        combined = float(move.used_volume) + volume
        feasible = volume <= move.available_volume
        action = ACTION_ADD_TO_MOVE if feasible else ACTION_DEDICATED

        found: List[MatchCandidate] = []
        direct = {'departure': legs['departure'].distance_km, 'arrival': legs['arrival'].distance_km}
        if _legs_ok(direct):
            found.append(self._build(
                request, move, CandidateType.direct, direct, days, combined, feasible, action,
                f"Direct: {move.reference} departs {direct['departure']} km and arrives {direct['arrival']} km "
                f"from {request.reference}, {days} day(s) apart, {move.available_volume:g} m³ free for {volume:g} m³.",
            ))
        back = {
            'departure_to_arrival': legs['departure_to_arrival'].distance_km,
            'arrival_to_departure': legs['arrival_to_departure'].distance_km,
        }
        if _legs_ok(back):
            found.append(self._build(
                request, move, CandidateType.return_trip, back, days, combined, feasible, action,
                f"Return trip: {move.reference} ends {back['departure_to_arrival']} km from where "
                f"{request.reference} starts and starts {back['arrival_to_departure']} km from its destination, "
                f"{days} day(s) apart, {move.available_volume:g} m³ free for {volume:g} m³.",
            ))
        return found

    @staticmethod
    def _build(left, right, match_type, legs, days, combined, feasible, action, explanation) -> MatchCandidate:
        return MatchCandidate(
            left=_ref(left),
            right=_ref(right),
            match_type=match_type,
            distance_km=max(legs.values()),
            date_diff_days=days,
            combined_volume=combined,
            match_score=score(legs, days),
            is_feasible=feasible,
            explanation=explanation,
            suggested_action=action,
            legs=dict(legs),
        )


def default_resolver() -> DistanceResolver:
    """Resolver backed by geocoding + routing with a TTL cache sized from the environment."""
    cache = None
    if distance_cache_enabled():
        cache = DistanceCache(
            ttl_seconds=distance_cache_ttl_seconds(),
            max_entries=distance_cache_max_entries(),
        )
    return DistanceResolver(RoutingDistanceProvider(), cache=cache)
