"""Accept / reject / complete transitions for match records.

Accept is the only transition touching shared state (a move's capacity). It
runs as a small saga: record insert, request updates, then an optimistic
capacity increment. When a later step fails the earlier ones are undone; if
undoing fails as well the caller gets ``PartialApplicationError`` and the
store needs manual reconciliation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ...datetime_utils import now_iso
from ...enums import EntityKind, MatchStatus, RecordType
from ...errors import (
    CapacityConflictError,
    CapacityExceededError,
    InvalidTransitionError,
    NotFoundError,
    PartialApplicationError,
    ValidationError,
)
from ...schemas import MatchCandidate, MatchRecord, Move, TransportationRequest
from ...utils import format_reference

from . import data
from .config import accept_max_attempts, default_volume_m3

logger = logging.getLogger(__name__)

_OPEN_TYPES = [RecordType.perfect.value, RecordType.partial.value]


def _target_move_id(candidate: MatchCandidate, move_id: Optional[int]) -> int:
    own = candidate.move_id
    if own is not None and move_id is not None and int(move_id) != own:
        raise ValidationError(
            f"candidate already targets move {format_reference(EntityKind.move, own)}",
            details={'move_id': move_id},
        )
    target = own if own is not None else move_id
    if target is None:
        raise ValidationError('a move is required to accept a request pair')
    return int(target)


async def _load_requests(candidate: MatchCandidate) -> List[tuple[dict, TransportationRequest]]:
    ids = candidate.client_ids
    if not ids:
        raise ValidationError('candidate does not reference any client request')
    loaded = []
    for client_id in ids:
        reference = format_reference(EntityKind.client, client_id)
        doc = await data.get_client(client_id)
        if doc is None:
            raise NotFoundError(f"client {reference} not found", details={'client_id': client_id})
        loaded.append((doc, data.parse_document(TransportationRequest, doc, reference)))
    return loaded


async def _new_record(candidate: MatchCandidate, match_type: RecordType, move_id: Optional[int], **fields: Any) -> Dict[str, Any]:
    match_id = await data.next_sequence('matches')
    ids = candidate.client_ids
    doc: Dict[str, Any] = {
        '_id': match_id,
        'reference': format_reference(EntityKind.match, match_id),
        'client_id': ids[0],
        'secondary_client_id': ids[1] if len(ids) > 1 else None,
        'move_id': move_id,
        'match_type': match_type.value,
        'candidate_type': candidate.match_type.value,
        'distance_km': candidate.distance_km,
        'date_diff_days': candidate.date_diff_days,
        'created_at': now_iso(),
    }
    doc.update(fields)
    return doc


async def _reserve_capacity(move_id: int, volume: float, clients: int) -> None:
    """Increment a move's usage, re-reading it on every attempt."""
    attempts = accept_max_attempts()
    for attempt in range(1, attempts + 1):
        doc = await data.get_move(move_id)
        if doc is None:
            raise NotFoundError(
                f"move {format_reference(EntityKind.move, move_id)} not found",
                details={'move_id': move_id},
            )
        move = data.parse_document(Move, doc, format_reference(EntityKind.move, move_id))
        if float(move.used_volume) + volume > float(move.max_volume):
            raise CapacityExceededError(
                f"move {move.reference} has {move.available_volume:g} m³ free, {volume:g} m³ requested",
                details={'move_id': move_id, 'available_volume': move.available_volume, 'requested_volume': volume},
            )
        if await data.increment_move_usage(doc, volume, clients):
            return
        logger.info('matching.accept capacity_race move_id=%s attempt=%d/%d', move_id, attempt, attempts)
    raise CapacityConflictError(
        f"move {format_reference(EntityKind.move, move_id)} kept changing, try again",
        details={'move_id': move_id, 'attempts': attempts},
    )


async def _compensate(match_id: int, applied: Dict[int, Dict[str, Any]]) -> None:
    await data.delete_match(match_id)
    for client_id, prior in applied.items():
        await data.restore_request(client_id, prior)


async def accept(candidate: MatchCandidate, move_id: Optional[int] = None) -> MatchRecord:
    """Persist an accepted match and charge its volume to the target move."""
    target = _target_move_id(candidate, move_id)
    loaded = await _load_requests(candidate)
    for _doc, request in loaded:
        if request.match_status == MatchStatus.accepted:
            raise InvalidTransitionError(f"{request.reference} is already accepted", details={'client_id': request.id})

    move_doc = await data.get_move(target)
    if move_doc is None:
        raise NotFoundError(f"move {format_reference(EntityKind.move, target)} not found", details={'move_id': target})
    move = data.parse_document(Move, move_doc, format_reference(EntityKind.move, target))
    # volumes come from the store, not from the candidate payload
    volume = sum(data.request_volume(request, default_volume_m3()) for _doc, request in loaded)
    if float(move.used_volume) + volume > float(move.max_volume):
        raise CapacityExceededError(
            f"move {move.reference} has {move.available_volume:g} m³ free, {volume:g} m³ requested",
            details={'move_id': target, 'available_volume': move.available_volume, 'requested_volume': volume},
        )
    # move candidates also count what the truck already carries
    combined = volume + float(move.used_volume) if candidate.move_id is not None else volume

    match_type = RecordType.perfect if candidate.is_feasible else RecordType.partial
    record = await _new_record(
        candidate,
        match_type,
        target,
        is_valid=candidate.is_feasible,
        volume_ok=True,
        combined_volume=combined,
    )
    await data.insert_match(record)
    match_id = record['_id']

    applied: Dict[int, Dict[str, Any]] = {}
    try:
        for doc, request in loaded:
            if not await data.mark_request_accepted(request.id):
                raise InvalidTransitionError(f"{request.reference} is already accepted", details={'client_id': request.id})
            applied[request.id] = data.request_state(doc)
        await _reserve_capacity(target, volume, len(loaded))
    except (Exception, asyncio.CancelledError) as exc:
        logger.warning('matching.accept rolling back match_id=%s move_id=%s reason=%s', match_id, target, type(exc).__name__)
        try:
            await _compensate(match_id, applied)
        except Exception as comp_exc:
            logger.exception('matching.accept compensation failed match_id=%s', match_id)
            raise PartialApplicationError(
                f"match {record['reference']} was partially applied and could not be rolled back",
                details={'match_id': match_id, 'move_id': target, 'client_ids': list(applied)},
            ) from comp_exc
        raise

    logger.info(
        'matching.accept match_id=%s move_id=%s clients=%s volume=%g type=%s',
        match_id, target, [request.id for _doc, request in loaded], volume, match_type.value,
    )
    return MatchRecord.from_doc(record)


async def reject(candidate: MatchCandidate) -> MatchRecord:
    """Record a rejection; the move (if any) is left untouched."""
    loaded = await _load_requests(candidate)
    record = await _new_record(
        candidate,
        RecordType.rejected,
        candidate.move_id,
        is_valid=False,
        volume_ok=False,
        combined_volume=0.0,
    )
    await data.insert_match(record)
    for _doc, request in loaded:
        if not await data.mark_request_rejected(request.id):
            # an accepted request keeps its accepted state
            logger.info('matching.reject kept_accepted client_id=%s match_id=%s', request.id, record['_id'])
    logger.info('matching.reject match_id=%s clients=%s', record['_id'], candidate.client_ids)
    return MatchRecord.from_doc(record)


async def complete(match_id: int) -> MatchRecord:
    """Mark an accepted record completed. Completing twice is a no-op."""
    doc = await data.get_match(match_id)
    if doc is None:
        raise NotFoundError(
            f"match {format_reference(EntityKind.match, match_id)} not found",
            details={'match_id': match_id},
        )
    reference = format_reference(EntityKind.match, match_id)
    current = data.match_type_of(doc)
    if current == RecordType.completed.value:
        return data.parse_document(MatchRecord, doc, reference)
    if current not in _OPEN_TYPES:
        raise InvalidTransitionError(
            f"match {format_reference(EntityKind.match, match_id)} is {current or 'unknown'} and cannot be completed",
            details={'match_id': match_id, 'match_type': current},
        )
    updated = await data.complete_match(match_id, _OPEN_TYPES)
    if updated is None:
        # a concurrent call finished first
        updated = await data.get_match(match_id)
        if data.match_type_of(updated) != RecordType.completed.value:
            raise InvalidTransitionError(
                f"match {format_reference(EntityKind.match, match_id)} changed while completing",
                details={'match_id': match_id},
            )
    logger.info('matching.complete match_id=%s', match_id)
    return data.parse_document(MatchRecord, updated, reference)
