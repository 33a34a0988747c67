from __future__ import annotations

import asyncio
import logging
import re
from typing import Tuple

from ...enums import EntityKind
from ...errors import IncompleteDataError, NotFoundError, UnrecognizedReferenceError, ValidationError
from ...datetime_utils import to_iso
from ...schemas import (
    MatchRecord,
    Move,
    ReferenceItem,
    RelatedRoutes,
    ResolvedReference,
    RouteEndpoints,
    TransportationRequest,
)
from ...utils import PREFIX_KINDS, format_reference

from . import data

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r'^(CLI|TRJ|MTH)-\d{6}$')
_DIGITS = re.compile(r'^[0-9]+$')


def parse_reference(reference: str) -> Tuple[EntityKind, int]:
    """Split ``'cli-000042'`` into ``(EntityKind.client, 42)``.

    Raises UnrecognizedReferenceError for an unknown prefix, NotFoundError
    when the id part is not a number and ValidationError when it is not six
    digits wide.
    """
    normalized = str(reference or '').strip().upper()
    prefix, sep, number = normalized.partition('-')
    kind = PREFIX_KINDS.get(prefix)
    if not sep or kind is None:
        raise UnrecognizedReferenceError(f"unrecognized reference {reference!r}", details={'reference': normalized})
    if not _DIGITS.match(number):
        raise NotFoundError(f"no {kind.value} for reference {normalized!r}", details={'reference': normalized})
    if not REFERENCE_PATTERN.match(normalized):
        raise ValidationError(f"reference id must be 6 digits: {normalized!r}", details={'reference': normalized})
    return kind, int(number)


def _route_details(entity) -> str:
    dep = " ".join(p for p in (entity.departure_postal_code, entity.departure_city) if p)
    arr = " ".join(p for p in (entity.arrival_postal_code, entity.arrival_city) if p)
    return f"{dep} -> {arr}"


def _require_route(entity, reference: str) -> None:
    if not entity.departure_postal_code or not entity.arrival_postal_code:
        raise IncompleteDataError(f"{reference} has no complete route", details={'reference': reference})


def _client_item(request: TransportationRequest) -> ReferenceItem:
    volume = f", {request.estimated_volume:g} m³" if request.estimated_volume is not None else ''
    return ReferenceItem(
        id=request.id,
        type=EntityKind.client,
        reference=request.reference,
        name=request.name or request.reference,
        date=request.desired_date.isoformat() if request.desired_date else None,
        details=_route_details(request) + volume,
        departure_postal_code=request.departure_postal_code,
        arrival_postal_code=request.arrival_postal_code,
        departure_city=request.departure_city,
        arrival_city=request.arrival_city,
    )


def _move_item(move: Move) -> ReferenceItem:
    return ReferenceItem(
        id=move.id,
        type=EntityKind.move,
        reference=move.reference,
        name=move.company_name or move.reference,
        date=move.departure_date.isoformat() if move.departure_date else None,
        details=f"{_route_details(move)}, {move.available_volume:g}/{move.max_volume:g} m³ free",
        departure_postal_code=move.departure_postal_code,
        arrival_postal_code=move.arrival_postal_code,
        departure_city=move.departure_city,
        arrival_city=move.arrival_city,
        company_name=move.company_name,
    )


def _endpoints(entity, label: str) -> RouteEndpoints:
    return RouteEndpoints(
        label=label,
        departure_postal_code=entity.departure_postal_code,
        arrival_postal_code=entity.arrival_postal_code,
        departure_city=entity.departure_city or '',
        arrival_city=entity.arrival_city or '',
    )


async def _resolve_client(client_id: int, reference: str) -> ResolvedReference:
    doc = await data.get_client(client_id)
    if doc is None:
        raise NotFoundError(f"client {reference} not found", details={'reference': reference})
    request = data.parse_document(TransportationRequest, doc, reference)
    _require_route(request, reference)
    return ResolvedReference(item=_client_item(request))


async def _resolve_move(move_id: int, reference: str) -> ResolvedReference:
    doc = await data.get_move(move_id)
    if doc is None:
        raise NotFoundError(f"move {reference} not found", details={'reference': reference})
    move = data.parse_document(Move, doc, reference)
    _require_route(move, reference)
    return ResolvedReference(item=_move_item(move))


async def _resolve_match(match_id: int, reference: str) -> ResolvedReference:
    doc = await data.get_match(match_id)
    if doc is None:
        raise NotFoundError(f"match {reference} not found", details={'reference': reference})
    record = data.parse_document(MatchRecord, doc, reference)
    if record.move_id is None:
        raise IncompleteDataError(f"match {reference} is not linked to a move", details={'reference': reference})

    client_doc, move_doc = await asyncio.gather(data.get_client(record.client_id), data.get_move(record.move_id))
    client_ref = format_reference(EntityKind.client, record.client_id)
    move_ref = format_reference(EntityKind.move, record.move_id)
    missing = [ref for ref, found in ((client_ref, client_doc), (move_ref, move_doc)) if found is None]
    if missing:
        raise IncompleteDataError(
            f"match {reference} links to missing {', '.join(missing)}",
            details={'reference': reference, 'missing': missing},
        )
    request = data.parse_document(TransportationRequest, client_doc, client_ref)
    move = data.parse_document(Move, move_doc, move_ref)
    _require_route(request, client_ref)
    _require_route(move, move_ref)

    item = ReferenceItem(
        id=record.id,
        type=EntityKind.match,
        reference=format_reference(EntityKind.match, record.id),
        name=f"{request.name or client_ref} / {move.company_name or move_ref}",
        date=to_iso(record.created_at) if record.created_at else None,
        details=f"{record.match_type.value}: {client_ref} on {move_ref}",
        departure_postal_code=request.departure_postal_code,
        arrival_postal_code=request.arrival_postal_code,
        departure_city=request.departure_city,
        arrival_city=request.arrival_city,
        company_name=move.company_name,
    )
    routes = RelatedRoutes(
        client=_endpoints(request, request.name or client_ref),
        move=_endpoints(move, move.company_name or move_ref),
    )
    return ResolvedReference(item=item, related_routes=routes)


async def resolve_reference(reference: str) -> ResolvedReference:
    kind, entity_id = parse_reference(reference)
    normalized = format_reference(kind, entity_id)
    logger.debug('matching.reference resolve reference=%s', normalized)
    if kind == EntityKind.client:
        return await _resolve_client(entity_id, normalized)
    if kind == EntityKind.move:
        return await _resolve_move(entity_id, normalized)
    return await _resolve_match(entity_id, normalized)
