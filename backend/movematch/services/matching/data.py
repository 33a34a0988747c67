from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument

from ... import db as db_mod
from ...datetime_utils import now_iso
from ...enums import MatchStatus, MoveStatus, RecordType, RequestStatus, normalized_value
from ...errors import IncompleteDataError
from ...schemas import Move, TransportationRequest

from .config import truck_capacity_m3

logger = logging.getLogger(__name__)

# request fields touched by accept/reject, snapshotted for compensation
REQUEST_STATE_FIELDS = ('status', 'match_status')


async def next_sequence(name: str) -> int:
    """Atomically allocate the next integer id for ``name``."""
    doc = await db_mod.db.counters.find_one_and_update(
        {'_id': name},
        {'$inc': {'seq': 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc['seq'])


async def get_client(client_id: int) -> Optional[dict]:
    return await db_mod.db.clients.find_one({'_id': int(client_id)})


async def get_move(move_id: int) -> Optional[dict]:
    return await db_mod.db.moves.find_one({'_id': int(move_id)})


async def get_match(match_id: int) -> Optional[dict]:
    return await db_mod.db.matches.find_one({'_id': int(match_id)})


def parse_document(model, doc: dict, reference: str):
    """Validate one stored document; schema drift surfaces as IncompleteDataError."""
    try:
        return model.from_doc(doc)
    except SchemaError as exc:
        raise IncompleteDataError(
            f"{reference} has malformed stored fields",
            details={'reference': reference, 'errors': exc.error_count()},
        ) from exc


def _parse_all(model, docs: Iterable[dict]) -> list:
    parsed = []
    for doc in docs:
        try:
            parsed.append(model.from_doc(doc))
        except SchemaError as exc:
            logger.warning('matching.data skipped malformed %s id=%s errors=%s', model.__name__, doc.get('_id'), exc.error_count())
    return parsed


async def load_open_requests(limit: Optional[int] = None) -> List[TransportationRequest]:
    """Pending requests that are not yet accepted and carry both postal codes."""
    query = {
        'status': {'$in': [RequestStatus.pending.value, None]},
        'match_status': {'$ne': MatchStatus.accepted.value},
        'departure_postal_code': {'$ne': None},
        'arrival_postal_code': {'$ne': None},
    }
    cursor = db_mod.db.clients.find(query).sort('_id', 1)
    if limit:
        cursor = cursor.limit(int(limit))
    docs = await cursor.to_list(length=None)
    return _parse_all(TransportationRequest, docs)


async def load_open_moves(limit: Optional[int] = None) -> List[Move]:
    """Pending or confirmed moves with volume left on the truck."""
    query = {'status': {'$in': [MoveStatus.pending.value, MoveStatus.confirmed.value, None]}}
    cursor = db_mod.db.moves.find(query).sort('_id', 1)
    if limit:
        cursor = cursor.limit(int(limit))
    docs = await cursor.to_list(length=None)
    return [move for move in _parse_all(Move, docs) if move.available_volume > 0]


async def _load_by_ids(collection, model, ids: Iterable[int]) -> list:
    wanted = [int(i) for i in ids]
    docs = await collection.find({'_id': {'$in': wanted}}).to_list(length=None)
    by_id = {doc['_id']: doc for doc in docs}
    # keep the caller's order so the snapshot is reproducible
    return _parse_all(model, [by_id[i] for i in dict.fromkeys(wanted) if i in by_id])


async def load_clients(ids: Iterable[int]) -> List[TransportationRequest]:
    return await _load_by_ids(db_mod.db.clients, TransportationRequest, ids)


async def load_moves(ids: Iterable[int]) -> List[Move]:
    return await _load_by_ids(db_mod.db.moves, Move, ids)


# ---- match records ----

async def insert_match(doc: Dict[str, Any]) -> dict:
    await db_mod.db.matches.insert_one(doc)
    return doc


async def delete_match(match_id: int) -> bool:
    res = await db_mod.db.matches.delete_one({'_id': int(match_id)})
    return bool(getattr(res, 'deleted_count', 0))


async def complete_match(match_id: int, open_types: List[str]) -> Optional[dict]:
    """Flip an open record to ``completed``; None when it was not open any more."""
    now = now_iso()
    return await db_mod.db.matches.find_one_and_update(
        {'_id': int(match_id), 'match_type': {'$in': list(open_types)}},
        {'$set': {'match_type': 'completed', 'completed_at': now, 'updated_at': now}},
        return_document=ReturnDocument.AFTER,
    )


# ---- request state ----

def request_state(doc: dict) -> Dict[str, Any]:
    return {field: doc.get(field) for field in REQUEST_STATE_FIELDS if field in doc}


async def mark_request_accepted(client_id: int) -> bool:
    """Confirm a request unless another accept got there first."""
    res = await db_mod.db.clients.update_one(
        {'_id': int(client_id), 'match_status': {'$ne': MatchStatus.accepted.value}},
        {'$set': {
            'status': RequestStatus.confirmed.value,
            'match_status': MatchStatus.accepted.value,
            'updated_at': now_iso(),
        }},
    )
    return res.modified_count > 0


async def mark_request_rejected(client_id: int) -> bool:
    res = await db_mod.db.clients.update_one(
        {'_id': int(client_id), 'match_status': {'$ne': MatchStatus.accepted.value}},
        {'$set': {'match_status': MatchStatus.rejected.value, 'updated_at': now_iso()}},
    )
    return res.modified_count > 0


async def restore_request(client_id: int, prior: Dict[str, Any]) -> None:
    """Put back the fields captured by ``request_state``."""
    update: Dict[str, Any] = {}
    to_set = {field: prior[field] for field in REQUEST_STATE_FIELDS if field in prior}
    to_unset = {field: '' for field in REQUEST_STATE_FIELDS if field not in prior}
    if to_set:
        update['$set'] = to_set
    if to_unset:
        update['$unset'] = to_unset
    await db_mod.db.clients.update_one({'_id': int(client_id)}, update)


def request_volume(request: TransportationRequest, default: float) -> float:
    vol = request.estimated_volume
    return float(default) if vol is None else float(vol)


# ---- move capacity ----

async def increment_move_usage(move_doc: dict, volume: float, clients: int) -> bool:
    """Add ``volume``/``clients`` to a move if nobody changed it since ``move_doc`` was read.

    The filter pins the observed counters and re-checks capacity server side,
    so two racing accepts can never both succeed against the same snapshot.
    """
    filter_query = {
        '_id': move_doc['_id'],
        'used_volume': move_doc.get('used_volume'),
        'number_of_clients': move_doc.get('number_of_clients'),
        '$expr': {
            '$lte': [
                {'$add': [{'$ifNull': ['$used_volume', 0]}, volume]},
                {'$ifNull': ['$max_volume', truck_capacity_m3()]},
            ]
        },
    }
    update = {
        '$inc': {'used_volume': volume, 'number_of_clients': int(clients)},
        '$set': {'updated_at': now_iso()},
    }
    result = await db_mod.db.moves.update_one(filter_query, update)
    return result.modified_count > 0


def match_type_of(doc: Optional[dict]) -> Optional[str]:
    if not doc:
        return None
    return normalized_value(RecordType, doc.get('match_type'))
