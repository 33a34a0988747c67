from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends

from ..enums import EntityKind
from ..errors import NotFoundError
from ..schemas import (
    AcceptIn,
    CandidatePoolIn,
    MatchCandidate,
    MatchRecord,
    MoveCandidatePoolIn,
    RejectIn,
    ResolvedReference,
)
from ..services.matching import (
    CandidateGenerator,
    accept,
    complete,
    default_resolver,
    load_clients,
    load_moves,
    load_open_moves,
    load_open_requests,
    reject,
    resolve_reference,
)
from ..utils import format_reference

######### Router / Endpoints #########

# Main matching router (mounted under /matching in main.py)
router = APIRouter()


@lru_cache(maxsize=1)
def _shared_generator() -> CandidateGenerator:
    return CandidateGenerator(default_resolver())


def get_generator() -> CandidateGenerator:
    """Dependency returning the process-wide generator (and its distance cache)."""
    return _shared_generator()


def _missing(kind: EntityKind, wanted: List[int], found) -> None:
    got = {entity.id for entity in found}
    missing = [format_reference(kind, i) for i in dict.fromkeys(wanted) if i not in got]
    if missing:
        raise NotFoundError(f"unknown {kind.value} references: {', '.join(missing)}", details={'missing': missing})


async def _request_pool(client_ids: Optional[List[int]]):
    if client_ids is None:
        return await load_open_requests()
    requests = await load_clients(client_ids)
    _missing(EntityKind.client, client_ids, requests)
    return requests


@router.post('/candidates', response_model=List[MatchCandidate])
async def request_candidates(payload: Optional[CandidatePoolIn] = None, generator: CandidateGenerator = Depends(get_generator)):
    """Rank request pairs that could share a truck (open pool unless ids are given)."""
    requests = await _request_pool(payload.client_ids if payload else None)
    return await generator.generate(requests)


@router.post('/candidates/moves', response_model=List[MatchCandidate])
async def move_candidates(payload: Optional[MoveCandidatePoolIn] = None, generator: CandidateGenerator = Depends(get_generator)):
    """Rank request/move pairs a carrier could serve."""
    requests = await _request_pool(payload.client_ids if payload else None)
    move_ids = payload.move_ids if payload else None
    if move_ids is None:
        moves = await load_open_moves()
    else:
        moves = await load_moves(move_ids)
        _missing(EntityKind.move, move_ids, moves)
    return await generator.generate_for_moves(requests, moves)


@router.get('/references/{reference}', response_model=ResolvedReference)
async def get_reference(reference: str):
    return await resolve_reference(reference)


@router.post('/accept', response_model=MatchRecord, status_code=201)
async def accept_candidate(payload: AcceptIn):
    return await accept(payload.candidate, move_id=payload.move_id)


@router.post('/reject', response_model=MatchRecord, status_code=201)
async def reject_candidate(payload: RejectIn):
    return await reject(payload.candidate)


@router.post('/matches/{match_id}/complete', response_model=MatchRecord)
async def complete_match(match_id: int):
    return await complete(match_id)
