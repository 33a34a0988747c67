import asyncio

import pytest

from movematch import db as db_mod
from movematch.enums import CandidateType, EntityKind, RecordType
from movematch.errors import (
    CapacityConflictError,
    CapacityExceededError,
    IncompleteDataError,
    InvalidTransitionError,
    NotFoundError,
    PartialApplicationError,
    ValidationError,
)
from movematch.schemas import EntityRef, MatchCandidate, TransportationRequest
from movematch.services.matching import accept, complete, reject
from movematch.services.matching import data as match_data

from conftest import insert_client, insert_move


def _move_candidate(client_id, move_id, *, feasible=True):
    return MatchCandidate(
        left=EntityRef(kind=EntityKind.client, id=client_id),
        right=EntityRef(kind=EntityKind.move, id=move_id),
        match_type=CandidateType.direct,
        distance_km=25,
        date_diff_days=1,
        combined_volume=10,
        match_score=28,
        is_feasible=feasible,
    )


def _pair_candidate(a, b, *, feasible=True):
    return MatchCandidate(
        left=EntityRef(kind=EntityKind.client, id=a),
        right=EntityRef(kind=EntityKind.client, id=b),
        match_type=CandidateType.same_route,
        distance_km=25,
        date_diff_days=2,
        combined_volume=18,
        match_score=31,
        is_feasible=feasible,
    )


@pytest.mark.asyncio
async def test_two_accepts_sum_exactly():
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_client(2, '75002', '69002', estimated_volume=8)
    await insert_move(9, '75010', '69010')

    first = await accept(_move_candidate(1, 9))
    second = await accept(_move_candidate(2, 9))

    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 18
    assert move['number_of_clients'] == 2
    assert first.reference == 'MTH-000001'
    assert second.reference == 'MTH-000002'
    assert first.match_type == RecordType.perfect
    client = await db_mod.db.clients.find_one({'_id': 1})
    assert (client['status'], client['match_status']) == ('confirmed', 'accepted')


@pytest.mark.asyncio
async def test_concurrent_accepts_do_not_lose_increments():
    for cid in range(1, 5):
        await insert_client(cid, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')
    await asyncio.gather(*(accept(_move_candidate(cid, 9)) for cid in range(1, 5)))
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 20
    assert move['number_of_clients'] == 4


@pytest.mark.asyncio
async def test_infeasible_candidate_is_recorded_as_partial():
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_move(9, '75010', '69010')
    record = await accept(_move_candidate(1, 9, feasible=False))
    assert record.match_type == RecordType.partial
    assert record.is_valid is False


@pytest.mark.asyncio
async def test_request_pair_needs_a_move():
    await insert_client(1, '75001', '69001')
    await insert_client(2, '75002', '69002')
    with pytest.raises(ValidationError):
        await accept(_pair_candidate(1, 2))


@pytest.mark.asyncio
async def test_request_pair_assigned_to_move():
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_client(2, '75002', '69002')  # default 5 m³
    await insert_move(9, '75010', '69010', used_volume=5, number_of_clients=1)
    record = await accept(_pair_candidate(1, 2), move_id=9)
    assert (record.client_id, record.secondary_client_id, record.move_id) == (1, 2, 9)
    assert record.combined_volume == 15
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 20
    assert move['number_of_clients'] == 3


@pytest.mark.asyncio
async def test_capacity_exceeded_leaves_store_untouched():
    await insert_client(1, '75001', '69001', estimated_volume=30)
    await insert_move(9, '75010', '69010', used_volume=25)
    with pytest.raises(CapacityExceededError):
        await accept(_move_candidate(1, 9))
    assert await db_mod.db.matches.find_one({}) is None
    client = await db_mod.db.clients.find_one({'_id': 1})
    assert client['match_status'] == 'unmatched'


@pytest.mark.asyncio
async def test_accepting_an_accepted_request_is_refused():
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')
    await accept(_move_candidate(1, 9))
    with pytest.raises(InvalidTransitionError):
        await accept(_move_candidate(1, 9))
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 5


@pytest.mark.asyncio
async def test_lost_races_end_in_conflict_and_rollback(monkeypatch):
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')

    async def _always_lose(move_doc, volume, clients):
        return False

    monkeypatch.setattr(match_data, 'increment_move_usage', _always_lose)
    with pytest.raises(CapacityConflictError):
        await accept(_move_candidate(1, 9))
    assert await db_mod.db.matches.find_one({}) is None
    client = await db_mod.db.clients.find_one({'_id': 1})
    assert (client['status'], client['match_status']) == ('pending', 'unmatched')


@pytest.mark.asyncio
async def test_failed_rollback_is_partial_application(monkeypatch):
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')

    async def _boom(*args, **kwargs):
        raise RuntimeError('store down')

    monkeypatch.setattr(match_data, 'increment_move_usage', _boom)
    monkeypatch.setattr(match_data, 'delete_match', _boom)
    with pytest.raises(PartialApplicationError):
        await accept(_move_candidate(1, 9))


@pytest.mark.asyncio
async def test_missing_move_is_not_found():
    await insert_client(1, '75001', '69001')
    with pytest.raises(NotFoundError):
        await accept(_move_candidate(1, 404))


@pytest.mark.asyncio
async def test_reject_marks_requests_and_leaves_move():
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_move(9, '75010', '69010', used_volume=7)
    record = await reject(_move_candidate(1, 9))
    assert record.match_type == RecordType.rejected
    assert record.combined_volume == 0
    assert record.is_valid is False
    client = await db_mod.db.clients.find_one({'_id': 1})
    assert client['match_status'] == 'rejected'
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 7


@pytest.mark.asyncio
async def test_complete_is_idempotent():
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')
    record = await accept(_move_candidate(1, 9))

    done = await complete(record.id)
    again = await complete(record.id)
    assert done.match_type == RecordType.completed
    assert again.match_type == RecordType.completed
    assert again.completed_at == done.completed_at


@pytest.mark.asyncio
async def test_complete_rejected_or_missing():
    await insert_client(1, '75001', '69001')
    rejected = await reject(_pair_candidate(1, 1))
    with pytest.raises(InvalidTransitionError):
        await complete(rejected.id)
    with pytest.raises(NotFoundError):
        await complete(999)


@pytest.mark.asyncio
async def test_timeout_mid_accept_rolls_back(monkeypatch):
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(9, '75010', '69010')

    async def _stall(move_doc, volume, clients):
        await asyncio.sleep(1)
        return True

    monkeypatch.setattr(match_data, 'increment_move_usage', _stall)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(accept(_move_candidate(1, 9)), 0.01)
    assert await db_mod.db.matches.find_one({}) is None
    client = await db_mod.db.clients.find_one({'_id': 1})
    assert (client['status'], client['match_status']) == ('pending', 'unmatched')
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert (move['used_volume'], move['number_of_clients']) == (0, 0)


@pytest.mark.asyncio
async def test_accept_against_malformed_request_is_incomplete():
    await insert_client(1, '75001', '69001', estimated_volume='n/a')
    await insert_move(9, '75010', '69010')
    with pytest.raises(IncompleteDataError) as excinfo:
        await accept(_move_candidate(1, 9))
    assert excinfo.value.details == {'reference': 'CLI-000001', 'errors': 1}
    assert await db_mod.db.matches.find_one({}) is None
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert move['used_volume'] == 0


@pytest.mark.asyncio
async def test_record_volume_comes_from_the_store():
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_move(9, '75010', '69010', used_volume=7, number_of_clients=1)
    candidate = _move_candidate(1, 9).model_copy(update={'combined_volume': 999})
    record = await accept(candidate)
    assert record.combined_volume == 17
    stored = await db_mod.db.matches.find_one({'_id': record.id})
    assert stored['combined_volume'] == 17


@pytest.mark.asyncio
async def test_explicit_zero_volume_is_not_defaulted():
    await insert_client(1, '75001', '69001', estimated_volume=0)
    await insert_move(9, '75010', '69010', used_volume=48)
    record = await accept(_move_candidate(1, 9))
    assert record.combined_volume == 48
    move = await db_mod.db.moves.find_one({'_id': 9})
    assert (move['used_volume'], move['number_of_clients']) == (48, 1)


def test_request_volume_defaults_only_when_unset():
    assert match_data.request_volume(TransportationRequest(id=1, estimated_volume=0), 5.0) == 0.0
    assert match_data.request_volume(TransportationRequest(id=2), 5.0) == 5.0
