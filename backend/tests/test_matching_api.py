import pytest

from movematch import db as db_mod

from conftest import insert_client, insert_move


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get('/health')
    assert resp.status_code == 200
    assert resp.json() == {'status': 'ok'}
    assert 'X-Request-ID' in resp.headers


@pytest.mark.asyncio
async def test_candidates_from_open_pool(client):
    await insert_client(1, '75001', '69001', estimated_volume=10, desired_date='2025-06-02')
    await insert_client(2, '75002', '69002', estimated_volume=8, desired_date='2025-06-04')
    # already accepted requests stay out of the pool
    await insert_client(3, '75003', '69003', match_status='accepted', status='confirmed')

    resp = await client.post('/matching/candidates')
    assert resp.status_code == 200
    body = resp.json()
    assert len(body) == 1
    assert body[0]['match_type'] == 'same_route'
    assert body[0]['match_score'] == 31
    assert body[0]['left'] == {'kind': 'client', 'id': 1}


@pytest.mark.asyncio
async def test_candidates_for_unknown_ids_is_404(client):
    await insert_client(1, '75001', '69001')
    resp = await client.post('/matching/candidates', json={'client_ids': [1, 77]})
    assert resp.status_code == 404
    body = resp.json()
    assert body['error'] == 'not_found'
    assert body['details']['missing'] == ['CLI-000077']


@pytest.mark.asyncio
async def test_move_candidates_skip_full_moves(client):
    await insert_client(1, '75001', '69001', estimated_volume=5)
    await insert_move(10, '75005', '69005')
    await insert_move(11, '75006', '69006', used_volume=50)
    resp = await client.post('/matching/candidates/moves', json={})
    assert resp.status_code == 200
    assert [c['right']['id'] for c in resp.json()] == [10]


@pytest.mark.asyncio
async def test_reference_errors_map_to_status(client):
    resp = await client.get('/matching/references/XYZ-000001')
    assert resp.status_code == 400
    assert resp.json()['error'] == 'unrecognized_reference'

    resp = await client.get('/matching/references/CLI-000042')
    assert resp.status_code == 404

    await insert_client(5, '75001', None)
    resp = await client.get('/matching/references/CLI-000005')
    assert resp.status_code == 422
    assert resp.json()['error'] == 'incomplete_data'


@pytest.mark.asyncio
async def test_accept_then_complete_flow(client):
    await insert_client(1, '75001', '69001', estimated_volume=10)
    await insert_move(10, '75005', '69005')
    candidates = (await client.post('/matching/candidates/moves', json={'client_ids': [1], 'move_ids': [10]})).json()
    assert len(candidates) == 1

    resp = await client.post('/matching/accept', json={'candidate': candidates[0]})
    assert resp.status_code == 201
    record = resp.json()
    assert record['reference'] == 'MTH-000001'
    assert record['match_type'] == 'perfect'

    move = await db_mod.db.moves.find_one({'_id': 10})
    assert (move['used_volume'], move['number_of_clients']) == (10, 1)

    resolved = await client.get('/matching/references/mth-000001')
    assert resolved.status_code == 200
    assert resolved.json()['related_routes']['move']['departure_postal_code'] == '75005'

    done = await client.post(f"/matching/matches/{record['id']}/complete")
    assert done.status_code == 200
    assert done.json()['match_type'] == 'completed'
    again = await client.post(f"/matching/matches/{record['id']}/complete")
    assert again.status_code == 200


@pytest.mark.asyncio
async def test_accept_over_capacity_is_409(client):
    await insert_client(1, '75001', '69001', estimated_volume=20)
    await insert_move(10, '75005', '69005', used_volume=40)
    candidate = {
        'left': {'kind': 'client', 'id': 1},
        'right': {'kind': 'move', 'id': 10},
        'match_type': 'direct',
        'distance_km': 25,
        'date_diff_days': 0,
        'combined_volume': 60,
        'match_score': 25,
        'is_feasible': False,
    }
    resp = await client.post('/matching/accept', json={'candidate': candidate})
    assert resp.status_code == 409
    assert resp.json()['error'] == 'capacity_exceeded'


@pytest.mark.asyncio
async def test_reject_records_decision(client):
    await insert_client(1, '75001', '69001')
    await insert_client(2, '75002', '69002')
    candidates = (await client.post('/matching/candidates', json={'client_ids': [1, 2]})).json()
    resp = await client.post('/matching/reject', json={'candidate': candidates[0]})
    assert resp.status_code == 201
    assert resp.json()['match_type'] == 'rejected'
    assert (await db_mod.db.clients.find_one({'_id': 2}))['match_status'] == 'rejected'


@pytest.mark.asyncio
async def test_complete_unknown_match_is_404(client):
    resp = await client.post('/matching/matches/12/complete')
    assert resp.status_code == 404
    assert resp.json()['error'] == 'not_found'


@pytest.mark.asyncio
async def test_malformed_stored_request_is_422(client):
    await insert_client(5, '75001', '69001', estimated_volume='n/a')
    resp = await client.get('/matching/references/CLI-000005')
    assert resp.status_code == 422
    body = resp.json()
    assert body['error'] == 'incomplete_data'
    assert body['details']['errors'] == 1
