import pytest

from movematch import db as db_mod
from movematch.enums import EntityKind
from movematch.errors import (
    IncompleteDataError,
    NotFoundError,
    UnrecognizedReferenceError,
    ValidationError,
)
from movematch.services.matching import parse_reference, resolve_reference

from conftest import insert_client, insert_move


def test_parse_reference_is_case_insensitive():
    assert parse_reference(' cli-000042 ') == (EntityKind.client, 42)
    assert parse_reference('TRJ-000001') == (EntityKind.move, 1)
    assert parse_reference('mth-123456') == (EntityKind.match, 123456)


@pytest.mark.parametrize('reference,error', [
    ('XYZ-000001', UnrecognizedReferenceError),
    ('CLI000001', UnrecognizedReferenceError),
    ('', UnrecognizedReferenceError),
    ('CLI-abc', NotFoundError),
    ('CLI-42', ValidationError),
    ('TRJ-0000001', ValidationError),
])
def test_parse_reference_errors(reference, error):
    with pytest.raises(error):
        parse_reference(reference)


def test_unknown_prefix_is_a_validation_error():
    with pytest.raises(ValidationError):
        parse_reference('XYZ-000001')


@pytest.mark.asyncio
async def test_missing_client_is_not_found():
    with pytest.raises(NotFoundError):
        await resolve_reference('CLI-000042')


@pytest.mark.asyncio
async def test_client_reference_resolves_route():
    await insert_client(42, '75001', '69001', departure_city='Paris', arrival_city='Lyon',
                        estimated_volume=12, desired_date='2025-06-02')
    resolved = await resolve_reference('cli-000042')
    assert resolved.item.reference == 'CLI-000042'
    assert resolved.item.type == EntityKind.client
    assert resolved.item.date == '2025-06-02'
    assert resolved.item.details == '75001 Paris -> 69001 Lyon, 12 m³'
    assert resolved.related_routes is None


@pytest.mark.asyncio
async def test_client_without_postal_code_is_incomplete():
    await insert_client(7, '75001', None)
    with pytest.raises(IncompleteDataError) as excinfo:
        await resolve_reference('CLI-000007')
    assert isinstance(excinfo.value, LookupError)


@pytest.mark.asyncio
async def test_move_reference_resolves():
    await insert_move(3, '13001', '75001', company_name='Sud Transports', used_volume=20)
    resolved = await resolve_reference('TRJ-000003')
    assert resolved.item.name == 'Sud Transports'
    assert resolved.item.company_name == 'Sud Transports'
    assert resolved.item.reference == 'TRJ-000003'


@pytest.mark.asyncio
async def test_match_reference_has_related_routes():
    await insert_client(1, '75001', '69001', departure_city='Paris', arrival_city='Lyon')
    await insert_move(2, '75010', '69002', departure_city='Paris', arrival_city='Lyon')
    await db_mod.db.matches.insert_one({
        '_id': 5, 'reference': 'MTH-000005', 'client_id': 1, 'move_id': 2,
        'match_type': 'perfect', 'created_at': '2025-06-01T10:00:00.000+00:00',
    })
    resolved = await resolve_reference('MTH-000005')
    assert resolved.item.type == EntityKind.match
    routes = resolved.related_routes
    assert routes is not None
    assert (routes.client.departure_postal_code, routes.client.arrival_postal_code) == ('75001', '69001')
    assert (routes.move.departure_postal_code, routes.move.arrival_postal_code) == ('75010', '69002')


@pytest.mark.asyncio
async def test_match_with_missing_move_is_incomplete():
    await insert_client(1, '75001', '69001')
    await db_mod.db.matches.insert_one({'_id': 6, 'reference': 'MTH-000006', 'client_id': 1, 'move_id': 99, 'match_type': 'partial'})
    with pytest.raises(IncompleteDataError):
        await resolve_reference('MTH-000006')


@pytest.mark.asyncio
async def test_match_with_move_lacking_route_is_incomplete():
    await insert_client(1, '75001', '69001')
    await insert_move(2, '75010', None)
    await db_mod.db.matches.insert_one({'_id': 8, 'reference': 'MTH-000008', 'client_id': 1, 'move_id': 2, 'match_type': 'perfect'})
    with pytest.raises(IncompleteDataError):
        await resolve_reference('MTH-000008')


@pytest.mark.asyncio
async def test_client_with_unknown_status_is_incomplete():
    await insert_client(5, '75001', '69001', status='rejected')
    with pytest.raises(IncompleteDataError) as excinfo:
        await resolve_reference('CLI-000005')
    assert excinfo.value.details['reference'] == 'CLI-000005'
    assert excinfo.value.details['errors'] == 1


@pytest.mark.asyncio
async def test_match_joining_malformed_move_is_incomplete():
    await insert_client(1, '75001', '69001')
    await insert_move(2, '75010', '69002', max_volume='lots')
    await db_mod.db.matches.insert_one({'_id': 9, 'reference': 'MTH-000009', 'client_id': 1, 'move_id': 2, 'match_type': 'perfect'})
    with pytest.raises(IncompleteDataError) as excinfo:
        await resolve_reference('MTH-000009')
    assert excinfo.value.details['reference'] == 'TRJ-000002'
