import os
import sys
import pytest
from httpx import AsyncClient, ASGITransport
from pathlib import Path

# Ensure the backend directory is on PYTHONPATH when pytest is run from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure test env
os.environ.setdefault("ALLOWED_ORIGINS", "*")
os.environ.setdefault("USE_FAKE_DB_FOR_TESTS", "1")
os.environ.setdefault("GEOCODER_DISABLE", "1")
os.environ.setdefault("LOG_TO_FILES", "false")

# Import app AFTER env vars
from movematch.main import app  # noqa: E402
from movematch import db as db_mod  # noqa: E402
from movematch.db import connect as connect_to_mongo  # noqa: E402
from movematch.routers.matching import get_generator  # noqa: E402
from movematch.services.distance import DistanceResolver  # noqa: E402
from movematch.services.matching import CandidateGenerator, reset_cache  # noqa: E402


@pytest.fixture(autouse=True)
async def _fresh_db():
    # Manually invoke DB connect (startup events not auto run with ASGITransport)
    await connect_to_mongo()
    db_mod.db.reset()
    reset_cache()
    yield
    db_mod.db.reset()
    reset_cache()


@pytest.fixture
def offline_generator():
    """Generator whose distances all come from the department-prefix fallback."""
    return CandidateGenerator(DistanceResolver())


@pytest.fixture
async def client(offline_generator):
    app.dependency_overrides[get_generator] = lambda: offline_generator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.pop(get_generator, None)


async def insert_client(client_id: int, departure: str, arrival: str, **fields) -> dict:
    doc = {
        '_id': client_id,
        'name': f'Client {client_id}',
        'departure_postal_code': departure,
        'arrival_postal_code': arrival,
        'status': 'pending',
        'match_status': 'unmatched',
    }
    doc.update(fields)
    await db_mod.db.clients.insert_one(doc)
    return doc


async def insert_move(move_id: int, departure: str, arrival: str, **fields) -> dict:
    doc = {
        '_id': move_id,
        'company_name': f'Carrier {move_id}',
        'departure_postal_code': departure,
        'arrival_postal_code': arrival,
        'max_volume': 50,
        'used_volume': 0,
        'number_of_clients': 0,
        'status': 'pending',
    }
    doc.update(fields)
    await db_mod.db.moves.insert_one(doc)
    return doc
