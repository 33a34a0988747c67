"""MongoDB connection management and index creation."""
import os
import logging
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from motor.motor_asyncio import AsyncIOMotorClient
from bson.objectid import ObjectId
from urllib.parse import urlparse, urlunparse, urlencode, parse_qsl, quote

from .settings import get_settings

logger = logging.getLogger(__name__)

# ---------------- In-memory Fake DB (test mode) -----------------
if os.getenv('USE_FAKE_DB_FOR_TESTS'):
    import types

    class _InsertOneResult:
        def __init__(self, inserted_id):
            self.inserted_id = inserted_id

    class _UpdateResult:
        def __init__(self, matched, modified):
            self.matched_count = matched
            self.modified_count = modified

    def _eval_expr(doc, expr):
        # Minimal aggregation-expression subset used by the engine:
        # $lte, $gte, $add, $ifNull and literal / field refs like '$max_volume'
        if isinstance(expr, str) and expr.startswith('$'):
            return doc.get(expr[1:])
        if isinstance(expr, dict):
            if '$ifNull' in expr:
                first, fallback = expr['$ifNull']
                val = _eval_expr(doc, first)
                return val if val is not None else _eval_expr(doc, fallback)
            if '$add' in expr:
                return sum((_eval_expr(doc, part) or 0) for part in expr['$add'])
            if '$lte' in expr:
                left, right = expr['$lte']
                return (_eval_expr(doc, left) or 0) <= (_eval_expr(doc, right) or 0)
            if '$gte' in expr:
                left, right = expr['$gte']
                return (_eval_expr(doc, left) or 0) >= (_eval_expr(doc, right) or 0)
            return None
        return expr

    def _match_field(value, cond) -> bool:
        if not isinstance(cond, dict):
            return value == cond
        for op, operand in cond.items():
            if op == '$in':
                if value not in operand:
                    return False
            elif op == '$nin':
                if value in operand:
                    return False
            elif op == '$ne':
                if value == operand:
                    return False
            elif op in ('$gte', '$gt', '$lte', '$lt'):
                if value is None:
                    return False
                if op == '$gte' and not value >= operand:
                    return False
                if op == '$gt' and not value > operand:
                    return False
                if op == '$lte' and not value <= operand:
                    return False
                if op == '$lt' and not value < operand:
                    return False
            else:
                # Unknown operator: conservative mismatch
                return False
        return True

    def _apply_update(doc: dict, update: dict) -> None:
        if '$set' in update:
            doc.update(update['$set'])
        if '$unset' in update:
            for key in update['$unset'].keys():
                doc.pop(key, None)
        if '$inc' in update:
            for key, amount in update['$inc'].items():
                doc[key] = (doc.get(key) or 0) + amount

    class _Cursor:
        def __init__(self, docs):
            self._docs = docs

        def sort(self, keys, direction=None):
            if isinstance(keys, str):
                keys = [(keys, direction or 1)]
            for key, dirn in reversed(list(keys)):
                self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=int(dirn) == -1)
            return self

        def limit(self, n):
            if n:
                self._docs = self._docs[:n]
            return self

        async def to_list(self, length=None):
            return list(self._docs if length is None else self._docs[:length])

        def __aiter__(self):
            self._iter = iter(self._docs)
            return self

        async def __anext__(self):
            try:
                return next(self._iter)
            except StopIteration:
                raise StopAsyncIteration

    class FakeCollection:
        def __init__(self, name, store):
            self._name = name
            self._store = store  # list of dicts

        async def create_index(self, *args, **kwargs):  # no-op
            return None

        def _match(self, doc, filt):
            if not filt:
                return True
            for k, v in filt.items():
                if k == '$expr':
                    if not _eval_expr(doc, v):
                        return False
                    continue
                if not _match_field(doc.get(k), v):
                    return False
            return True

        async def find_one(self, filt: dict | None = None, projection=None, sort=None):
            cursor = self.find(filt)
            if sort:
                cursor.sort(sort)
            docs = await cursor.to_list(1)
            return docs[0] if docs else None

        def find(self, filt: dict | None = None, projection=None):
            return _Cursor([d.copy() for d in self._store if self._match(d, filt or {})])

        async def insert_one(self, doc: dict):
            if '_id' not in doc:
                doc['_id'] = ObjectId()
            if any(existing.get('_id') == doc['_id'] for existing in self._store):
                from pymongo.errors import DuplicateKeyError
                raise DuplicateKeyError(f"duplicate _id {doc['_id']!r} in {self._name}")
            self._store.append(dict(doc))
            return _InsertOneResult(doc['_id'])

        async def update_one(self, filt: dict, update: dict, upsert: bool = False):
            for d in self._store:
                if self._match(d, filt):
                    _apply_update(d, update)
                    return _UpdateResult(1, 1)
            return _UpdateResult(0, 0)

        async def find_one_and_update(self, filt: dict, update: dict, upsert: bool = False, return_document=ReturnDocument.BEFORE, **kwargs):
            for d in self._store:
                if self._match(d, filt):
                    original = d.copy()
                    _apply_update(d, update)
                    return d.copy() if return_document == ReturnDocument.AFTER else original
            if not upsert:
                return None
            new_doc = {key: value for key, value in (filt or {}).items() if not isinstance(value, dict) and not key.startswith('$')}
            new_doc.update(update.get('$setOnInsert') or {})
            new_doc.setdefault('_id', ObjectId())
            _apply_update(new_doc, update)
            self._store.append(new_doc)
            return new_doc.copy() if return_document == ReturnDocument.AFTER else None

        async def delete_one(self, filt: dict):
            for idx, d in enumerate(self._store):
                if self._match(d, filt):
                    del self._store[idx]
                    return types.SimpleNamespace(deleted_count=1)
            return types.SimpleNamespace(deleted_count=0)

        async def delete_many(self, filt: dict):
            before = len(self._store)
            self._store[:] = [d for d in self._store if not self._match(d, filt)]
            return types.SimpleNamespace(deleted_count=before - len(self._store))

    class FakeDB:
        def __init__(self):
            self._collections = {}

        def __getattr__(self, item):
            if item.startswith('_'):
                raise AttributeError(item)
            if item not in self._collections:
                self._collections[item] = FakeCollection(item, [])
            return self._collections[item]

        def reset(self):
            self._collections.clear()

    _fake_db = FakeDB()


class MongoDB:
    """Wrapper managing a Motor client + DB plus test fake DB swap."""

    def __init__(self):
        self.client: AsyncIOMotorClient | None = None
        self.db = None
        self._connected = False

    async def connect(self):
        """Connect to MongoDB (or fake) and create indexes (idempotent)."""
        if self._connected:
            return

        settings = get_settings()
        base_url = settings.mongo_uri
        db_name = settings.mongo_db

        if os.getenv('USE_FAKE_DB_FOR_TESTS'):
            self.client = None
            self.db = _fake_db  # type: ignore[name-defined]
        else:
            user = _strip_quotes(os.getenv('MONGO_USER'))
            pwd = _strip_quotes(os.getenv('MONGO_PASSWORD'))
            mongo_url = base_url
            if user and '@' not in base_url:
                p = urlparse(base_url)
                path = p.path if p.path and p.path != '/' else f'/{db_name}'
                netloc = f"{quote(user)}:{quote(pwd or '')}@{p.hostname or 'localhost'}"
                if p.port:
                    netloc += f":{p.port}"
                q = dict(parse_qsl(p.query, keep_blank_values=True))
                if 'authSource' not in q:
                    q['authSource'] = os.getenv('MONGO_AUTH_SOURCE', path.lstrip('/'))
                mongo_url = urlunparse((p.scheme or 'mongodb', netloc, path, '', urlencode(q), ''))
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[db_name]
        globals()['db'] = self.db

        try:
            # CLIENT REQUESTS
            await self.db.clients.create_index('status')
            await self.db.clients.create_index('match_status')
            await self.db.clients.create_index('desired_date')

            # MOVES
            await self.db.moves.create_index('status')
            await self.db.moves.create_index('departure_date')

            # MATCH RECORDS
            await self.db.matches.create_index('reference', unique=True)
            await self.db.matches.create_index('client_id')
            await self.db.matches.create_index('move_id')
            await self.db.matches.create_index('match_type')
            await self.db.matches.create_index([('move_id', 1), ('match_type', 1)])
        except PyMongoError as e:
            logger.warning("MongoDB index creation failed; continuing startup: %s", e)

        self._connected = True
        logger.info('db.connected name=%s fake=%s', db_name, self.client is None)

    async def close(self):
        if self.client:
            self.client.close()
            logger.info('db.closed')
        self._connected = False


def _strip_quotes(s: str | None) -> str | None:
    if not s:
        return s
    if (s.startswith("'") and s.endswith("'")) or (s.startswith('"') and s.endswith('"')):
        return s[1:-1]
    return s


mongo_db = MongoDB()


async def connect():
    """Module-level connect function used by the application startup event."""
    await mongo_db.connect()


async def close():
    """Module-level close function used by the application shutdown event."""
    await mongo_db.close()


def get_db():
    return mongo_db.db


# Set to the Motor database (or the fake) by connect(); services access it as
# `db_mod.db.<collection>` after `from .. import db as db_mod`.
db = None
