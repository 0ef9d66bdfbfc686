import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
API = ROOT / "api"

for path in (API,):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

# Keep test logs out of the repo checkout.
os.environ.setdefault("MATRIX_DATA_ROOT", tempfile.mkdtemp(prefix="matrix-hub-tests-"))

from typing import Any, Dict, Iterable, Tuple

import pytest
import pytest_asyncio

from matrix_hub.database import create_engine, create_schema, make_session_factory
from matrix_hub.db_models import Merchant, InventoryRecord
from matrix_hub.store import SqlDocumentStore


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'matrix.db'}", echo=False)
    await create_schema(engine)
    try:
        yield make_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlDocumentStore:
    return SqlDocumentStore(session_factory)


@pytest.fixture
def seed(session_factory):
    """seed({merchant_id: [(doc_id, data), ...]}, names={merchant_id: name})"""

    async def _seed(partitions: Dict[str, Iterable[Tuple[str, Dict[str, Any]]]], names=None) -> None:
        names = names or {}
        async with session_factory() as db:
            async with db.begin():
                for merchant_id, docs in partitions.items():
                    if await db.get(Merchant, merchant_id) is None:
                        db.add(Merchant(id=merchant_id, name=names.get(merchant_id)))
                        await db.flush()
                    for doc_id, data in docs:
                        db.add(InventoryRecord(merchant_id=merchant_id, doc_id=doc_id, data=data))

    return _seed
