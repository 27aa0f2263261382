from __future__ import annotations

import os
import sys
from decimal import Decimal
from io import BytesIO
from pathlib import Path

# Settings are read at import time; pin the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ["RECEIPT_EVENTS_ENABLED"] = "false"
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("VISION_API_KEY", None)

# Add backend folder to sys.path so `import receiptflow...` works when running from the backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from PIL import Image  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from receiptflow.core.background import BackgroundDispatcher  # noqa: E402
from receiptflow.core.database import Base, build_session_factory  # noqa: E402
from receiptflow.models import tables  # noqa: E402,F401
from receiptflow.models.enums import PlanType, WalletType  # noqa: E402
from receiptflow.models.tables import User, Wallet  # noqa: E402
from receiptflow.services.extraction_service import ExtractionEngine  # noqa: E402
from receiptflow.services.receipt_pipeline import ReceiptPipeline  # noqa: E402
from receiptflow.services.storage_service import FilesystemObjectStore  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    # A file database so concurrent sessions see each other's commits
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return build_session_factory(engine)


@pytest.fixture
def blob_dir(tmp_path):
    return tmp_path / "blobs"


@pytest.fixture
def object_store(blob_dir):
    return FilesystemObjectStore(blob_dir)


@pytest.fixture
def png_bytes():
    buf = BytesIO()
    Image.new("RGB", (40, 60), color=(255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes():
    buf = BytesIO()
    Image.new("RGB", (40, 60), color=(200, 200, 200)).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def make_user(sessions):
    counter = {"n": 0}

    async def _make(plan: PlanType = PlanType.FREE) -> int:
        counter["n"] += 1
        async with sessions() as db:
            user = User(email=f"user{counter['n']}@example.com", name=f"User {counter['n']}", plan=plan)
            db.add(user)
            await db.commit()
            return user.id

    return _make


@pytest.fixture
def make_wallet(sessions):
    async def _make(owner_id: int, balance: str = "100.00", primary: bool = True, name: str = "Cash") -> int:
        async with sessions() as db:
            wallet = Wallet(
                owner_id=owner_id,
                name=name,
                type=WalletType.CASH,
                balance=Decimal(balance),
                is_primary=primary,
            )
            db.add(wallet)
            await db.commit()
            return wallet.id

    return _make


@pytest.fixture
def wallet_balance(sessions):
    async def _balance(wallet_id: int) -> Decimal:
        async with sessions() as db:
            wallet = await db.get(Wallet, wallet_id)
            return Decimal(wallet.balance).quantize(Decimal("0.01"))

    return _balance


@pytest_asyncio.fixture
async def make_pipeline(sessions, object_store):
    built: list[ReceiptPipeline] = []

    def _make(client=None, *, allow_fallback: bool = False, timeout: float = 1.0, store=None, **kwargs) -> ReceiptPipeline:
        pipeline = ReceiptPipeline(
            sessions,
            store or object_store,
            ExtractionEngine(client, timeout=timeout, allow_fallback=allow_fallback),
            dispatcher=BackgroundDispatcher(),
            **kwargs,
        )
        built.append(pipeline)
        return pipeline

    yield _make
    # Let usage/progress/event tasks finish before the engine is disposed
    for pipeline in built:
        await pipeline.dispatcher.drain()
