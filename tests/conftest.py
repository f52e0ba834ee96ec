"""
Pytest configuration and fixtures.
"""
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, List, Optional

# The API module reads settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from donation_ledger.config import Settings
from donation_ledger.core.confirmation import PaymentConfirmationProcessor
from donation_ledger.core.locking import LocalKeyedLock
from donation_ledger.database.connection import engine_options
from donation_ledger.database.models import (
    Base,
    Campaign,
    Donation,
    FinancialTransaction,
    Notification,
    PaymentStatus,
    ReviewFlag,
)
from donation_ledger.integrations.notifications import NotificationRequest

VNPAY_SECRET = "vnpay-test-secret"
MOMO_ACCESS_KEY = "momo-test-access"
MOMO_SECRET = "momo-test-secret"
ADMIN_KEY = "test-admin-key"


class RecordingNotifier:
    """Notification dispatcher that keeps what it was asked to send."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[NotificationRequest] = []

    async def send(self, user_id: int, title: str, message: str, type: str) -> None:
        if self.fail:
            raise ConnectionError("notification backend down")
        self.sent.append(
            NotificationRequest(user_id=user_id, title=title, message=message, type=type)
        )


class Store:
    """Seeding and inspection helpers over the test database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self._codes = 0

    async def add_campaign(
        self,
        target: str = "1000000",
        current: str = "0",
        category_id: Optional[int] = 1,
        creator_id: Optional[int] = 100,
        excess_fund_option: Optional[str] = None,
        status: str = "active",
        title: str = "Clean water for Ha Giang",
        created_at: Optional[datetime] = None,
    ) -> int:
        async with self.session_factory() as db:
            campaign = Campaign(
                title=title,
                creator_id=creator_id,
                category_id=category_id,
                target_amount=Decimal(target),
                current_amount=Decimal(current),
                status=status,
                excess_fund_option=excess_fund_option,
                created_at=created_at or datetime(2025, 1, 1),
                updated_at=created_at or datetime(2025, 1, 1),
            )
            db.add(campaign)
            await db.commit()
            return campaign.id

    async def add_donation(
        self,
        campaign_id: Optional[int],
        amount: str = "500000",
        transaction_code: Optional[str] = None,
        user_id: Optional[int] = 7,
        payment_method: str = "vnpay",
        status: PaymentStatus = PaymentStatus.PENDING,
        is_anonymous: bool = False,
    ) -> str:
        self._codes += 1
        code = transaction_code or f"DON2025010610000{self._codes:04d}"
        async with self.session_factory() as db:
            db.add(
                Donation(
                    campaign_id=campaign_id,
                    user_id=user_id,
                    amount=Decimal(amount),
                    payment_method=payment_method,
                    transaction_code=code,
                    payment_status=status.value,
                    is_anonymous=is_anonymous,
                    created_at=datetime(2025, 1, 6, 10, 0, 0),
                )
            )
            await db.commit()
        return code

    async def donation(self, transaction_code: str) -> Donation:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Donation).where(Donation.transaction_code == transaction_code)
            )
            return result.scalar_one()

    async def campaign(self, campaign_id: int) -> Campaign:
        async with self.session_factory() as db:
            return await db.get(Campaign, campaign_id)

    async def ledger_rows(self, campaign_id: Optional[int] = None) -> List[FinancialTransaction]:
        async with self.session_factory() as db:
            stmt = select(FinancialTransaction).order_by(FinancialTransaction.id)
            if campaign_id is not None:
                stmt = stmt.where(FinancialTransaction.campaign_id == campaign_id)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def review_flags(self, kind: Optional[str] = None) -> List[ReviewFlag]:
        async with self.session_factory() as db:
            stmt = select(ReviewFlag).order_by(ReviewFlag.id)
            if kind is not None:
                stmt = stmt.where(ReviewFlag.kind == kind)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def notification_count(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(select(func.count(Notification.id)))
            return int(result.scalar_one())


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        lock_backend="local",
        vnpay_tmn_code="TESTTMN1",
        vnpay_hash_secret=VNPAY_SECRET,
        momo_partner_code="MOMOTEST",
        momo_access_key=MOMO_ACCESS_KEY,
        momo_secret_key=MOMO_SECRET,
        admin_api_key=ADMIN_KEY,
        confirmation_retry_max_attempts=3,
        confirmation_retry_base_delay=0.01,
        app_name="donation-ledger-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a temporary SQLite database with the full schema."""
    engine = create_async_engine(
        test_settings.database_url, poolclass=NullPool, **engine_options(test_settings)
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> Store:
    return Store(session_factory)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
    test_settings: Settings,
) -> PaymentConfirmationProcessor:
    """Confirmation processor wired to the test database."""
    return PaymentConfirmationProcessor(
        session_factory=session_factory,
        notifier=notifier,
        lock=LocalKeyedLock(),
        settings=test_settings,
    )


@pytest.fixture
def older() -> datetime:
    """A creation time earlier than the default seeded campaigns."""
    return datetime(2025, 1, 1) - timedelta(days=30)
