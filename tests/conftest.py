"""Pytest fixtures for payroll versioning tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_versioning.database import create_engine_for_url, make_session_factory
from payroll_versioning.models import (
    Base,
    LineItemKind,
    PayrollPeriod,
    PayrollReceipt,
    ReceiptStatus,
)
from payroll_versioning.providers import (
    ComputedReceipt,
    FiscalParameters,
    Formula,
    LineItem,
    StaticReceiptCalculator,
    StubStampingProvider,
)
from payroll_versioning.services import (
    AuthorizationGate,
    ReceiptLifecycleService,
    VersionStore,
)

# File-backed SQLite so several sessions can share one database
TEST_LOCK_TIMEOUT_MS = 2000


FISCAL_2024 = FiscalParameters(
    tax_table_id="ISR-2024-Q",
    social_security_table_id="IMSS-2024",
    subsidy_table_id="SUB-2024",
    effective_date=date(2024, 1, 1),
    reference_values={
        "UMA": Decimal("108.57"),
        "SMG": Decimal("248.93"),
    },
    fiscal_year=2024,
    period_type="QUINCENAL",
    formulas=(
        Formula("P001", "salario_diario * dias_trabajados"),
        Formula("D001", "isr(base_gravable)"),
    ),
)


def build_computed(
    net_pay: Decimal | str = "1000.00",
    deductions: Decimal | str = "200.00",
    *,
    worked_days: Decimal | str = "15",
    extra_perceptions: tuple[LineItem, ...] = (),
    parameters: FiscalParameters | None = FISCAL_2024,
) -> ComputedReceipt:
    """Computed receipt with one salary line and one ISR line."""
    net = Decimal(net_pay)
    deducted = Decimal(deductions)
    extra = sum((item.amount for item in extra_perceptions), Decimal("0"))
    salary = net + deducted - extra
    return ComputedReceipt(
        net_pay=net,
        total_perceptions=net + deducted,
        total_deductions=deducted,
        worked_days=Decimal(worked_days),
        line_items=(
            LineItem("P001", "Sueldo", salary, LineItemKind.PERCEPTION),
            *extra_perceptions,
            LineItem("D001", "ISR", deducted, LineItemKind.DEDUCTION),
        ),
        fiscal_parameters=parameters,
    )


@pytest.fixture
async def engine(tmp_path):
    """Create test database engine."""
    engine = create_engine_for_url(
        f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}",
        lock_timeout_ms=TEST_LOCK_TIMEOUT_MS,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_computed():
    return build_computed


@pytest.fixture
def fiscal_parameters() -> FiscalParameters:
    return FISCAL_2024


@pytest.fixture
def calculator() -> StaticReceiptCalculator:
    return StaticReceiptCalculator(default=build_computed("1000.00"))


@pytest.fixture
def stamping_provider() -> StubStampingProvider:
    return StubStampingProvider()


@pytest.fixture
def store(session: AsyncSession, calculator: StaticReceiptCalculator) -> VersionStore:
    return VersionStore(session, calculator)


@pytest.fixture
def lifecycle(session: AsyncSession, store: VersionStore) -> ReceiptLifecycleService:
    return ReceiptLifecycleService(session, store)


@pytest.fixture
def gate(session: AsyncSession, store: VersionStore) -> AuthorizationGate:
    return AuthorizationGate(session, store)


@pytest.fixture
async def period(session: AsyncSession, store: VersionStore) -> PayrollPeriod:
    """An open, committed payroll period."""
    period = await store.open_period("2024-Q01")
    await session.commit()
    return period


@pytest.fixture
async def receipt(
    session: AsyncSession, store: VersionStore, period: PayrollPeriod
) -> PayrollReceipt:
    """A committed receipt with no version yet."""
    receipt = await store.open_receipt(period.period_id, uuid4())
    await session.commit()
    return receipt


@pytest.fixture
def advance(session: AsyncSession, lifecycle: ReceiptLifecycleService):
    """Walk a receipt's current version through non-critical transitions."""

    async def _advance(receipt_id, *statuses: ReceiptStatus, actor: str = "operator"):
        state = None
        for status in statuses:
            state = await lifecycle.transition(receipt_id, status, actor=actor)
        await session.commit()
        return state

    return _advance


@pytest.fixture
async def approved_receipt(
    session: AsyncSession,
    store: VersionStore,
    receipt: PayrollReceipt,
    advance,
) -> PayrollReceipt:
    """Receipt whose first version is calculated and APPROVED."""
    await store.create_version(
        receipt.receipt_id,
        "INITIAL",
        build_computed("1000.00"),
        created_by="calc-engine",
        calculated=True,
    )
    await session.commit()
    await advance(receipt.receipt_id, ReceiptStatus.APPROVED)
    return receipt


@pytest.fixture
async def authorized_period(
    session: AsyncSession,
    gate: AuthorizationGate,
    period: PayrollPeriod,
    approved_receipt: PayrollReceipt,
) -> PayrollPeriod:
    """Period holding an approved receipt and an active stamping authorization."""
    await gate.request_action(
        "AUTHORIZE_STAMPING",
        period.period_id,
        "payroll.manager",
        "Quincena reviewed against attendance",
    )
    await session.commit()
    return period


@pytest.fixture
async def stamped_receipt(
    session: AsyncSession,
    lifecycle: ReceiptLifecycleService,
    stamping_provider: StubStampingProvider,
    authorized_period: PayrollPeriod,
    approved_receipt: PayrollReceipt,
    advance,
) -> PayrollReceipt:
    """Receipt whose current version is STAMP_OK."""
    await advance(approved_receipt.receipt_id, ReceiptStatus.STAMPING)
    await lifecycle.submit_for_stamping(
        approved_receipt.receipt_id, stamping_provider, actor="stamper"
    )
    await session.commit()
    return approved_receipt
