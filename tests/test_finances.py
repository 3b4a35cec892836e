from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from amount_codec import AesGcmCodec, AmountStore, ObfuscationCodec
from database import Base
from models import Finance, FinanceType, Home, HomeMember, MemberStatus
from months import MonthRef
from schemas import FinanceIn, FinanceUpdate
from services import (
    AmountMigrationService,
    BalanceService,
    FinanceFilters,
    FinanceService,
    InvalidVisibilityError,
    NotFoundError,
    PermissionDeniedError,
)

OWNER = 1
MEMBER = 2
PENDING = 3
OUTSIDER = 4


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_store() -> AmountStore:
    return AmountStore("obf", ObfuscationCodec(Decimal("7.31")))


def make_home(session) -> Home:
    home = Home(user_id=OWNER, name="Flat", address="Main St 1")
    session.add(home)
    session.flush()
    session.add_all(
        [
            HomeMember(home_id=home.id, user_id=MEMBER, status=MemberStatus.accepted),
            HomeMember(home_id=home.id, user_id=PENDING, status=MemberStatus.pending),
        ]
    )
    session.commit()
    return home


def finances(session, user_id: int, store: AmountStore) -> FinanceService:
    return FinanceService(session, user_id, amounts=store, retroactive_recurring=False)


def balances(session, user_id: int, store: AmountStore) -> BalanceService:
    return BalanceService(session, user_id, amounts=store, retroactive_recurring=False)


def test_create_stores_encoded_amount_and_reads_it_back() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)

    entry = finances(session, OWNER, store).create(
        home.id,
        FinanceIn(
            type=FinanceType.income,
            category="  Salary ",
            amount="1.200",
            transaction_date=date(2024, 3, 10),
        ),
    )

    assert entry.amount_cents == 120_000
    assert entry.category == "Salary"
    row = session.get(Finance, entry.id)
    assert row.amount_encoded.startswith("obf$")
    assert "1200" not in row.amount_encoded
    assert finances(session, OWNER, store).get(home.id, entry.id).amount_cents == 120_000


def test_only_owner_can_write_and_outsiders_cannot_read() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    payload = FinanceIn(
        type=FinanceType.expense,
        category="Rent",
        amount="800",
        transaction_date=date(2024, 1, 1),
    )

    with pytest.raises(PermissionDeniedError):
        finances(session, MEMBER, store).create(home.id, payload)
    with pytest.raises(NotFoundError):
        finances(session, PENDING, store).list(home.id)
    with pytest.raises(NotFoundError):
        finances(session, OUTSIDER, store).create(home.id, payload)
    with pytest.raises(NotFoundError):
        finances(session, OWNER, store).list(home.id + 1)
    assert session.query(Finance).count() == 0


def test_visibility_must_name_accepted_members() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)

    with pytest.raises(InvalidVisibilityError):
        finances(session, OWNER, store).create(
            home.id,
            FinanceIn(
                type=FinanceType.expense,
                category="Rent",
                amount="800",
                transaction_date=date(2024, 1, 1),
                visible_to_user_ids=[MEMBER, PENDING],
            ),
        )
    assert session.query(Finance).count() == 0


def test_members_only_see_shared_entries() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    shared = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Groceries",
            amount="120,50",
            transaction_date=date(2024, 1, 5),
            visible_to_user_ids=[MEMBER],
        ),
    )
    private = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Gift",
            amount="40",
            transaction_date=date(2024, 1, 6),
        ),
    )

    owner_ids = [entry.id for entry, _ in service.list(home.id)]
    assert owner_ids == [private.id, shared.id]
    member_rows = finances(session, MEMBER, store).list(home.id)
    assert [entry.id for entry, _ in member_rows] == [shared.id]
    assert member_rows[0][0].visible_to_user_ids == frozenset({MEMBER})
    with pytest.raises(NotFoundError):
        finances(session, MEMBER, store).get(home.id, private.id)


def test_month_list_projects_plans_and_recurring_entries() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    plan = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Laptop",
            amount="1200",
            transaction_date=date(2024, 1, 15),
            payment_months=3,
        ),
    )
    rent = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Rent",
            amount="800",
            transaction_date=date(2023, 6, 30),
            is_recurring=True,
        ),
    )
    service.create(
        home.id,
        FinanceIn(
            type=FinanceType.income,
            category="Bonus",
            amount="300",
            transaction_date=date(2024, 5, 1),
        ),
    )

    rows = service.monthly(home.id, MonthRef(2024, 2))
    assert [row.id for row in rows] == [rent.id, plan.id * 1000 + 2]
    assert rows[0].display_date == date(2024, 2, 28)
    assert rows[1].amount_cents == 40_000
    assert rows[1].original_finance_id == plan.id

    income_only = service.list(
        home.id, FinanceFilters(type=FinanceType.income, month=MonthRef(2024, 2))
    )
    assert income_only == []


def test_synthetic_ids_resolve_for_update_and_delete() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    plan = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Sofa",
            amount="900",
            transaction_date=date(2024, 1, 15),
            payment_months=3,
            visible_to_user_ids=[MEMBER],
        ),
    )

    assert service.get(home.id, plan.id * 1000 + 2).id == plan.id
    updated = service.update(
        home.id,
        plan.id * 1000 + 3,
        FinanceUpdate(amount="1.500", description="Corner sofa"),
    )
    assert updated.id == plan.id
    assert updated.amount_cents == 150_000
    assert updated.description == "Corner sofa"
    assert updated.payment_months == 3
    assert updated.visible_to_user_ids == frozenset({MEMBER})

    cleared = service.update(home.id, plan.id, FinanceUpdate(visible_to_user_ids=[]))
    assert cleared.visible_to_user_ids == frozenset()
    assert finances(session, MEMBER, store).list(home.id) == []

    service.delete(home.id, plan.id * 1000 + 1)
    assert session.query(Finance).count() == 0
    with pytest.raises(NotFoundError):
        service.delete(home.id, plan.id)


def test_update_validates_fields() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    entry = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Insurance",
            amount="250",
            transaction_date=date(2024, 4, 1),
        ),
    )

    with pytest.raises(ValueError, match="Due date"):
        service.update(home.id, entry.id, FinanceUpdate(due_date=date(2024, 3, 1)))
    with pytest.raises(ValueError):
        service.update(home.id, entry.id, FinanceUpdate(category=None))
    with pytest.raises(PermissionDeniedError):
        finances(session, MEMBER, store).update(
            home.id, entry.id, FinanceUpdate(description="x")
        )
    assert service.get(home.id, entry.id).due_date is None


def test_balance_counts_recurring_expense_after_one_time_income() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    service.create(
        home.id,
        FinanceIn(
            type=FinanceType.income,
            category="Salary",
            amount="1200",
            transaction_date=date(2024, 3, 10),
        ),
    )
    service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Internet",
            amount="50",
            transaction_date=date(2024, 3, 1),
            is_recurring=True,
        ),
    )

    may = balances(session, OWNER, store).summary(home.id, MonthRef(2024, 5))
    assert (may.total_income_cents, may.total_expenses_cents) == (0, 5_000)
    assert may.balance_cents == -5_000

    march = balances(session, OWNER, store).summary(home.id, MonthRef(2024, 3))
    assert march.balance_cents == 115_000

    series = balances(session, OWNER, store).series(
        home.id, MonthRef(2024, 2), MonthRef(2024, 4)
    )
    assert [s.balance_cents for s in series] == [0, 115_000, -5_000]


def test_corrupt_amount_counts_as_zero() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    broken = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Water",
            amount="30",
            transaction_date=date(2024, 2, 2),
        ),
    )
    service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Power",
            amount="70",
            transaction_date=date(2024, 2, 3),
        ),
    )
    session.get(Finance, broken.id).amount_encoded = "gcm$zz:zz:zz"
    session.commit()

    summary = balances(session, OWNER, store).summary(home.id, MonthRef(2024, 2))
    assert summary.total_expenses_cents == 7_000
    assert service.get(home.id, broken.id).amount_cents == 0


def test_schedule_starts_at_transaction_month() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    plan = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Phone",
            amount="100",
            transaction_date=date(2024, 11, 30),
            payment_months=3,
        ),
    )

    occurrences = service.schedule(home.id, plan.id, months=6)
    assert [ref for ref, _ in occurrences] == [
        MonthRef(2024, 11),
        MonthRef(2024, 12),
        MonthRef(2025, 1),
    ]
    assert [o.amount_cents for _, o in occurrences] == [3_333, 3_333, 3_333]
    assert occurrences[-1][1].display_date == date(2025, 1, 28)
    with pytest.raises(ValueError):
        service.schedule(home.id, plan.id, months=0)


def test_reencode_moves_rows_to_current_scheme() -> None:
    session = make_session()
    obfuscation = ObfuscationCodec(Decimal("7.31"))
    old_store = AmountStore("obf", obfuscation)
    home = make_home(session)
    created = finances(session, OWNER, old_store).create(
        home.id,
        FinanceIn(
            type=FinanceType.income,
            category="Rent income",
            amount="650",
            transaction_date=date(2024, 1, 1),
        ),
    )
    session.add_all(
        [
            Finance(
                home_id=home.id,
                type=FinanceType.expense,
                category="Legacy",
                amount_encoded="73.1",
                transaction_date=date(2023, 1, 1),
                created_by=OWNER,
            ),
            Finance(
                home_id=home.id,
                type=FinanceType.expense,
                category="Broken",
                amount_encoded="obf$??",
                transaction_date=date(2023, 1, 1),
                created_by=OWNER,
            ),
        ]
    )
    session.commit()

    new_store = AmountStore("gcm", obfuscation, AesGcmCodec("rotation-secret"))
    assert AmountMigrationService(session, new_store).reencode_all() == 2

    rows = {row.category: row for row in session.query(Finance).all()}
    assert rows["Rent income"].amount_encoded.startswith("gcm$")
    assert rows["Legacy"].amount_encoded.startswith("gcm$")
    assert rows["Broken"].amount_encoded == "obf$??"
    assert new_store.decode(rows["Legacy"].amount_encoded) == Decimal("10.00")
    reread = finances(session, OWNER, new_store).get(home.id, created.id)
    assert reread.amount_cents == 65_000
    assert AmountMigrationService(session, new_store).reencode_all() == 0


def test_plan_length_is_capped_below_the_synthetic_id_factor() -> None:
    with pytest.raises(ValidationError):
        FinanceIn(
            type=FinanceType.expense,
            category="Mortgage",
            amount="100000",
            transaction_date=date(2024, 1, 1),
            payment_months=1000,
        )
    with pytest.raises(ValidationError):
        FinanceUpdate(payment_months=1200)

    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    with pytest.raises(ValueError, match="999 months"):
        service.create(
            home.id,
            FinanceIn(
                type=FinanceType.expense,
                category="Lease",
                amount="100",
                transaction_date=date(2024, 1, 1),
                due_date=date(2107, 5, 1),
            ),
        )
    assert session.query(Finance).count() == 0


def test_synthetic_id_outside_plan_does_not_reach_another_record() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    service = finances(session, OWNER, store)
    single = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Repair",
            amount="60",
            transaction_date=date(2024, 1, 3),
        ),
    )
    plan = service.create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="TV",
            amount="600",
            transaction_date=date(2024, 1, 3),
            payment_months=2,
        ),
    )

    with pytest.raises(NotFoundError):
        service.get(home.id, single.id * 1000 + 5)
    with pytest.raises(NotFoundError):
        service.delete(home.id, plan.id * 1000 + 3)
    with pytest.raises(NotFoundError):
        service.update(
            home.id, single.id * 1000 + 1, FinanceUpdate(description="x")
        )
    assert session.query(Finance).count() == 2


def test_recurring_policy_controls_months_before_start() -> None:
    session = make_session()
    store = make_store()
    home = make_home(session)
    finances(session, OWNER, store).create(
        home.id,
        FinanceIn(
            type=FinanceType.expense,
            category="Gym",
            amount="30",
            transaction_date=date(2024, 3, 1),
            is_recurring=True,
        ),
    )

    default_policy = BalanceService(
        session, OWNER, amounts=store, retroactive_recurring=True
    )
    assert default_policy.summary(home.id, MonthRef(2024, 2)).total_expenses_cents == 3_000
    forward_only = balances(session, OWNER, store)
    assert forward_only.summary(home.id, MonthRef(2024, 2)).total_expenses_cents == 0


def test_reencode_can_be_limited_to_one_home() -> None:
    session = make_session()
    obfuscation = ObfuscationCodec(Decimal("7.31"))
    home = make_home(session)
    other = Home(user_id=OUTSIDER, name="Cabin")
    session.add(other)
    session.commit()
    session.add_all(
        [
            Finance(
                home_id=home.id,
                type=FinanceType.expense,
                category="Ours",
                amount_encoded="73.1",
                transaction_date=date(2023, 1, 1),
                created_by=OWNER,
            ),
            Finance(
                home_id=other.id,
                type=FinanceType.expense,
                category="Theirs",
                amount_encoded="73.1",
                transaction_date=date(2023, 1, 1),
                created_by=OUTSIDER,
            ),
        ]
    )
    session.commit()

    store = AmountStore("obf", obfuscation)
    assert AmountMigrationService(session, store).reencode_all(home_id=home.id) == 1

    rows = {row.category: row for row in session.query(Finance).all()}
    assert rows["Ours"].amount_encoded.startswith("obf$")
    assert rows["Theirs"].amount_encoded == "73.1"
