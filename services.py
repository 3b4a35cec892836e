from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import and_, delete, insert, or_, select
from sqlalchemy.orm import Session

from amount_codec import AmountStore, get_amount_store
from amount_input import to_cents
from config import get_settings
from ledger import (
    MAX_PLAN_MONTHS,
    BalanceSummary,
    FinanceEntry,
    Occurrence,
    ProjectedFinance,
    classify,
    plan_span,
    project_month,
    resolve_original_id,
    schedule,
    summarize_month,
    summarize_range,
)
from models import (
    Finance,
    FinanceType,
    Home,
    HomeMember,
    MemberStatus,
    finance_visibility,
)
from months import MonthRef, month_bounds, months_between
from schemas import FinanceIn, FinanceUpdate

logger = logging.getLogger(__name__)

MAX_SCHEDULE_MONTHS = 60
REQUIRED_FIELDS = ("type", "category", "amount", "transaction_date", "is_recurring")


class NotFoundError(ValueError):
    pass


class PermissionDeniedError(ValueError):
    pass


class InvalidVisibilityError(ValueError):
    pass


@dataclass
class FinanceFilters:
    type: Optional[FinanceType] = None
    month: Optional[MonthRef] = None


class HomeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get_accessible(self, home_id: int) -> Home:
        home = self.session.get(Home, home_id)
        if not home:
            raise NotFoundError("Home not found")
        if home.user_id == self.user_id:
            return home
        membership = self.session.scalar(
            select(HomeMember.id).where(
                HomeMember.home_id == home_id,
                HomeMember.user_id == self.user_id,
                HomeMember.status == MemberStatus.accepted,
            )
        )
        if membership is None:
            raise NotFoundError("Home not found")
        return home

    def get_owned(self, home_id: int) -> Home:
        home = self.get_accessible(home_id)
        if home.user_id != self.user_id:
            raise PermissionDeniedError("Only the home owner can manage finances")
        return home

    def allowed_visibility_ids(self, home: Home) -> set[int]:
        member_ids = self.session.scalars(
            select(HomeMember.user_id).where(
                HomeMember.home_id == home.id,
                HomeMember.status == MemberStatus.accepted,
            )
        ).all()
        return set(member_ids) | {home.user_id}


class FinanceService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        amounts: Optional[AmountStore] = None,
        retroactive_recurring: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.homes = HomeService(session, user_id)
        self.amounts = amounts or get_amount_store()
        if retroactive_recurring is None:
            retroactive_recurring = get_settings().recurring_retroactive
        self.retroactive_recurring = retroactive_recurring

    def _visible_clause(self):
        shared_ids = select(finance_visibility.c.finance_id).where(
            finance_visibility.c.user_id == self.user_id
        )
        return or_(Finance.created_by == self.user_id, Finance.id.in_(shared_ids))

    @staticmethod
    def _month_prefilter(ref: MonthRef):
        # Must stay a superset of what classify() accepts for the month.
        start, end = month_bounds(ref.year, ref.month)
        return or_(
            Finance.transaction_date.between(start, end),
            Finance.is_recurring.is_(True),
            Finance.payment_months > 1,
            and_(
                Finance.due_date.is_not(None),
                Finance.transaction_date <= end,
                Finance.due_date >= start,
            ),
        )

    def _visibility_map(self, finance_ids: Iterable[int]) -> dict[int, set[int]]:
        ids = list(finance_ids)
        result: dict[int, set[int]] = {finance_id: set() for finance_id in ids}
        if not ids:
            return result
        rows = self.session.execute(
            select(finance_visibility.c.finance_id, finance_visibility.c.user_id).where(
                finance_visibility.c.finance_id.in_(ids)
            )
        ).all()
        for finance_id, user_id in rows:
            result[finance_id].add(user_id)
        return result

    def _entry(self, finance: Finance, visible_ids: Iterable[int]) -> FinanceEntry:
        amount = self.amounts.decode_safe(finance.amount_encoded, record_id=finance.id)
        return FinanceEntry(
            id=finance.id,
            home_id=finance.home_id,
            type=finance.type,
            category=finance.category,
            amount_cents=to_cents(amount),
            transaction_date=finance.transaction_date,
            created_by=finance.created_by,
            description=finance.description,
            is_recurring=bool(finance.is_recurring),
            due_date=finance.due_date,
            payment_months=finance.payment_months,
            visible_to_user_ids=frozenset(visible_ids),
        )

    def load_entries(
        self, home_id: int, filters: Optional[FinanceFilters] = None
    ) -> list[FinanceEntry]:
        home = self.homes.get_accessible(home_id)
        filters = filters or FinanceFilters()
        stmt = (
            select(Finance)
            .where(Finance.home_id == home.id, self._visible_clause())
            .order_by(Finance.transaction_date.desc(), Finance.id.desc())
        )
        if filters.type:
            stmt = stmt.where(Finance.type == filters.type)
        if filters.month:
            stmt = stmt.where(self._month_prefilter(filters.month))
        rows = self.session.scalars(stmt).all()
        visibility = self._visibility_map(row.id for row in rows)
        return [self._entry(row, visibility[row.id]) for row in rows]

    def list(
        self, home_id: int, filters: Optional[FinanceFilters] = None
    ) -> list[tuple[FinanceEntry, Optional[Occurrence]]]:
        filters = filters or FinanceFilters()
        entries = self.load_entries(home_id, filters)
        if not filters.month:
            return [(entry, None) for entry in entries]
        result = []
        for entry in entries:
            occurrence = classify(
                entry,
                filters.month.year,
                filters.month.month,
                retroactive_recurring=self.retroactive_recurring,
            )
            if occurrence is not None:
                result.append((entry, occurrence))
        return result

    def monthly(
        self, home_id: int, ref: MonthRef, type: Optional[FinanceType] = None
    ) -> list[ProjectedFinance]:
        entries = self.load_entries(home_id, FinanceFilters(type=type, month=ref))
        return project_month(
            entries,
            ref.year,
            ref.month,
            retroactive_recurring=self.retroactive_recurring,
        )

    def _plan_months(self, *criteria) -> dict[int, int]:
        rows = self.session.execute(
            select(
                Finance.id,
                Finance.payment_months,
                Finance.transaction_date,
                Finance.due_date,
            ).where(*criteria)
        ).all()
        return {
            finance_id: plan_span(payment_months, transaction_date, due_date)[0]
            for finance_id, payment_months, transaction_date, due_date in rows
        }

    def get(self, home_id: int, finance_id: int) -> FinanceEntry:
        home = self.homes.get_accessible(home_id)
        plans = self._plan_months(Finance.home_id == home.id, self._visible_clause())
        original_id = resolve_original_id(finance_id, plans)
        if original_id is None:
            raise NotFoundError("Finance not found")
        finance = self.session.get(Finance, original_id)
        return self._entry(finance, self._visibility_map([original_id])[original_id])

    def schedule(
        self, home_id: int, finance_id: int, months: int = 12
    ) -> list[tuple[MonthRef, Occurrence]]:
        if not 1 <= months <= MAX_SCHEDULE_MONTHS:
            raise ValueError(f"Months must be between 1 and {MAX_SCHEDULE_MONTHS}")
        entry = self.get(home_id, finance_id)
        start = MonthRef(entry.transaction_date.year, entry.transaction_date.month)
        return schedule(
            entry, start, months, retroactive_recurring=self.retroactive_recurring
        )

    def _owned_row(self, home: Home, finance_id: int) -> Finance:
        plans = self._plan_months(Finance.home_id == home.id)
        original_id = resolve_original_id(finance_id, plans)
        if original_id is None:
            raise NotFoundError("Finance not found")
        return self.session.get(Finance, original_id)

    @staticmethod
    def _validate_dates(transaction_date: date, due_date: Optional[date]) -> None:
        if due_date is not None and due_date < transaction_date:
            raise ValueError("Due date cannot be before transaction date")
        if due_date is not None:
            span = months_between(transaction_date, due_date) + 1
            if span > MAX_PLAN_MONTHS:
                raise ValueError(
                    f"Due date range cannot exceed {MAX_PLAN_MONTHS} months"
                )

    def _validate_visibility(self, home: Home, user_ids: list[int]) -> None:
        if not user_ids:
            return
        invalid = set(user_ids) - self.homes.allowed_visibility_ids(home)
        if invalid:
            raise InvalidVisibilityError(
                f"Users {sorted(invalid)} are not members of this home"
            )

    def _replace_visibility(self, finance_id: int, user_ids: list[int]) -> None:
        self.session.execute(
            delete(finance_visibility).where(
                finance_visibility.c.finance_id == finance_id
            )
        )
        if user_ids:
            self.session.execute(
                insert(finance_visibility),
                [{"finance_id": finance_id, "user_id": uid} for uid in user_ids],
            )

    def create(self, home_id: int, data: FinanceIn) -> FinanceEntry:
        home = self.homes.get_owned(home_id)
        category = data.category.strip()
        if not category:
            raise ValueError("Category is required")
        self._validate_dates(data.transaction_date, data.due_date)
        self._validate_visibility(home, data.visible_to_user_ids)
        finance = Finance(
            home_id=home.id,
            type=data.type,
            category=category,
            amount_encoded=self.amounts.encode(data.amount),
            description=data.description,
            transaction_date=data.transaction_date,
            is_recurring=data.is_recurring,
            due_date=data.due_date,
            payment_months=data.payment_months,
            created_by=self.user_id,
        )
        self.session.add(finance)
        self.session.flush()
        self._replace_visibility(finance.id, data.visible_to_user_ids)
        self.session.commit()
        self.session.refresh(finance)
        logger.info(
            f"finance_create: home_id={home.id} finance_id={finance.id} "
            f"user_id={self.user_id}"
        )
        return self._entry(finance, data.visible_to_user_ids)

    def update(
        self, home_id: int, finance_id: int, data: FinanceUpdate
    ) -> FinanceEntry:
        home = self.homes.get_owned(home_id)
        finance = self._owned_row(home, finance_id)
        changes = data.model_dump(exclude_unset=True)
        visible_ids = changes.pop("visible_to_user_ids", None)
        for name in REQUIRED_FIELDS:
            if name in changes and changes[name] is None:
                raise ValueError(f"{name} cannot be empty")
        if "category" in changes:
            changes["category"] = changes["category"].strip()
            if not changes["category"]:
                raise ValueError("Category is required")
        self._validate_dates(
            changes.get("transaction_date", finance.transaction_date),
            changes.get("due_date", finance.due_date),
        )
        if visible_ids is not None:
            self._validate_visibility(home, visible_ids)

        if "amount" in changes:
            finance.amount_encoded = self.amounts.encode(changes.pop("amount"))
        for field, value in changes.items():
            setattr(finance, field, value)
        if visible_ids is not None:
            self._replace_visibility(finance.id, visible_ids)
        self.session.commit()
        self.session.refresh(finance)
        logger.info(
            f"finance_update: home_id={home.id} finance_id={finance.id} "
            f"fields={sorted(changes)} visibility_replaced={visible_ids is not None}"
        )
        return self._entry(finance, self._visibility_map([finance.id])[finance.id])

    def delete(self, home_id: int, finance_id: int) -> None:
        home = self.homes.get_owned(home_id)
        finance = self._owned_row(home, finance_id)
        self._replace_visibility(finance.id, [])
        self.session.delete(finance)
        self.session.commit()
        logger.info(f"finance_delete: home_id={home.id} finance_id={finance.id}")


class BalanceService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        amounts: Optional[AmountStore] = None,
        retroactive_recurring: Optional[bool] = None,
    ) -> None:
        self.user_id = user_id
        self.finances = FinanceService(
            session,
            user_id,
            amounts=amounts,
            retroactive_recurring=retroactive_recurring,
        )

    def summary(self, home_id: int, ref: MonthRef) -> BalanceSummary:
        entries = self.finances.load_entries(home_id, FinanceFilters(month=ref))
        return summarize_month(
            entries,
            self.user_id,
            ref.year,
            ref.month,
            retroactive_recurring=self.finances.retroactive_recurring,
        )

    def series(self, home_id: int, start: MonthRef, end: MonthRef) -> list[BalanceSummary]:
        entries = self.finances.load_entries(home_id)
        return summarize_range(
            entries,
            self.user_id,
            start,
            end,
            retroactive_recurring=self.finances.retroactive_recurring,
        )


class AmountMigrationService:
    def __init__(self, session: Session, amounts: Optional[AmountStore] = None) -> None:
        self.session = session
        self.amounts = amounts or get_amount_store()

    def reencode_all(self, home_id: Optional[int] = None) -> int:
        count = 0
        skipped = 0
        stmt = select(Finance).order_by(Finance.id)
        if home_id is not None:
            stmt = stmt.where(Finance.home_id == home_id)
        rows = self.session.scalars(stmt).all()
        for finance in rows:
            if self.amounts.is_current(finance.amount_encoded):
                continue
            try:
                amount = self.amounts.decode(finance.amount_encoded)
                encoded = self.amounts.encode(amount)
            except (ValueError, ArithmeticError) as exc:
                skipped += 1
                logger.warning(
                    f"amount_reencode_skipped: finance_id={finance.id} error={exc}"
                )
                continue
            finance.amount_encoded = encoded
            count += 1
        self.session.commit()
        logger.info(
            f"amount_reencode: home_id={home_id} scheme={self.amounts.scheme} "
            f"reencoded={count} skipped={skipped}"
        )
        return count
