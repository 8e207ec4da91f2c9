import threading
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import (
    JSON, Column, Date, DateTime, Integer, Numeric, String, create_engine, select, update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from .errors import DuplicateDistributionAttempt, StaleRecordError
from .models import PendingDistribution, Receipt, ReceiptStatus, UserBalance, utcnow


class Storage(Protocol):
    def insert_receipt(self, receipt: Receipt) -> tuple[Receipt, bool]: ...
    def get_receipt(self, receipt_id: str) -> Optional[Receipt]: ...
    def list_receipts(self, status: Optional[ReceiptStatus] = None) -> list[Receipt]: ...
    def update_receipt(self, receipt: Receipt, expected_version: int) -> Receipt: ...
    def insert_distribution(self, distribution: PendingDistribution) -> PendingDistribution: ...
    def get_distribution(self, receipt_id: str) -> Optional[PendingDistribution]: ...
    def list_distributions(self) -> list[PendingDistribution]: ...
    def update_distribution(self, distribution: PendingDistribution, expected_version: int) -> PendingDistribution: ...
    def credit_balance(self, user_id: str, receipt_id: str, amount: Decimal) -> bool: ...
    def get_balance(self, user_id: str) -> UserBalance: ...
    def set_streak(self, user_id: str, streak: int, last_activity_date: Optional[date] = None) -> UserBalance: ...


class InMemoryStorage:
    def __init__(self):
        self.receipts: dict[str, Receipt] = {}
        self.distributions: dict[str, PendingDistribution] = {}
        self.balances: dict[str, UserBalance] = {}
        self.credited: set[str] = set()
        self._lock = threading.RLock()

    def insert_receipt(self, receipt: Receipt) -> tuple[Receipt, bool]:
        with self._lock:
            existing = self.receipts.get(receipt.receipt_id)
            if existing:
                return existing.model_copy(deep=True), False
            self.receipts[receipt.receipt_id] = receipt.model_copy(deep=True)
            return receipt, True

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        receipt = self.receipts.get(receipt_id)
        return receipt.model_copy(deep=True) if receipt else None

    def list_receipts(self, status: Optional[ReceiptStatus] = None) -> list[Receipt]:
        with self._lock:
            receipts = [r.model_copy(deep=True) for r in self.receipts.values()]
        if status:
            receipts = [r for r in receipts if r.status == status]
        receipts.sort(key=lambda r: r.created_at)
        return receipts

    def update_receipt(self, receipt: Receipt, expected_version: int) -> Receipt:
        with self._lock:
            current = self.receipts.get(receipt.receipt_id)
            if current is None or current.version != expected_version:
                raise StaleRecordError(f"Receipt {receipt.receipt_id} changed concurrently")
            stored = receipt.model_copy(deep=True, update={"version": expected_version + 1})
            self.receipts[receipt.receipt_id] = stored
            return stored.model_copy(deep=True)

    def insert_distribution(self, distribution: PendingDistribution) -> PendingDistribution:
        with self._lock:
            if distribution.receipt_id in self.distributions:
                raise DuplicateDistributionAttempt(distribution.receipt_id)
            self.distributions[distribution.receipt_id] = distribution.model_copy(deep=True)
            return distribution

    def get_distribution(self, receipt_id: str) -> Optional[PendingDistribution]:
        distribution = self.distributions.get(receipt_id)
        return distribution.model_copy(deep=True) if distribution else None

    def list_distributions(self) -> list[PendingDistribution]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self.distributions.values()]

    def update_distribution(self, distribution: PendingDistribution, expected_version: int) -> PendingDistribution:
        with self._lock:
            current = self.distributions.get(distribution.receipt_id)
            if current is None or current.version != expected_version:
                raise StaleRecordError(f"Distribution {distribution.receipt_id} changed concurrently")
            stored = distribution.model_copy(deep=True, update={"version": expected_version + 1})
            self.distributions[distribution.receipt_id] = stored
            return stored.model_copy(deep=True)

    def credit_balance(self, user_id: str, receipt_id: str, amount: Decimal) -> bool:
        with self._lock:
            if receipt_id in self.credited:
                return False
            balance = self.balances.setdefault(user_id, UserBalance(user_id=user_id))
            balance.balance += amount
            balance.credited_receipts += 1
            balance.last_credited_at = utcnow()
            self.credited.add(receipt_id)
            return True

    def get_balance(self, user_id: str) -> UserBalance:
        balance = self.balances.get(user_id)
        return balance.model_copy() if balance else UserBalance(user_id=user_id)

    def set_streak(self, user_id: str, streak: int, last_activity_date: Optional[date] = None) -> UserBalance:
        with self._lock:
            balance = self.balances.setdefault(user_id, UserBalance(user_id=user_id))
            balance.streak = streak
            if last_activity_date is not None:
                balance.last_activity_date = last_activity_date
            return balance.model_copy()


Base = declarative_base()


class ReceiptRow(Base):
    __tablename__ = "receipts"

    receipt_id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DistributionRow(Base):
    __tablename__ = "pending_distributions"

    # One row per receipt, ever: the primary key is the idempotency key.
    receipt_id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserBalanceRow(Base):
    __tablename__ = "user_balances"

    user_id = Column(String, primary_key=True)
    balance = Column(Numeric(24, 2), nullable=False, default=0)
    streak = Column(Integer, nullable=False, default=0)
    credited_receipts = Column(Integer, nullable=False, default=0)
    last_credited_at = Column(DateTime(timezone=True), nullable=True)
    last_activity_date = Column(Date, nullable=True)


class BalanceCreditRow(Base):
    __tablename__ = "balance_credits"

    receipt_id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(24, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SqlStorage:
    def __init__(self, database_url: str):
        if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
            engine = create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            engine = create_engine(database_url)
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        Base.metadata.create_all(bind=engine)

    def insert_receipt(self, receipt: Receipt) -> tuple[Receipt, bool]:
        with self.SessionLocal() as db:
            db.add(ReceiptRow(
                receipt_id=receipt.receipt_id, user_id=receipt.user_id, status=receipt.status.value,
                version=receipt.version, payload=receipt.model_dump(mode="json"),
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self.get_receipt(receipt.receipt_id), False
        return receipt, True

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        with self.SessionLocal() as db:
            row = db.get(ReceiptRow, receipt_id)
            return self._receipt(row) if row else None

    def list_receipts(self, status: Optional[ReceiptStatus] = None) -> list[Receipt]:
        with self.SessionLocal() as db:
            query = select(ReceiptRow).order_by(ReceiptRow.created_at)
            if status:
                query = query.where(ReceiptRow.status == status.value)
            return [self._receipt(row) for row in db.scalars(query)]

    def update_receipt(self, receipt: Receipt, expected_version: int) -> Receipt:
        stored = receipt.model_copy(update={"version": expected_version + 1})
        with self.SessionLocal() as db:
            result = db.execute(
                update(ReceiptRow)
                .where(ReceiptRow.receipt_id == receipt.receipt_id, ReceiptRow.version == expected_version)
                .values(status=stored.status.value, version=stored.version, payload=stored.model_dump(mode="json"))
            )
            if result.rowcount != 1:
                db.rollback()
                raise StaleRecordError(f"Receipt {receipt.receipt_id} changed concurrently")
            db.commit()
        return stored

    def insert_distribution(self, distribution: PendingDistribution) -> PendingDistribution:
        with self.SessionLocal() as db:
            db.add(DistributionRow(
                receipt_id=distribution.receipt_id, user_id=distribution.user_id,
                version=distribution.version, payload=distribution.model_dump(mode="json"),
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateDistributionAttempt(distribution.receipt_id)
        return distribution

    def get_distribution(self, receipt_id: str) -> Optional[PendingDistribution]:
        with self.SessionLocal() as db:
            row = db.get(DistributionRow, receipt_id)
            return self._distribution(row) if row else None

    def list_distributions(self) -> list[PendingDistribution]:
        with self.SessionLocal() as db:
            rows = db.scalars(select(DistributionRow).order_by(DistributionRow.created_at))
            return [self._distribution(row) for row in rows]

    def update_distribution(self, distribution: PendingDistribution, expected_version: int) -> PendingDistribution:
        stored = distribution.model_copy(update={"version": expected_version + 1})
        with self.SessionLocal() as db:
            result = db.execute(
                update(DistributionRow)
                .where(DistributionRow.receipt_id == distribution.receipt_id,
                       DistributionRow.version == expected_version)
                .values(version=stored.version, payload=stored.model_dump(mode="json"))
            )
            if result.rowcount != 1:
                db.rollback()
                raise StaleRecordError(f"Distribution {distribution.receipt_id} changed concurrently")
            db.commit()
        return stored

    def credit_balance(self, user_id: str, receipt_id: str, amount: Decimal) -> bool:
        self._ensure_balance_row(user_id)
        with self.SessionLocal() as db:
            db.add(BalanceCreditRow(receipt_id=receipt_id, user_id=user_id, amount=amount))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                return False
            db.execute(
                update(UserBalanceRow)
                .where(UserBalanceRow.user_id == user_id)
                .values(
                    balance=UserBalanceRow.balance + amount,
                    credited_receipts=UserBalanceRow.credited_receipts + 1,
                    last_credited_at=utcnow(),
                )
            )
            db.commit()
        return True

    def get_balance(self, user_id: str) -> UserBalance:
        with self.SessionLocal() as db:
            row = db.get(UserBalanceRow, user_id)
            if row is None:
                return UserBalance(user_id=user_id)
            return UserBalance(
                user_id=row.user_id, balance=Decimal(row.balance), streak=row.streak,
                credited_receipts=row.credited_receipts, last_credited_at=row.last_credited_at,
                last_activity_date=row.last_activity_date,
            )

    def set_streak(self, user_id: str, streak: int, last_activity_date: Optional[date] = None) -> UserBalance:
        self._ensure_balance_row(user_id)
        values = {"streak": streak}
        if last_activity_date is not None:
            values["last_activity_date"] = last_activity_date
        with self.SessionLocal() as db:
            db.execute(update(UserBalanceRow).where(UserBalanceRow.user_id == user_id).values(**values))
            db.commit()
        return self.get_balance(user_id)

    def _ensure_balance_row(self, user_id: str) -> None:
        with self.SessionLocal() as db:
            if db.get(UserBalanceRow, user_id) is not None:
                return
            db.add(UserBalanceRow(user_id=user_id, balance=Decimal("0"), streak=0, credited_receipts=0))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()

    @staticmethod
    def _receipt(row: ReceiptRow) -> Receipt:
        return Receipt.model_validate({**row.payload, "version": row.version})

    @staticmethod
    def _distribution(row: DistributionRow) -> PendingDistribution:
        return PendingDistribution.model_validate({**row.payload, "version": row.version})
