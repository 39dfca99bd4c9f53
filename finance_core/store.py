from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finance_core.drafts import Suggestion, TransactionDraft, TransactionPayload, build_payload, merge_suggestion
from finance_core.logging_setup import get_logger
from finance_core.money import normalize_currency
from finance_core.records import Account, Category, TransactionRecord, make_record, normalize_kind
from finance_core.settings import get_system_default_currency

logger = get_logger(__name__)

UPDATABLE_FIELDS = {
    "account_id",
    "category_id",
    "amount_minor",
    "currency",
    "date",
    "next_date",
    "description",
    "notes",
    "tags",
    "asset_symbol",
    "units",
}

AutoAddParser = Callable[[str], Iterable[Suggestion]]


class StoreError(RuntimeError):
    """Base class for failures reported by a transaction store."""


class StoreUnavailable(StoreError):
    """Raised when the store cannot be reached or fails internally."""


class StoreRejected(StoreError):
    """Raised when the store refuses a request."""


class RecordNotFound(StoreRejected):
    """Raised when a referenced transaction, account or category does not exist."""


class TransactionStore(Protocol):
    async def list_transactions(self, kind: str | None = None) -> List[TransactionRecord]: ...

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None: ...

    async def create_transaction(self, payload: TransactionPayload) -> TransactionRecord: ...

    async def update_transaction(
        self, transaction_id: str, changes: Mapping[str, Any]
    ) -> TransactionRecord: ...

    async def delete_transaction(self, transaction_id: str) -> None: ...

    async def list_categories(self) -> List[Category]: ...

    async def list_accounts(self) -> List[Account]: ...

    async def auto_add(
        self, text: str, account_id: str, kind: str = "expense"
    ) -> List[TransactionRecord]: ...


metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("kind", String(20)),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("kind", String(20), nullable=False),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("date", DateTime, nullable=False, index=True),
    Column("next_date", DateTime, index=True),
    Column("description", String(500), nullable=False, default=""),
    Column("notes", String(1000), nullable=False, default=""),
    Column("tags", JSON, nullable=False),
    Column("asset_symbol", String(50)),
    Column("units", Numeric(18, 8)),
    Column("is_deleted", Boolean, nullable=False, default=False, index=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


class SqlTransactionStore:
    """Reference ``TransactionStore`` backed by SQLAlchemy Core tables.

    Every call opens its own ``engine.begin()`` block, so each write commits
    independently, and runs in a worker thread so the event loop keeps
    serving other requests. Deletes are soft: rows are flagged ``is_deleted``
    and drop out of every listing.
    """

    def __init__(
        self,
        engine: Engine,
        user_id: int,
        auto_add_parser: AutoAddParser | None = None,
    ) -> None:
        self.engine = engine
        self.user_id = user_id
        self.auto_add_parser = auto_add_parser

    async def list_transactions(self, kind: str | None = None) -> List[TransactionRecord]:
        return await asyncio.to_thread(self._list_transactions, kind)

    async def get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        return await asyncio.to_thread(self._get_transaction, transaction_id)

    async def create_transaction(self, payload: TransactionPayload) -> TransactionRecord:
        return await asyncio.to_thread(self._create_transaction, payload)

    async def update_transaction(
        self, transaction_id: str, changes: Mapping[str, Any]
    ) -> TransactionRecord:
        return await asyncio.to_thread(self._update_transaction, transaction_id, dict(changes))

    async def delete_transaction(self, transaction_id: str) -> None:
        await asyncio.to_thread(self._delete_transaction, transaction_id)

    async def list_categories(self) -> List[Category]:
        return await asyncio.to_thread(self._list_categories)

    async def list_accounts(self) -> List[Account]:
        return await asyncio.to_thread(self._list_accounts)

    async def create_account(self, name: str) -> Account:
        return await asyncio.to_thread(self._create_account, name)

    async def create_category(self, name: str, kind: str | None = None) -> Category:
        return await asyncio.to_thread(self._create_category, name, kind)

    def _list_transactions(self, kind: str | None = None) -> List[TransactionRecord]:
        conditions = [transactions.c.user_id == self.user_id, transactions.c.is_deleted.is_(False)]
        if kind is not None:
            conditions.append(transactions.c.kind == normalize_kind(kind))
        stmt = select(transactions).where(*conditions).order_by(
            transactions.c.date.desc(), transactions.c.id.desc()
        )
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_record(row) for row in rows]

    def _get_transaction(self, transaction_id: str) -> TransactionRecord | None:
        row_id = _parse_id(transaction_id)
        if row_id is None:
            return None
        with self._begin() as conn:
            row = self._fetch_row(conn, row_id)
        return _row_to_record(row) if row else None

    def _create_transaction(self, payload: TransactionPayload) -> TransactionRecord:
        payload = TransactionPayload.validate_payload(payload.model_copy())
        values = _payload_values(payload)
        with self._begin() as conn:
            self._check_references(conn, values)
            result = conn.execute(
                insert(transactions).values(user_id=self.user_id, is_deleted=False, **values)
            )
            row = self._fetch_row(conn, result.inserted_primary_key[0])
        if not row:
            raise StoreUnavailable("Failed to create transaction.")
        record = _row_to_record(row)
        logger.info("created %s transaction %s", record.kind, record.id)
        return record

    def _update_transaction(
        self, transaction_id: str, changes: Mapping[str, Any]
    ) -> TransactionRecord:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise StoreRejected(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        row_id = _parse_id(transaction_id)
        if row_id is None:
            raise RecordNotFound("Transaction not found.")
        values = _change_values(changes)
        with self._begin() as conn:
            current = self._fetch_row(conn, row_id)
            if not current:
                raise RecordNotFound("Transaction not found.")
            if current["kind"] != "investment" and (
                values.get("asset_symbol") is not None or values.get("units") is not None
            ):
                raise StoreRejected("Fields only allowed on investments: asset_symbol, units")
            self._check_references(conn, values)
            if values:
                conn.execute(
                    update(transactions).where(transactions.c.id == row_id).values(**values)
                )
            row = self._fetch_row(conn, row_id)
        return _row_to_record(row)

    def _delete_transaction(self, transaction_id: str) -> None:
        row_id = _parse_id(transaction_id)
        if row_id is None:
            raise RecordNotFound("Transaction not found.")
        stmt = (
            update(transactions)
            .where(
                transactions.c.id == row_id,
                transactions.c.user_id == self.user_id,
                transactions.c.is_deleted.is_(False),
            )
            .values(is_deleted=True)
        )
        with self._begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount == 0:
                raise RecordNotFound("Transaction not found.")
        logger.info("deleted transaction %s", transaction_id)

    def _list_categories(self) -> List[Category]:
        stmt = (
            select(categories.c.id, categories.c.name, categories.c.kind)
            .where(categories.c.user_id == self.user_id, categories.c.is_deleted.is_(False))
            .order_by(categories.c.name.asc())
        )
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Category(id=str(row["id"]), name=row["name"], kind=row["kind"]) for row in rows]

    def _list_accounts(self) -> List[Account]:
        stmt = (
            select(accounts.c.id, accounts.c.name)
            .where(accounts.c.user_id == self.user_id, accounts.c.is_deleted.is_(False))
            .order_by(accounts.c.name.asc())
        )
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [Account(id=str(row["id"]), name=row["name"]) for row in rows]

    def _create_account(self, name: str) -> Account:
        name = name.strip()
        if not name:
            raise StoreRejected("Account name required.")
        with self._begin() as conn:
            result = conn.execute(insert(accounts).values(user_id=self.user_id, name=name, is_deleted=False))
        return Account(id=str(result.inserted_primary_key[0]), name=name)

    def _create_category(self, name: str, kind: str | None = None) -> Category:
        name = name.strip()
        if not name:
            raise StoreRejected("Category name required.")
        normalized_kind = normalize_kind(kind) if kind else None
        with self._begin() as conn:
            result = conn.execute(
                insert(categories).values(
                    user_id=self.user_id, name=name, kind=normalized_kind, is_deleted=False
                )
            )
        return Category(id=str(result.inserted_primary_key[0]), name=name, kind=normalized_kind)

    async def auto_add(
        self, text: str, account_id: str, kind: str = "expense"
    ) -> List[TransactionRecord]:
        if self.auto_add_parser is None:
            raise StoreUnavailable("Auto-add parser is not configured.")
        text = text.strip()
        if not text:
            return []
        try:
            suggestions = await asyncio.to_thread(lambda: list(self.auto_add_parser(text)))
        except Exception as exc:
            raise StoreUnavailable("Auto-add parser failed.") from exc

        base = TransactionDraft(
            kind=kind, account_id=account_id, currency=get_system_default_currency()
        )
        payloads = [
            build_payload(
                merge_suggestion(base, suggestion),
                today=datetime.now(timezone.utc).date(),
                require_category=False,
            )
            for suggestion in suggestions
        ]
        created = []
        for payload in payloads:
            created.append(await self.create_transaction(payload))
        return created

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise StoreRejected("Transaction store rejected the change.") from exc
        except SQLAlchemyError as exc:
            logger.warning("store call failed: %s", exc)
            raise StoreUnavailable("Transaction store unavailable.") from exc

    def _fetch_row(self, conn: Connection, row_id: int):
        return (
            conn.execute(
                select(transactions).where(
                    transactions.c.id == row_id,
                    transactions.c.user_id == self.user_id,
                    transactions.c.is_deleted.is_(False),
                )
            )
            .mappings()
            .first()
        )

    def _check_references(self, conn: Connection, values: Mapping[str, Any]) -> None:
        if "account_id" in values:
            exists = conn.execute(
                select(accounts.c.id).where(
                    accounts.c.id == values["account_id"],
                    accounts.c.user_id == self.user_id,
                    accounts.c.is_deleted.is_(False),
                )
            ).first()
            if not exists:
                raise RecordNotFound("Account not found.")
        if values.get("category_id") is not None:
            exists = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == values["category_id"],
                    categories.c.user_id == self.user_id,
                    categories.c.is_deleted.is_(False),
                )
            ).first()
            if not exists:
                raise RecordNotFound("Category not found.")


def _parse_id(value: str | int) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _reference_id(value: str | None, label: str) -> int | None:
    if value is None:
        return None
    parsed = _parse_id(value)
    if parsed is None:
        raise RecordNotFound(f"{label} not found.")
    return parsed


def _to_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _payload_values(payload: TransactionPayload) -> dict:
    return {
        "account_id": _reference_id(payload.account_id, "Account"),
        "category_id": _reference_id(payload.category_id, "Category"),
        "kind": payload.kind,
        "amount_minor": payload.amount_minor,
        "currency": payload.currency,
        "date": _to_db_datetime(payload.date),
        "next_date": _to_db_datetime(payload.next_date),
        "description": payload.description,
        "notes": payload.notes,
        "tags": list(payload.tags),
        "asset_symbol": payload.asset_symbol,
        "units": payload.units,
    }


def _change_values(changes: Mapping[str, Any]) -> dict:
    values: dict[str, Any] = {}
    for name, value in changes.items():
        if name == "account_id":
            if value is None:
                raise RecordNotFound("Account not found.")
            values[name] = _reference_id(str(value), "Account")
        elif name == "category_id":
            values[name] = _reference_id(str(value), "Category") if value is not None else None
        elif name in {"date", "next_date"}:
            if value is None and name == "date":
                raise StoreRejected("Date is required.")
            values[name] = _to_db_datetime(_coerce_datetime(value))
        elif name == "currency":
            try:
                values[name] = normalize_currency(value)
            except (AttributeError, ValueError) as exc:
                raise StoreRejected("Currency must be a 3-letter ISO 4217 code.") from exc
        elif name == "amount_minor":
            if isinstance(value, bool) or not isinstance(value, int):
                raise StoreRejected("amount_minor must be an integer.")
            values[name] = value
        elif name == "tags":
            values[name] = [str(tag).strip() for tag in value or [] if str(tag).strip()]
        elif name == "units":
            values[name] = Decimal(str(value)) if value is not None else None
        else:
            values[name] = (value or "").strip() if name in {"description", "notes"} else value
    return values


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise StoreRejected("Dates must be ISO 8601.") from exc


def _row_to_record(row) -> TransactionRecord:
    values = dict(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        category_id=str(row["category_id"]) if row["category_id"] is not None else None,
        amount_minor=int(row["amount_minor"]),
        currency=row["currency"],
        date=_from_db_datetime(row["date"]),
        next_date=_from_db_datetime(row["next_date"]),
        description=row["description"] or "",
        notes=row["notes"] or "",
        tags=tuple(row["tags"] or ()),
    )
    if row["kind"] == "investment":
        values["asset_symbol"] = row["asset_symbol"]
        values["units"] = Decimal(str(row["units"])) if row["units"] is not None else None
    return make_record(row["kind"], **values)
