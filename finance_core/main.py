from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from finance_core.aggregation_engine import summarize
from finance_core.drafts import TransactionPayload
from finance_core.logging_setup import configure_logging, get_logger
from finance_core.money import InvalidAmount, parse_major, to_major
from finance_core.records import InvestmentRecord, TransactionRecord, index_by_id
from finance_core.reconciliation import ReconciliationService
from finance_core.recurring_projection import (
    ProjectedOccurrence,
    find_occurrence,
    parent_id_from_virtual,
    project_upcoming,
)
from finance_core.settings import (
    get_database_url,
    get_frontend_origin,
    get_system_default_currency,
)
from finance_core.store import (
    AutoAddParser,
    RecordNotFound,
    SqlTransactionStore,
    StoreError,
    StoreRejected,
    metadata,
)
from finance_core.transaction_filters import (
    ALL,
    DatePreset,
    FilterCriteria,
    filter_occurrences,
    filter_records,
    sort_records,
)

logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_frontend_origin()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = get_database_url()
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)

# Free-text parser for /transactions/auto-add; installed by the host application.
app.state.auto_add_parser = None


@app.on_event("startup")
def init_db() -> None:
    configure_logging()
    metadata.create_all(engine)


class AccountPayload(BaseModel):
    name: str


class AccountResponse(BaseModel):
    id: str
    name: str


class CategoryPayload(BaseModel):
    name: str
    kind: str | None = None


class CategoryResponse(BaseModel):
    id: str
    name: str
    kind: str | None = None


class TransactionUpdatePayload(BaseModel):
    account_id: str | None = None
    category_id: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    date: datetime | None = None
    next_date: datetime | None = None
    description: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    asset_symbol: str | None = None
    units: Decimal | None = None


class AutoAddPayload(BaseModel):
    text: str
    account_id: str
    kind: str = "expense"


class TransactionResponse(BaseModel):
    id: str
    kind: str
    account_id: str
    category_id: str | None = None
    amount_minor: int
    amount: str
    currency: str
    date: datetime
    next_date: datetime | None = None
    description: str = ""
    notes: str = ""
    tags: list[str] = []
    asset_symbol: str | None = None
    units: Decimal | None = None


class UpcomingResponse(TransactionResponse):
    source: str
    parent_id: str | None = None


class ReconciliationResponse(BaseModel):
    status: str
    transaction: TransactionResponse | None = None


class MoneyResponse(BaseModel):
    amount_minor: int
    amount: str


class CurrencyTotalResponse(MoneyResponse):
    currency: str
    count: int


class KpiResponse(BaseModel):
    currency: str
    last_month: MoneyResponse
    this_month: MoneyResponse
    yearly_average: MoneyResponse


class CategoryShareResponse(MoneyResponse):
    category_id: str | None = None
    name: str
    percent: int


class DailyPointResponse(MoneyResponse):
    day: date


class DailySeriesResponse(BaseModel):
    points: list[DailyPointResponse]
    max: MoneyResponse


class SummaryResponse(BaseModel):
    currency: str
    mixed_currency: bool
    totals: list[CurrencyTotalResponse]
    kpis: KpiResponse
    categories: list[CategoryShareResponse]
    series: DailySeriesResponse


def get_engine() -> Engine:
    return engine


def get_auto_add_parser() -> AutoAddParser | None:
    return app.state.auto_add_parser


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def get_store(
    user_id: int = Depends(get_user_id),
    db_engine: Engine = Depends(get_engine),
    auto_add_parser: AutoAddParser | None = Depends(get_auto_add_parser),
) -> SqlTransactionStore:
    return SqlTransactionStore(db_engine, user_id, auto_add_parser=auto_add_parser)


def get_filter_criteria(
    q: str = Query(""),
    account_id: str = Query(ALL),
    category_id: str = Query(ALL),
    currency: str = Query(ALL),
    date_preset: DatePreset = Query(DatePreset.ALL),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    min_amount: str | None = Query(None),
    max_amount: str | None = Query(None),
) -> FilterCriteria:
    try:
        min_major = parse_major(min_amount) if min_amount else None
        max_major = parse_major(max_amount) if max_amount else None
    except InvalidAmount as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return FilterCriteria(
        search_text=q,
        account_id=account_id,
        category_id=category_id,
        currency=currency.strip().upper() if currency != ALL else ALL,
        date_preset=date_preset,
        start_date=start_date,
        end_date=end_date,
        min_amount_major=min_major,
        max_amount_major=max_major,
    )


def resolve_today(today: date | None) -> date:
    return today or datetime.now(timezone.utc).date()


def store_http_error(exc: StoreError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StoreRejected):
        return HTTPException(status_code=409, detail=str(exc))
    logger.warning("store unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Transactions are unavailable right now. Please try again.")


def transaction_response(record: TransactionRecord) -> TransactionResponse:
    investment = record if isinstance(record, InvestmentRecord) else None
    return TransactionResponse(
        id=record.id,
        kind=record.kind,
        account_id=record.account_id,
        category_id=record.category_id,
        amount_minor=record.amount_minor,
        amount=to_major(record.amount_minor, record.currency),
        currency=record.currency,
        date=record.date,
        next_date=record.next_date,
        description=record.description,
        notes=record.notes,
        tags=list(record.tags),
        asset_symbol=investment.asset_symbol if investment else None,
        units=investment.units if investment else None,
    )


def upcoming_response(occurrence: ProjectedOccurrence) -> UpcomingResponse:
    return UpcomingResponse(
        **transaction_response(occurrence.record).model_dump(),
        source=occurrence.source,
        parent_id=occurrence.parent_id,
    )


def money_response(amount_minor: int, currency: str) -> MoneyResponse:
    return MoneyResponse(amount_minor=amount_minor, amount=to_major(amount_minor, currency))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(store: SqlTransactionStore = Depends(get_store)) -> list[AccountResponse]:
    try:
        found = await store.list_accounts()
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return [AccountResponse(id=account.id, name=account.name) for account in found]


@app.post("/accounts", response_model=AccountResponse)
async def create_account(
    payload: AccountPayload, store: SqlTransactionStore = Depends(get_store)
) -> AccountResponse:
    try:
        account = await store.create_account(payload.name)
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return AccountResponse(id=account.id, name=account.name)


@app.get("/categories", response_model=list[CategoryResponse])
async def list_categories(
    kind: str | None = None, store: SqlTransactionStore = Depends(get_store)
) -> list[CategoryResponse]:
    try:
        found = await store.list_categories()
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return [
        CategoryResponse(id=category.id, name=category.name, kind=category.kind)
        for category in found
        if kind is None or category.kind == kind.strip().lower()
    ]


@app.post("/categories", response_model=CategoryResponse)
async def create_category(
    payload: CategoryPayload, store: SqlTransactionStore = Depends(get_store)
) -> CategoryResponse:
    try:
        category = await store.create_category(payload.name, payload.kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return CategoryResponse(id=category.id, name=category.name, kind=category.kind)


@app.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    kind: str | None = None,
    sort: str = "date_desc",
    today: date | None = Query(None),
    criteria: FilterCriteria = Depends(get_filter_criteria),
    store: SqlTransactionStore = Depends(get_store),
) -> list[TransactionResponse]:
    try:
        records = await store.list_transactions(kind)
        categories = index_by_id(await store.list_categories())
        accounts = index_by_id(await store.list_accounts())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    try:
        rows = filter_records(records, criteria, resolve_today(today), categories, accounts)
        rows = sort_records(rows, sort)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [transaction_response(record) for record in rows]


@app.post("/transactions", response_model=TransactionResponse)
async def create_transaction(
    payload: TransactionPayload, store: SqlTransactionStore = Depends(get_store)
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
        record = await store.create_transaction(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return transaction_response(record)


@app.post("/transactions/auto-add", response_model=list[TransactionResponse])
async def auto_add_transactions(
    payload: AutoAddPayload, store: SqlTransactionStore = Depends(get_store)
) -> list[TransactionResponse]:
    try:
        created = await store.auto_add(payload.text, payload.account_id, payload.kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return [transaction_response(record) for record in created]


@app.get("/transactions/upcoming", response_model=list[UpcomingResponse])
async def upcoming_transactions(
    kind: str | None = None,
    today: date | None = Query(None),
    criteria: FilterCriteria = Depends(get_filter_criteria),
    store: SqlTransactionStore = Depends(get_store),
) -> list[UpcomingResponse]:
    current_day = resolve_today(today)
    try:
        records = await store.list_transactions(kind)
        categories = index_by_id(await store.list_categories())
        accounts = index_by_id(await store.list_accounts())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    try:
        occurrences = project_upcoming(records, current_day, kind)
        occurrences = filter_occurrences(occurrences, criteria, current_day, categories, accounts)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [upcoming_response(occurrence) for occurrence in occurrences]


@app.get("/transactions/summary", response_model=SummaryResponse)
async def transaction_summary(
    kind: str = Query(...),
    today: date | None = Query(None),
    criteria: FilterCriteria = Depends(get_filter_criteria),
    store: SqlTransactionStore = Depends(get_store),
) -> SummaryResponse:
    current_day = resolve_today(today)
    try:
        records = await store.list_transactions(kind)
        categories = index_by_id(await store.list_categories())
        accounts = index_by_id(await store.list_accounts())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    try:
        rows = filter_records(records, criteria, current_day, categories, accounts)
        summary = summarize(
            rows,
            current_day,
            pinned_currency=criteria.currency,
            categories=categories,
            default_currency=get_system_default_currency(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    currency = summary.currency
    return SummaryResponse(
        currency=currency,
        mixed_currency=summary.mixed_currency,
        totals=[
            CurrencyTotalResponse(
                currency=total.currency,
                count=total.count,
                **money_response(total.amount_minor, total.currency).model_dump(),
            )
            for total in summary.totals
        ],
        kpis=KpiResponse(
            currency=currency,
            last_month=money_response(summary.kpis.last_month, currency),
            this_month=money_response(summary.kpis.this_month, currency),
            yearly_average=money_response(summary.kpis.yearly_average, currency),
        ),
        categories=[
            CategoryShareResponse(
                category_id=share.category_id,
                name=share.name,
                percent=share.percent,
                **money_response(share.amount_minor, currency).model_dump(),
            )
            for share in summary.categories
        ],
        series=DailySeriesResponse(
            points=[
                DailyPointResponse(
                    day=point.day,
                    **money_response(point.amount_minor, currency).model_dump(),
                )
                for point in summary.series.points
            ],
            max=money_response(summary.series.max_minor, currency),
        ),
    )


@app.post(
    "/transactions/upcoming/{occurrence_id}/promote",
    response_model=ReconciliationResponse,
)
async def promote_upcoming(
    occurrence_id: str,
    today: date | None = Query(None),
    store: SqlTransactionStore = Depends(get_store),
) -> ReconciliationResponse:
    occurrence = await _load_occurrence(store, occurrence_id, resolve_today(today))
    if occurrence is None:
        return ReconciliationResponse(status="stale")
    if not occurrence.is_virtual:
        raise HTTPException(status_code=400, detail="Only planned occurrences can be added.")
    try:
        created = await ReconciliationService(store).promote(occurrence)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc
    if created is None:
        return ReconciliationResponse(status="stale")
    return ReconciliationResponse(status="promoted", transaction=transaction_response(created))


@app.post(
    "/transactions/upcoming/{occurrence_id}/dismiss",
    response_model=ReconciliationResponse,
)
async def dismiss_upcoming(
    occurrence_id: str,
    today: date | None = Query(None),
    store: SqlTransactionStore = Depends(get_store),
) -> ReconciliationResponse:
    occurrence = await _load_occurrence(store, occurrence_id, resolve_today(today))
    if occurrence is None:
        return ReconciliationResponse(status="stale")
    try:
        await ReconciliationService(store).dismiss(occurrence)
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return ReconciliationResponse(status="dismissed")


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: str,
    payload: TransactionUpdatePayload,
    store: SqlTransactionStore = Depends(get_store),
) -> TransactionResponse:
    changes = payload.model_dump(exclude_unset=True)
    try:
        record = await store.update_transaction(transaction_id, changes)
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return transaction_response(record)


@app.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str, store: SqlTransactionStore = Depends(get_store)
) -> dict:
    try:
        await store.delete_transaction(transaction_id)
    except StoreError as exc:
        raise store_http_error(exc) from exc
    return {"status": "deleted"}


async def _load_occurrence(
    store: SqlTransactionStore, occurrence_id: str, today: date
) -> ProjectedOccurrence | None:
    """Find ``occurrence_id`` in the current projection.

    A virtual id that no longer projects yields ``None`` (already handled
    elsewhere); an unknown real id is a 404.
    """
    try:
        records = await store.list_transactions()
    except StoreError as exc:
        raise store_http_error(exc) from exc
    occurrence = find_occurrence(project_upcoming(records, today), occurrence_id)
    if occurrence is None and parent_id_from_virtual(occurrence_id) is None:
        raise HTTPException(status_code=404, detail="Upcoming transaction not found.")
    return occurrence
