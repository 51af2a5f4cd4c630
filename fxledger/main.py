import logging
import os
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fxledger.aggregation import AggregationEngine, BreakdownEntry, TrendBucket
from fxledger.csv_parser import ParsedTransaction, parse_transactions_csv
from fxledger.currency_conversion import (
    ExchangeRateApiProvider,
    RateCache,
    RateProviderError,
    convert_amount,
    normalize_currency,
)
from fxledger.currency_history import (
    conversion_history,
    conversion_stats,
    currency_exposure,
    currency_pairs,
    exchange_rate_series,
)
from fxledger.models import MigrationResult, TransactionInput, TransactionRecord, TransactionUpdate
from fxledger.normalizer import FromLegacyAmount, FromResolvedQuadruple
from fxledger.repositories import CategoryResolver, PersistenceError
from fxledger.schema import build_engine, init_db
from fxledger.store import TransactionNotFound, TransactionStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./fxledger.db")
engine = build_engine(database_url)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
RATE_CACHE = RateCache(
    provider=ExchangeRateApiProvider(
        base_url=os.getenv("RATE_PROVIDER_URL", "https://api.exchangerate-api.com/v4/latest"),
        timeout_seconds=float(os.getenv("RATE_PROVIDER_TIMEOUT_SECONDS", "8")),
    ),
    ttl_seconds=float(os.getenv("RATE_CACHE_TTL_SECONDS", "3600")),
)
store = TransactionStore(
    engine,
    RATE_CACHE.get_exchange_rate,
    system_default_currency=SYSTEM_DEFAULT_CURRENCY,
)
aggregation = AggregationEngine(RATE_CACHE.get_exchange_rate)


@app.on_event("startup")
def startup() -> None:
    init_db(engine)
    seeded = CategoryResolver(engine).ensure_global_defaults()
    logger.info(
        "Database initialized",
        extra={"seeded_categories": seeded, "action": "startup", "component": "main"},
    )


@app.exception_handler(TransactionNotFound)
async def handle_not_found(request: Request, exc: TransactionNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RateProviderError)
async def handle_rate_provider_error(request: Request, exc: RateProviderError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Exchange rate service unavailable."})


@app.exception_handler(PersistenceError)
async def handle_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class UserSettingsPayload(BaseModel):
    default_currency: str | None = None
    reconvert: bool = False


class MigrationResultResponse(BaseModel):
    success: bool
    migrated_count: int
    error_count: int
    errors: list[str]


class UserSettingsResponse(BaseModel):
    id: str
    default_currency: str
    reconversion: MigrationResultResponse | None = None


class TransactionPayload(BaseModel):
    amount: Decimal
    currency: str | None = None
    description: str = ""
    vendor: str | None = None
    category: str | None = None
    type: str | None = None
    transaction_date: date | None = None
    converted_amount: Decimal | None = None
    converted_currency: str | None = None
    conversion_rate: Decimal | None = None
    conversion_fee: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.amount < 0:
            raise ValueError("Amount must not be negative.")
        if payload.converted_amount is not None and payload.converted_amount < 0:
            raise ValueError("Converted amount must not be negative.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.description = payload.description.strip()
        payload.vendor = payload.vendor.strip() if payload.vendor else None
        payload.category = payload.category.strip() if payload.category else None
        return payload

    def to_input(self) -> TransactionInput:
        if self.converted_amount is not None:
            amount = FromResolvedQuadruple(
                original_amount=self.amount,
                original_currency=self.currency,
                converted_amount=self.converted_amount,
                converted_currency=self.converted_currency,
                conversion_rate=self.conversion_rate,
                conversion_fee=self.conversion_fee,
            )
        else:
            amount = FromLegacyAmount(amount=self.amount, currency=self.currency)
        return TransactionInput(
            amount=amount,
            description=self.description,
            vendor=self.vendor,
            category=self.category,
            type=self.type,
            transaction_date=self.transaction_date,
        )


class TransactionUpdatePayload(BaseModel):
    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    vendor: str | None = None
    category: str | None = None
    type: str | None = None
    transaction_date: date | None = None

    def to_update(self) -> TransactionUpdate:
        if self.amount is not None and self.amount < 0:
            raise ValueError("Amount must not be negative.")
        return TransactionUpdate(
            amount=self.amount,
            currency=normalize_currency(self.currency) if self.currency else None,
            description=self.description,
            vendor=self.vendor,
            category=self.category,
            type=self.type,
            transaction_date=self.transaction_date,
        )


class TransactionResponse(BaseModel):
    id: str
    type: str
    transaction_date: date
    description: str | None = None
    vendor: str | None = None
    category: str | None = None
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    converted_currency: str
    conversion_rate: Decimal
    conversion_fee: Decimal
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CategoryTotalResponse(BaseModel):
    category: str
    amount: Decimal
    count: int


class TransactionStatsResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    transaction_count: int
    average_transaction: Decimal
    default_currency: str
    top_categories: list[CategoryTotalResponse]


class BreakdownResponse(BaseModel):
    name: str
    total: Decimal
    count: int
    average: Decimal
    percentage_of_total: Decimal


class TrendBucketResponse(BaseModel):
    bucket_start: date
    bucket_end: date
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    transaction_count: int


class TrendsResponse(BaseModel):
    resolution: str
    currency: str
    trend: str
    buckets: list[TrendBucketResponse]


class PeriodComparisonResponse(BaseModel):
    period1_total: Decimal
    period2_total: Decimal
    period1_count: int
    period2_count: int
    change_amount: Decimal
    change_percentage: Decimal
    trend: str
    currency: str | None = None


class FinancialHealthResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_amount: Decimal
    savings_rate: Decimal
    unique_categories: int
    unique_vendors: int
    category_concentration: Decimal
    vendor_concentration: Decimal
    top_category: BreakdownResponse | None = None
    top_vendor: BreakdownResponse | None = None
    score: Decimal
    currency: str | None = None


class BudgetPayload(BaseModel):
    limits: dict[str, Decimal]
    start_date: date | None = None
    end_date: date | None = None


class BudgetLineResponse(BaseModel):
    category: str
    spent: Decimal
    budget: Decimal | None = None
    remaining: Decimal | None = None
    over_budget: bool
    percentage_used: Decimal | None = None


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal


class ConvertResponse(ExchangeRateResponse):
    amount: Decimal
    converted_amount: Decimal


class CurrenciesResponse(BaseModel):
    base_currency: str
    currencies: list[str]


class ConversionEntryResponse(BaseModel):
    transaction_id: str
    transaction_date: date
    from_currency: str
    to_currency: str
    rate: Decimal
    amount: Decimal
    converted_amount: Decimal


class PairActivityResponse(BaseModel):
    pair: str
    count: int


class ConversionStatsResponse(BaseModel):
    total_conversions: int
    total_volume: Decimal
    average_rate: Decimal
    best_rate: Decimal
    worst_rate: Decimal
    most_active_pair: PairActivityResponse | None = None


class ExposureResponse(BaseModel):
    currency: str
    amount: Decimal


class RatePointResponse(BaseModel):
    day: date
    rate: Decimal
    volume: Decimal


class CurrencyHistoryResponse(BaseModel):
    history: list[ConversionEntryResponse]
    pairs: list[str]
    stats: ConversionStatsResponse
    exposure: list[ExposureResponse]
    series: list[RatePointResponse]


class MigrationStatusResponse(BaseModel):
    needs_migration: bool
    total_transactions: int
    migrated_transactions: int
    legacy_transactions: int


class TransactionImportPreviewResponse(BaseModel):
    transactions: list[ParsedTransaction]
    total_count: int
    skipped_count: int


class TransactionImportRow(BaseModel):
    date: date
    description: str
    amount: Decimal
    type: str
    currency: str | None = None
    vendor: str | None = None
    category: str | None = None


class TransactionImportCommitPayload(BaseModel):
    transactions: list[TransactionImportRow]


class TransactionImportCommitResponse(BaseModel):
    inserted_count: int
    conversion_failures: int


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def to_transaction_response(record: TransactionRecord) -> TransactionResponse:
    return TransactionResponse(
        id=record.id,
        type=record.type,
        transaction_date=record.transaction_date,
        description=record.description,
        vendor=record.vendor,
        category=record.category,
        original_amount=record.original_amount,
        original_currency=record.original_currency,
        converted_amount=record.converted_amount,
        converted_currency=record.converted_currency,
        conversion_rate=record.conversion_rate,
        conversion_fee=record.conversion_fee,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def to_breakdown_response(entry: BreakdownEntry) -> BreakdownResponse:
    return BreakdownResponse(
        name=entry.name,
        total=entry.total,
        count=entry.count,
        average=entry.average,
        percentage_of_total=entry.percentage_of_total,
    )


def to_bucket_response(bucket: TrendBucket) -> TrendBucketResponse:
    return TrendBucketResponse(
        bucket_start=bucket.bucket_start,
        bucket_end=bucket.bucket_end,
        total_income=bucket.total_income,
        total_expenses=bucket.total_expenses,
        net_amount=bucket.net_amount,
        transaction_count=bucket.transaction_count,
    )


def to_migration_response(result: MigrationResult) -> MigrationResultResponse:
    return MigrationResultResponse(
        success=result.success,
        migrated_count=result.migrated_count,
        error_count=result.error_count,
        errors=result.errors,
    )


def load_period(user_id: str, start_date: date | None, end_date: date | None) -> list[TransactionRecord]:
    try:
        return store.records_for_period(user_id, start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    profile = store.ensure_profile(user_id)
    return UserSettingsResponse(id=profile.id, default_currency=profile.default_currency)


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.default_currency is None:
        raise HTTPException(status_code=400, detail="Default currency required.")
    try:
        result = store.change_default_currency(user_id, payload.default_currency, reconvert=payload.reconvert)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    profile = store.ensure_profile(user_id)
    return UserSettingsResponse(
        id=profile.id,
        default_currency=profile.default_currency,
        reconversion=to_migration_response(result) if result else None,
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    if start_date is not None or end_date is not None:
        records = load_period(user_id, start_date, end_date)
    else:
        records = store.list_for_user(user_id, limit=limit, offset=offset)
    return [to_transaction_response(record) for record in records]


@app.get("/transactions/search", response_model=list[TransactionResponse])
def search_transactions(
    q: str = Query(...),
    limit: int = Query(50, ge=1, le=500),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        records = store.search(user_id, q, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [to_transaction_response(record) for record in records]


@app.get("/transactions/stats", response_model=TransactionStatsResponse)
def transaction_stats(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionStatsResponse:
    user_id = get_user_id(x_user_id)
    try:
        stats = store.get_stats(user_id, start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionStatsResponse(
        total_income=stats.total_income,
        total_expenses=stats.total_expenses,
        net_amount=stats.net_amount,
        transaction_count=stats.transaction_count,
        average_transaction=stats.average_transaction,
        default_currency=stats.default_currency,
        top_categories=[
            CategoryTotalResponse(category=item.category, amount=item.amount, count=item.count)
            for item in stats.top_categories
        ],
    )


@app.post("/transactions/import/preview", response_model=TransactionImportPreviewResponse)
async def preview_transaction_import(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionImportPreviewResponse:
    get_user_id(x_user_id)
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc

    try:
        parse_result = parse_transactions_csv(decoded)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return TransactionImportPreviewResponse(
        transactions=parse_result.rows,
        total_count=len(parse_result.rows),
        skipped_count=parse_result.skipped_count,
    )


@app.post("/transactions/import/commit", response_model=TransactionImportCommitResponse)
def commit_transaction_import(
    payload: TransactionImportCommitPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionImportCommitResponse:
    user_id = get_user_id(x_user_id)
    if not payload.transactions:
        raise HTTPException(status_code=400, detail="No transactions to import.")

    inputs: list[TransactionInput] = []
    for index, row in enumerate(payload.transactions, start=1):
        description = row.description.strip()
        if not description:
            raise HTTPException(status_code=400, detail=f"Row {index} is missing a description.")
        if row.amount <= 0:
            raise HTTPException(status_code=400, detail=f"Row {index} must be a positive amount.")
        try:
            currency = normalize_currency(row.currency) if row.currency else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Row {index}: {exc}") from exc
        inputs.append(
            TransactionInput(
                amount=FromLegacyAmount(amount=row.amount, currency=currency),
                description=description,
                vendor=row.vendor,
                category=row.category,
                type=row.type,
                transaction_date=row.date,
            )
        )

    default_currency = store.default_currency(user_id)
    try:
        records = store.create_many(user_id, inputs)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    conversion_failures = sum(1 for record in records if record.converted_currency != default_currency)
    return TransactionImportCommitResponse(inserted_count=len(records), conversion_failures=conversion_failures)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
        record = store.create(user_id, payload.to_input())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return to_transaction_response(record)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    record = store.get(user_id, transaction_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return to_transaction_response(record)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        record = store.update(user_id, transaction_id, payload.to_update())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return to_transaction_response(record)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    if not store.delete(user_id, transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@app.get("/reports/category-breakdown", response_model=list[BreakdownResponse])
def category_breakdown(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    transaction_type: str = Query("expense", alias="type"),
    limit: int | None = Query(None, ge=1),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BreakdownResponse]:
    user_id = get_user_id(x_user_id)
    records = load_period(user_id, start_date, end_date)
    entries = aggregation.category_breakdown(
        records, store.default_currency(user_id), transaction_type=transaction_type, limit=limit
    )
    return [to_breakdown_response(entry) for entry in entries]


@app.get("/reports/vendor-breakdown", response_model=list[BreakdownResponse])
def vendor_breakdown(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    transaction_type: str = Query("expense", alias="type"),
    limit: int | None = Query(None, ge=1),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BreakdownResponse]:
    user_id = get_user_id(x_user_id)
    records = load_period(user_id, start_date, end_date)
    entries = aggregation.vendor_breakdown(
        records, store.default_currency(user_id), transaction_type=transaction_type, limit=limit
    )
    return [to_breakdown_response(entry) for entry in entries]


@app.get("/reports/trends", response_model=TrendsResponse)
def trends(
    resolution: str = Query("monthly"),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TrendsResponse:
    user_id = get_user_id(x_user_id)
    records = load_period(user_id, start_date, end_date)
    currency = store.default_currency(user_id)
    try:
        buckets = aggregation.trends(records, resolution, currency, start=start_date, end=end_date)
        direction = aggregation.spending_trend(records, resolution, currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TrendsResponse(
        resolution=resolution,
        currency=currency,
        trend=direction.trend,
        buckets=[to_bucket_response(bucket) for bucket in buckets],
    )


@app.get("/reports/comparison", response_model=PeriodComparisonResponse)
def period_comparison(
    period1_start: date = Query(...),
    period1_end: date = Query(...),
    period2_start: date = Query(...),
    period2_end: date = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PeriodComparisonResponse:
    user_id = get_user_id(x_user_id)
    try:
        comparison = store.compare_periods(user_id, period1_start, period1_end, period2_start, period2_end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PeriodComparisonResponse(
        period1_total=comparison.period1_total,
        period2_total=comparison.period2_total,
        period1_count=comparison.period1_count,
        period2_count=comparison.period2_count,
        change_amount=comparison.change_amount,
        change_percentage=comparison.change_percentage,
        trend=comparison.trend,
        currency=comparison.currency,
    )


@app.get("/reports/financial-health", response_model=FinancialHealthResponse)
def financial_health(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> FinancialHealthResponse:
    user_id = get_user_id(x_user_id)
    records = load_period(user_id, start_date, end_date)
    health = aggregation.financial_health(records, store.default_currency(user_id))
    return FinancialHealthResponse(
        total_income=health.total_income,
        total_expenses=health.total_expenses,
        net_amount=health.net_amount,
        savings_rate=health.savings_rate,
        unique_categories=health.unique_categories,
        unique_vendors=health.unique_vendors,
        category_concentration=health.category_concentration,
        vendor_concentration=health.vendor_concentration,
        top_category=to_breakdown_response(health.top_category) if health.top_category else None,
        top_vendor=to_breakdown_response(health.top_vendor) if health.top_vendor else None,
        score=health.score,
        currency=health.currency,
    )


@app.post("/reports/budget", response_model=list[BudgetLineResponse])
def budget_report(
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetLineResponse]:
    user_id = get_user_id(x_user_id)
    records = load_period(user_id, payload.start_date, payload.end_date)
    try:
        lines = aggregation.budget(records, payload.limits, store.default_currency(user_id))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        BudgetLineResponse(
            category=line.category,
            spent=line.spent,
            budget=line.budget,
            remaining=line.remaining,
            over_budget=line.over_budget,
            percentage_used=line.percentage_used,
        )
        for line in lines
    ]


@app.get("/currency/rate", response_model=ExchangeRateResponse)
def exchange_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
) -> ExchangeRateResponse:
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        rate = RATE_CACHE.get_exchange_rate(source, target)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExchangeRateResponse(from_currency=source, to_currency=target, rate=rate)


@app.get("/currency/convert", response_model=ConvertResponse)
def convert(
    amount: Decimal = Query(...),
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(..., alias="to"),
) -> ConvertResponse:
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        rate = RATE_CACHE.get_exchange_rate(source, target)
        converted = convert_amount(amount, source, target, RATE_CACHE)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ConvertResponse(
        from_currency=source,
        to_currency=target,
        rate=rate,
        amount=amount,
        converted_amount=converted,
    )


@app.get("/currencies", response_model=CurrenciesResponse)
def list_currencies(base: str = Query(SYSTEM_DEFAULT_CURRENCY)) -> CurrenciesResponse:
    try:
        base_currency = normalize_currency(base)
        currencies = RATE_CACHE.supported_currencies(base_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CurrenciesResponse(base_currency=base_currency, currencies=currencies)


@app.get("/currency/history", response_model=CurrencyHistoryResponse)
def currency_history(
    from_currency: str | None = Query(None, alias="from"),
    to_currency: str | None = Query(None, alias="to"),
    days: int = Query(30, ge=1, le=365),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencyHistoryResponse:
    user_id = get_user_id(x_user_id)
    records = store.list_for_user(user_id, limit=None)
    history = conversion_history(records)
    stats = conversion_stats(history)
    series = []
    if from_currency and to_currency:
        try:
            series = exchange_rate_series(
                history, normalize_currency(from_currency), normalize_currency(to_currency), days
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CurrencyHistoryResponse(
        history=[
            ConversionEntryResponse(
                transaction_id=entry.transaction_id,
                transaction_date=entry.transaction_date,
                from_currency=entry.from_currency,
                to_currency=entry.to_currency,
                rate=entry.rate,
                amount=entry.amount,
                converted_amount=entry.converted_amount,
            )
            for entry in history
        ],
        pairs=[pair.label for pair in currency_pairs(history)],
        stats=ConversionStatsResponse(
            total_conversions=stats.total_conversions,
            total_volume=stats.total_volume,
            average_rate=stats.average_rate,
            best_rate=stats.best_rate,
            worst_rate=stats.worst_rate,
            most_active_pair=(
                PairActivityResponse(pair=stats.most_active_pair.pair.label, count=stats.most_active_pair.count)
                if stats.most_active_pair
                else None
            ),
        ),
        exposure=[ExposureResponse(currency=item.currency, amount=item.amount) for item in currency_exposure(records)],
        series=[RatePointResponse(day=point.day, rate=point.rate, volume=point.volume) for point in series],
    )


@app.get("/migration", response_model=MigrationStatusResponse)
def migration_status(x_user_id: str | None = Header(None, alias="x-user-id")) -> MigrationStatusResponse:
    user_id = get_user_id(x_user_id)
    status = store.migration_status(user_id)
    return MigrationStatusResponse(
        needs_migration=status.needs_migration,
        total_transactions=status.total_transactions,
        migrated_transactions=status.migrated_transactions,
        legacy_transactions=status.legacy_transactions,
    )


@app.post("/migration", response_model=MigrationResultResponse)
def run_migration(x_user_id: str | None = Header(None, alias="x-user-id")) -> MigrationResultResponse:
    user_id = get_user_id(x_user_id)
    return to_migration_response(store.migrate_legacy_transactions(user_id))
