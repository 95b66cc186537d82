from datetime import date, datetime
from decimal import Decimal

import bcrypt
import structlog
from fastapi import FastAPI, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from finledger.automatic_execution import AutomaticExecutionEngine
from finledger.budgets import create_budget, delete_budget, list_budgets, update_budget
from finledger.config import settings
from finledger.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    StaticRateProvider,
    normalize_currency,
)
from finledger.db import accounts, build_engine, categories, init_db, unit_of_work, users, utc_now
from finledger.errors import (
    InsufficientFunds,
    LedgerError,
    NotFoundError,
    PersistenceFailure,
    RateUnavailable,
    ValidationError,
)
from finledger.ledger import Ledger, RateProvider, record_adjustment
from finledger.logging_config import configure_logging
from finledger.mailer import BrevoMailer, EmailAddress, Mailer, RecordingMailer
from finledger.notifications import ReminderService
from finledger.scheduler import DailyJob
from finledger.schedules import (
    ScheduleDraft,
    create_schedule,
    deactivate_schedule,
    delete_schedule,
    list_schedules,
    normalize_cadence,
    normalize_kind,
    update_schedule,
    upcoming_schedules,
)

logger = structlog.get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DEFAULT_CATEGORIES = [
    "Groceries",
    "Rent",
    "Dining",
    "Utilities",
    "Travel",
    "Subscriptions",
    "Salary",
    "Other",
]


def get_system_default_currency() -> str:
    try:
        return normalize_currency(settings.default_currency)
    except ValidationError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()


def build_mailer() -> Mailer:
    if settings.brevo_api_key:
        return BrevoMailer(api_key=settings.brevo_api_key, timeout_seconds=settings.mail_timeout_seconds)
    logger.warning("mailer_not_configured", reason="BREVO_API_KEY is not set, emails are kept in memory")
    return RecordingMailer()


class Services:
    """Process-wide collaborators the request handlers and daily jobs share."""

    def __init__(self) -> None:
        self.engine: Engine = None
        self.rate_provider: RateProvider = None
        self.mailer: Mailer = None
        self.ledger: Ledger = None
        self.executor: AutomaticExecutionEngine = None
        self.reminders: ReminderService = None
        self.execution_job: DailyJob = None
        self.notification_job: DailyJob = None

    def configure(
        self,
        engine: Engine,
        rate_provider: RateProvider,
        mailer: Mailer,
        send_delay: float = settings.mail_send_delay_seconds,
    ) -> None:
        sender = EmailAddress(settings.sender_email, settings.sender_name)
        self.engine = engine
        self.rate_provider = rate_provider
        self.mailer = mailer
        self.ledger = Ledger(engine, rate_provider)
        self.executor = AutomaticExecutionEngine(
            engine, rate_provider, mailer, sender, timezone_name=settings.execution_timezone
        )
        self.reminders = ReminderService(
            engine,
            mailer,
            sender,
            timezone_name=settings.notification_timezone,
            send_delay=send_delay,
        )
        self.execution_job = DailyJob(
            "automatic-payments",
            lambda: self.executor.run().as_dict(),
            daily_time=settings.execution_daily_time,
            timezone=settings.execution_timezone,
            enabled=settings.execution_enabled,
        )
        self.notification_job = DailyJob(
            "daily-notifications",
            lambda: self.reminders.send_daily_reminders().as_dict(),
            daily_time=settings.notification_daily_time,
            timezone=settings.notification_timezone,
            enabled=settings.notification_enabled,
        )


services = Services()
services.configure(
    engine=build_engine(settings.database_url),
    rate_provider=CompositeRateProvider(
        primary=FrankfurterRateProvider(base_currency=settings.fx_base_currency),
        fallback=StaticRateProvider(base_currency=settings.fx_base_currency),
    ),
    mailer=build_mailer(),
)


@app.on_event("startup")
def startup() -> None:
    configure_logging(settings.log_level)
    init_db(services.engine)
    services.execution_job.start()
    services.notification_job.start()


@app.on_event("shutdown")
def shutdown() -> None:
    services.execution_job.stop()
    services.notification_job.stop()


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, (ValidationError, RateUnavailable)):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, InsufficientFunds):
        status_code = 409
    elif isinstance(exc, PersistenceFailure):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=str(exc))


class CredentialsPayload(BaseModel):
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    home_currency: str | None = None
    created_at: datetime | None = None


class AccountType:
    values = {"checking", "savings"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Account type must be checking or savings.")
        return normalized


class AccountPayload(BaseModel):
    name: str
    type: str = "checking"
    currency: str | None = None
    opening_balance: Decimal = Decimal("0")
    target_amount: Decimal | None = None
    target_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.type = AccountType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        if payload.opening_balance < 0:
            raise ValueError("Opening balance cannot be negative.")
        if payload.type != "savings" and (payload.target_amount is not None or payload.target_date):
            raise ValueError("Only savings accounts can have a target.")
        if payload.target_amount is not None and payload.target_amount <= 0:
            raise ValueError("Savings target must be greater than zero.")
        return payload


class AccountUpdatePayload(BaseModel):
    name: str
    currency: str | None = None
    target_amount: Decimal | None = None
    target_date: date | None = None


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    currency: str
    balance: Decimal
    target_amount: Decimal | None = None
    target_date: date | None = None
    savings_completed: bool = False
    created_at: datetime | None = None


class BalanceHistoryResponse(BaseModel):
    id: int
    account_id: int
    transaction_id: int | None = None
    previous_balance: Decimal
    new_balance: Decimal
    amount_changed: Decimal
    change_type: str
    currency: str
    description: str | None = None
    created_at: datetime


class CategoryResponse(BaseModel):
    id: int
    name: str
    type: str


class MovementPayload(BaseModel):
    amount: Decimal
    currency: str | None = None
    name: str | None = None
    description: str | None = None
    category_ids: list[int] = []

    @classmethod
    def validate_payload(cls, payload):
        payload.name = payload.name.strip() if payload.name else None
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransferPayload(MovementPayload):
    from_account_id: int
    to_account_id: int


class ExpensePayload(MovementPayload):
    from_account_id: int


class IncomePayload(MovementPayload):
    to_account_id: int


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    name: str | None = None
    description: str | None = None
    amount: Decimal
    currency: str
    type: str
    from_account_id: int | None = None
    to_account_id: int | None = None
    schedule_id: int | None = None
    category_ids: list[int] = []
    created_at: datetime


class BudgetPayload(BaseModel):
    name: str
    limit_amount: Decimal
    currency: str | None = None
    category_ids: list[int] = []


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    name: str
    limit_amount: Decimal
    spent: Decimal
    currency: str
    category_ids: list[int] = []
    updated_at: datetime | None = None


class RecurringSchedulePayload(BaseModel):
    account_id: int
    name: str
    kind: str = "expense"
    amount: Decimal
    currency: str | None = None
    frequency: str = "monthly"
    next_execution: datetime
    automatic_execution: bool = False
    email_notification: bool = False
    notification_lead_days: int | None = None
    timezone: str | None = None
    description: str | None = None
    category_ids: list[int] = []

    @classmethod
    def validate_payload(cls, payload: "RecurringSchedulePayload") -> "RecurringSchedulePayload":
        payload.frequency = normalize_cadence(payload.frequency)
        payload.kind = normalize_kind(payload.kind)
        if payload.notification_lead_days is not None and payload.notification_lead_days < 0:
            raise ValidationError("Notification lead days cannot be negative.")
        return payload

    def to_draft(self, currency: str) -> ScheduleDraft:
        return ScheduleDraft(
            account_id=self.account_id,
            name=self.name,
            kind=self.kind,
            amount=self.amount,
            currency=currency,
            cadence=self.frequency,
            next_execution=self.next_execution,
            automatic_execution=self.automatic_execution,
            email_notification=self.email_notification,
            notification_lead_days=self.notification_lead_days,
            timezone=self.timezone,
            description=self.description,
            category_ids=tuple(self.category_ids),
        )


class RecurringScheduleResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    name: str
    description: str | None = None
    kind: str
    amount: Decimal
    currency: str
    cadence: str
    next_execution: datetime | None = None
    is_active: bool
    automatic_execution: bool
    email_notification: bool
    notification_lead_days: int | None = None
    timezone: str | None = None
    category_ids: list[int] = []
    created_at: datetime | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with services.engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def resolve_currency(value: str | None, conn, user_id: int) -> str:
    if value:
        return normalize_currency(value)
    home_currency = conn.execute(
        select(users.c.home_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if home_currency:
        try:
            return normalize_currency(home_currency)
        except ValidationError:
            pass
    return SYSTEM_DEFAULT_CURRENCY


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [{"user_id": user_id, "name": name, "type": "custom"} for name in DEFAULT_CATEGORIES],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(
            email=email,
            hashed_password=hashed_password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            home_currency=SYSTEM_DEFAULT_CURRENCY,
        )
        .returning(*users.c)
    )
    try:
        with services.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
            if row:
                ensure_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("user_signed_up", user_id=row["id"])
    return UserResponse(**row)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with services.engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return UserResponse(**row)


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with services.engine.begin() as conn:
        rows = conn.execute(
            select(categories)
            .where(
                or_(categories.c.user_id == user_id, categories.c.type == "system"),
                categories.c.deleted_at.is_(None),
            )
            .order_by(func.lower(categories.c.name))
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with services.engine.begin() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
            .order_by(accounts.c.id)
        ).mappings().all()
    return [AccountResponse(**row) for row in rows]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
        with unit_of_work(services.engine) as conn:
            currency = resolve_currency(payload.currency, conn, user_id)
            account_id = conn.execute(
                insert(accounts)
                .values(
                    user_id=user_id,
                    name=payload.name,
                    type=payload.type,
                    currency=currency,
                    balance=Decimal("0"),
                    target_amount=payload.target_amount,
                    target_date=payload.target_date,
                )
                .returning(accounts.c.id)
            ).scalar_one()
            if payload.opening_balance > 0:
                record_adjustment(
                    conn,
                    user_id=user_id,
                    account_id=account_id,
                    delta=payload.opening_balance,
                    description="Opening balance",
                )
    except LedgerError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with services.engine.begin() as conn:
        row = conn.execute(select(accounts).where(accounts.c.id == account_id)).mappings().first()
    logger.info("account_created", user_id=user_id, account_id=account_id, type=payload.type)
    return AccountResponse(**row)


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def put_account(
    account_id: int,
    payload: AccountUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = services.ledger.update_account(
            user_id,
            account_id,
            payload.name,
            currency=payload.currency,
            target_amount=payload.target_amount,
            target_date=payload.target_date,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    logger.info("account_updated", user_id=user_id, account_id=account_id)
    return AccountResponse(**row)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = (
        update(accounts)
        .where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
        .values(deleted_at=utc_now())
    )
    with services.engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Account not found.")
    return {"status": "deleted"}


@app.get("/accounts/{account_id}/balance-history", response_model=list[BalanceHistoryResponse])
def account_balance_history(
    account_id: int,
    limit: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BalanceHistoryResponse]:
    user_id = get_user_id(x_user_id)
    try:
        rows = services.ledger.balance_history(user_id, account_id, limit=limit)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [BalanceHistoryResponse(**row) for row in rows]


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    account_id: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    rows = services.ledger.list_transactions(user_id, account_id=account_id)
    return [TransactionResponse(**row) for row in rows]


def _movement_currency(payload: MovementPayload, user_id: int) -> str:
    with services.engine.begin() as conn:
        return resolve_currency(payload.currency, conn, user_id)


@app.post("/transactions/transfer", response_model=TransactionResponse)
def create_transfer(
    payload: TransferPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = TransferPayload.validate_payload(payload)
    try:
        row = services.ledger.create_transfer(
            user_id,
            payload.amount,
            from_account_id=payload.from_account_id,
            to_account_id=payload.to_account_id,
            currency=_movement_currency(payload, user_id),
            name=payload.name,
            description=payload.description,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return TransactionResponse(**row)


@app.post("/transactions/expense", response_model=TransactionResponse)
def create_expense(
    payload: ExpensePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = ExpensePayload.validate_payload(payload)
    try:
        row = services.ledger.create_expense(
            user_id,
            payload.amount,
            from_account_id=payload.from_account_id,
            currency=_movement_currency(payload, user_id),
            category_ids=payload.category_ids,
            name=payload.name,
            description=payload.description,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return TransactionResponse(**row)


@app.post("/transactions/income", response_model=TransactionResponse)
def create_income(
    payload: IncomePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    payload = IncomePayload.validate_payload(payload)
    try:
        row = services.ledger.create_income(
            user_id,
            payload.amount,
            to_account_id=payload.to_account_id,
            currency=_movement_currency(payload, user_id),
            category_ids=payload.category_ids,
            name=payload.name,
            description=payload.description,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return TransactionResponse(**row)


@app.get("/budgets", response_model=list[BudgetResponse])
def get_budgets(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    return [BudgetResponse(**row) for row in list_budgets(services.engine, user_id)]


@app.post("/budgets", response_model=BudgetResponse)
def post_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        with services.engine.begin() as conn:
            currency = resolve_currency(payload.currency, conn, user_id)
        row = create_budget(
            services.engine,
            user_id,
            payload.name,
            payload.limit_amount,
            currency,
            category_ids=payload.category_ids,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return BudgetResponse(**row)


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def put_budget(
    budget_id: int,
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = update_budget(
            services.engine,
            user_id,
            budget_id,
            payload.name,
            payload.limit_amount,
            payload.currency,
            payload.category_ids,
            rates=services.rate_provider.get_rates(),
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return BudgetResponse(**row)


@app.delete("/budgets/{budget_id}")
def remove_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_budget(services.engine, user_id, budget_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/recurring-schedules", response_model=list[RecurringScheduleResponse])
def list_recurring_schedules(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringScheduleResponse]:
    user_id = get_user_id(x_user_id)
    return [RecurringScheduleResponse(**row) for row in list_schedules(services.engine, user_id)]


@app.get("/recurring-schedules/upcoming", response_model=list[RecurringScheduleResponse])
def list_upcoming_schedules(
    days: int = 7,
    kind: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[RecurringScheduleResponse]:
    user_id = get_user_id(x_user_id)
    try:
        rows = upcoming_schedules(services.engine, user_id, utc_now(), days_ahead=days, kind=kind)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [RecurringScheduleResponse(**row) for row in rows]


@app.post("/recurring-schedules", response_model=RecurringScheduleResponse)
def create_recurring_schedule(
    payload: RecurringSchedulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringScheduleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RecurringSchedulePayload.validate_payload(payload)
        with services.engine.begin() as conn:
            currency = resolve_currency(payload.currency, conn, user_id)
        row = create_schedule(
            services.engine,
            user_id,
            payload.to_draft(currency),
            default_timezone=settings.execution_timezone,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return RecurringScheduleResponse(**row)


@app.put("/recurring-schedules/{schedule_id}", response_model=RecurringScheduleResponse)
def update_recurring_schedule(
    schedule_id: int,
    payload: RecurringSchedulePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringScheduleResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = RecurringSchedulePayload.validate_payload(payload)
        with services.engine.begin() as conn:
            currency = resolve_currency(payload.currency, conn, user_id)
        row = update_schedule(
            services.engine,
            user_id,
            schedule_id,
            payload.to_draft(currency),
            default_timezone=settings.execution_timezone,
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return RecurringScheduleResponse(**row)


@app.post("/recurring-schedules/{schedule_id}/deactivate", response_model=RecurringScheduleResponse)
def deactivate_recurring_schedule(
    schedule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RecurringScheduleResponse:
    user_id = get_user_id(x_user_id)
    try:
        row = deactivate_schedule(services.engine, user_id, schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return RecurringScheduleResponse(**row)


@app.delete("/recurring-schedules/{schedule_id}")
def delete_recurring_schedule(
    schedule_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_schedule(services.engine, user_id, schedule_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.post("/cron/automatic-payments/run")
def run_automatic_payments() -> dict:
    job_result = services.execution_job.trigger_manual_run()
    if job_result.error:
        raise HTTPException(status_code=500, detail=job_result.error)
    return {"duration_ms": job_result.duration_ms, **job_result.result}


@app.post("/cron/daily-notifications/run")
def run_daily_notifications() -> dict:
    job_result = services.notification_job.trigger_manual_run()
    if job_result.error:
        raise HTTPException(status_code=500, detail=job_result.error)
    return {"duration_ms": job_result.duration_ms, **job_result.result}


@app.get("/cron/status")
def cron_status() -> dict:
    return {
        "automatic_payments": services.execution_job.status(),
        "daily_notifications": services.notification_job.status(),
    }


@app.get("/currency/rates")
def currency_rates() -> dict:
    rates = services.rate_provider.get_rates()
    return {
        "base_currency": rates.base_currency,
        "rates": {code: str(value) for code, value in sorted(rates.rates.items())},
    }
