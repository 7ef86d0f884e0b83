"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

# --- Default test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///./gametrust_test.db")
os.environ.setdefault("DEV_API_KEY", "test-secret-key")
os.environ.setdefault("GT_ENV", "test")
os.environ.setdefault("GT_SCHEDULER_ENABLED", "0")

from gametrust.main import app  # noqa: E402
from gametrust.db import get_db  # noqa: E402
from gametrust.models import Order  # noqa: E402
from gametrust.models.api_key import ApiKey, ApiScope  # noqa: E402
from gametrust.schemas.order import OrderCreate  # noqa: E402
from gametrust.security import CurrentUser  # noqa: E402
from gametrust.services import deadlines, ledger  # noqa: E402
from gametrust.services import orders as order_service  # noqa: E402
from gametrust.services.notifications import NotificationEvent, set_notification_emitter  # noqa: E402
from gametrust.services.payment_gateway import SandboxGateway, set_payment_gateway  # noqa: E402
from gametrust.utils.apikey import hash_key  # noqa: E402
from gametrust.utils.errors import PaymentProviderError  # noqa: E402

DB_PATH = Path("./gametrust_test.db")
BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")


# --- (1) Fresh database file for the session
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)


# pysqlite defers BEGIN, which breaks SAVEPOINT handling; take over transaction control.
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# --- (2) Build the schema through Alembic only
_run_migrations()


class RecordingEmitter:
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[NotificationEvent]:
        return [event for event in self.events if event.type == event_type]


class ScriptedGateway(SandboxGateway):
    """Sandbox gateway that fails the next N releases/refunds."""

    def __init__(self, *, fail_release: int = 0, fail_refund: int = 0, transient: bool = True) -> None:
        super().__init__()
        self.fail_release = fail_release
        self.fail_refund = fail_refund
        self.transient = transient

    def release(self, external_ref: str, amount: int, *, payee_id: str, idempotency_key: str) -> bool:
        if self.fail_release > 0:
            self.fail_release -= 1
            raise PaymentProviderError("gateway timeout", transient=self.transient)
        return super().release(external_ref, amount, payee_id=payee_id, idempotency_key=idempotency_key)

    def refund(self, external_ref: str, amount: int, *, idempotency_key: str) -> bool:
        if self.fail_refund > 0:
            self.fail_refund -= 1
            raise PaymentProviderError("gateway timeout", transient=self.transient)
        return super().refund(external_ref, amount, idempotency_key=idempotency_key)


class FakeTimerRunner:
    def __init__(self) -> None:
        self.armed: dict[int, datetime] = {}
        self.disarmed: list[int] = []

    def arm(self, timer_id: int, fire_at: datetime) -> None:
        self.armed[timer_id] = fire_at

    def disarm(self, timer_id: int) -> None:
        self.disarmed.append(timer_id)
        self.armed.pop(timer_id, None)


@pytest.fixture
def connection() -> Iterator:
    conn = engine.connect()
    transaction = conn.begin()
    try:
        yield conn
    finally:
        transaction.rollback()
        conn.close()


@pytest.fixture
def session_factory(connection) -> sessionmaker:
    # Services commit freely; each commit only releases a savepoint of the outer test transaction.
    return sessionmaker(
        bind=connection,
        autoflush=False,
        expire_on_commit=False,
        future=True,
        join_transaction_mode="create_savepoint",
    )


@pytest.fixture
def db_session(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def gateway() -> Iterator[ScriptedGateway]:
    sandbox = ScriptedGateway()
    set_payment_gateway(sandbox)
    yield sandbox
    set_payment_gateway(None)


@pytest.fixture(autouse=True)
def emitter() -> Iterator[RecordingEmitter]:
    recorder = RecordingEmitter()
    set_notification_emitter(recorder)
    yield recorder
    set_notification_emitter(None)


@pytest.fixture(autouse=True)
def sleeps(monkeypatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(ledger, "_sleep", recorded.append)
    return recorded


@pytest.fixture
def timer_runner() -> Iterator[FakeTimerRunner]:
    runner = FakeTimerRunner()
    deadlines.set_timer_runner(runner)
    yield runner
    deadlines.set_timer_runner(None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def buyer() -> CurrentUser:
    return CurrentUser(id=BUYER_ID, role=ApiScope.user)


@pytest.fixture
def seller() -> CurrentUser:
    return CurrentUser(id=SELLER_ID, role=ApiScope.user)


@pytest.fixture
def agent() -> CurrentUser:
    return CurrentUser(id="agent-7", role=ApiScope.agent)


@pytest.fixture
def admin() -> CurrentUser:
    return CurrentUser(id="admin-1", role=ApiScope.admin)


@pytest.fixture
def make_api_key(db_session: Session) -> Callable[..., ApiKey]:
    def _factory(subject: str, key: str, scope: ApiScope = ApiScope.user, is_active: bool = True) -> ApiKey:
        api_key = ApiKey(
            name=f"{scope.value}-{subject}-{uuid4().hex[:8]}",
            prefix="test_" + scope.value,
            key_hash=hash_key(key),
            subject=subject,
            scope=scope,
            is_active=is_active,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key

    return _factory


@pytest.fixture
def make_headers(make_api_key: Callable[..., ApiKey]) -> Callable[..., dict[str, str]]:
    def _factory(subject: str, scope: ApiScope = ApiScope.user) -> dict[str, str]:
        token = f"{scope.value}-{uuid4().hex}"
        make_api_key(subject, token, scope)
        return {"Authorization": f"Bearer {token}"}

    return _factory


@pytest.fixture
def buyer_headers(make_headers) -> dict[str, str]:
    return make_headers(BUYER_ID)


@pytest.fixture
def seller_headers(make_headers) -> dict[str, str]:
    return make_headers(SELLER_ID)


@pytest.fixture
def agent_headers(make_headers) -> dict[str, str]:
    return make_headers("agent-7", ApiScope.agent)


@pytest.fixture
def admin_headers(make_headers) -> dict[str, str]:
    return make_headers("admin-1", ApiScope.admin)


@pytest.fixture
def make_order(db_session: Session, buyer: CurrentUser) -> Callable[..., Order]:
    """Create an order through checkout; with the sandbox gateway it lands IN_ESCROW."""

    def _factory(amount: int = 70000, *, seller_id: str = SELLER_ID, buyer_user: CurrentUser | None = None) -> Order:
        payload = OrderCreate(seller_id=seller_id, listing_id=f"listing-{uuid4().hex[:8]}", amount=amount)
        return order_service.create_order(db_session, payload, buyer=buyer_user or buyer)

    return _factory


@pytest.fixture
def delivered_order(db_session: Session, make_order, seller: CurrentUser) -> Callable[..., Order]:
    def _factory(amount: int = 70000, *, delivered_at: datetime | None = None) -> Order:
        order = make_order(amount)
        return order_service.mark_delivered(
            db_session, order.id, actor=seller, expected_version=order.version, now=delivered_at
        )

    return _factory
