"""Shared fixtures: in-memory database, controllable clock and fake channel."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from arledger.common.db import Database
from arledger.common.domain import Money
from arledger.common.errors import ChannelError
from arledger.services.ledger.schemas import CreateArRequest
from arledger.services.ledger.service import LedgerService
from arledger.services.notification.channels import NotificationChannel
from arledger.services.notification.delivery import DeliveryService
from arledger.services.notification.service import NotificationService
from arledger.services.scheduler.service import SweepService


class MutableClock:
    """Callable clock tests can move forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set_day(self, day: date, hour: int = 3) -> None:
        self.now = datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


class FakeChannel(NotificationChannel):
    """Records sends; pops one scripted outcome per call (exception or None)."""

    def __init__(self, outcomes=None, on_send=None) -> None:
        self.outcomes = list(outcomes or [])
        self.on_send = on_send
        self.sent: list[tuple[str, str]] = []
        self.calls = 0
        self.closed = False

    async def send(self, address: str, text: str) -> str:
        self.calls += 1
        if self.on_send is not None:
            self.on_send(address, text)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        self.sent.append((address, text))
        return f"msg-{self.calls}"

    async def close(self) -> None:
        self.closed = True


def failing(message: str = "channel down") -> ChannelError:
    return ChannelError(message)


@pytest.fixture
def database():
    db = Database("sqlite:///:memory:").connect()
    db.create_schema()
    yield db
    db.close()


@pytest.fixture
def clock():
    return MutableClock(datetime(2025, 1, 15, 3, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(database, clock):
    return LedgerService(database.session_factory, clock=clock, timezone_name="UTC")


@pytest.fixture
def notifications(database, ledger, clock):
    return NotificationService(database.session_factory, ledger, clock=clock)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def delivery(database, ledger, clock, channel):
    return DeliveryService(
        database.session_factory,
        ledger,
        channel,
        clock=clock,
        retry_base_delay_seconds=300,
        send_timeout_seconds=1.0,
    )


@pytest.fixture
def sweep(ledger, notifications):
    return SweepService(ledger, notifications, timezone_name="UTC")


@pytest.fixture
def make_ar(ledger):
    """Create an AR with sensible defaults; keyword arguments override fields."""

    def _make(**overrides) -> str:
        fields = {
            "home_id": "HOME-001",
            "zone": "north",
            "customer_name": "Dara Sok",
            "amount": Money(value=Decimal("1000"), currency="USD"),
            "invoice_date": date(2025, 1, 1),
            "due_date": date(2025, 1, 31),
            "assigned_sales_id": "sales-1",
            "customer_chat_id": "cust-chat",
            "manager_chat_id": "mgr-chat",
        }
        fields.update(overrides)
        return ledger.create_ar(CreateArRequest(**fields))

    return _make
