"""Composition root: builds every service from settings and a connected database."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from arledger.common.config import Settings
from arledger.common.dates import utcnow
from arledger.common.db import Database
from arledger.common.logging import logger
from arledger.services.ledger.repository import ImportLogRepository
from arledger.services.ledger.service import LedgerService
from arledger.services.notification.channels import LogChannel, NotificationChannel, TelegramChannel
from arledger.services.notification.delivery import DeliveryService, DeliveryWorker
from arledger.services.notification.service import NotificationService
from arledger.services.scheduler.service import SweepService, SweepWorker


@dataclass
class Services:
    ledger: LedgerService
    import_logs: ImportLogRepository
    notifications: NotificationService
    delivery: DeliveryService
    sweep: SweepService
    delivery_worker: DeliveryWorker
    sweep_worker: SweepWorker


def make_channel(settings: Settings) -> NotificationChannel:
    """Telegram when a bot token is configured, otherwise log-only."""

    if settings.telegram_bot_token:
        return TelegramChannel(settings.telegram_bot_token, settings.telegram_api_url)
    logger.warning("telegram_bot_token not set; alerts will be logged, not delivered")
    return LogChannel()


def build_services(
    settings: Settings,
    database: Database,
    channel: NotificationChannel | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    session_factory = database.session_factory
    ledger = LedgerService(
        session_factory,
        clock=clock,
        timezone_name=settings.timezone,
        due_date_past_limit_days=settings.due_date_past_limit_days,
    )
    notifications = NotificationService(
        session_factory,
        ledger,
        clock=clock,
        max_attempts=settings.alert_max_attempts,
    )
    delivery = DeliveryService(
        session_factory,
        ledger,
        channel or make_channel(settings),
        clock=clock,
        batch_size=settings.alert_batch_size,
        retry_base_delay_seconds=settings.alert_retry_base_delay_seconds,
        send_timeout_seconds=settings.alert_send_timeout_seconds,
        processing_timeout_seconds=settings.alert_processing_timeout_seconds,
    )
    sweep = SweepService(
        ledger,
        notifications,
        timezone_name=settings.timezone,
        prealert_days=settings.prealert_days,
        future_months_ahead=settings.future_ar_months_ahead,
        escalation_min_days=settings.escalation_min_days,
        escalation_max_days=settings.escalation_max_days,
        overdue_warning_day=settings.overdue_warning_day,
    )
    return Services(
        ledger=ledger,
        import_logs=ImportLogRepository(session_factory),
        notifications=notifications,
        delivery=delivery,
        sweep=sweep,
        delivery_worker=DeliveryWorker(delivery, settings.alert_poll_interval_seconds),
        sweep_worker=SweepWorker(sweep, clock=clock, sweep_hour=settings.sweep_hour),
    )
