"""Process-wide service graph, built once at startup"""
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from subsync.core.config import settings, Settings
from subsync.db.session import SessionLocal
from subsync.services.billing_service import BillingOrchestrator
from subsync.services.gateways.base import PaymentGateway
from subsync.services.gateways.registry import build_gateway_registry
from subsync.services.lifecycle_service import SubscriptionLifecycle
from subsync.tasks.handlers import Summarizer, register_default_handlers
from subsync.tasks.scheduler import BillingScheduler
from subsync.tasks.task_queue import TaskQueue


@dataclass
class Services:
    gateways: Dict[str, PaymentGateway]
    lifecycle: SubscriptionLifecycle
    billing: BillingOrchestrator
    task_queue: TaskQueue
    scheduler: BillingScheduler


def build_services(
    config: Settings = settings,
    session_factory: sessionmaker = SessionLocal,
    gateways: Optional[Dict[str, PaymentGateway]] = None,
    summarizer: Optional[Summarizer] = None,
) -> Services:
    """Wire gateways, lifecycle, orchestrator, queue and scheduler together"""
    gateways = gateways if gateways is not None else build_gateway_registry(config)
    lifecycle = SubscriptionLifecycle(
        grace_period_days=config.GRACE_PERIOD_DAYS,
        renewal_window_hours=config.RENEWAL_WINDOW_HOURS,
        payment_retention_days=config.PAYMENT_RETENTION_DAYS,
    )
    billing = BillingOrchestrator(gateways, lifecycle, config)
    task_queue = register_default_handlers(TaskQueue(session_factory), summarizer, session_factory)
    scheduler = BillingScheduler(lifecycle, task_queue, session_factory, config)
    return Services(
        gateways=gateways,
        lifecycle=lifecycle,
        billing=billing,
        task_queue=task_queue,
        scheduler=scheduler,
    )
