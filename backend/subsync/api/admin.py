"""Operator billing routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from subsync.api.deps import get_services, require_admin
from subsync.core.exceptions import BillingError
from subsync.db.session import get_db
from subsync.schemas.billing import ReactivateRequest
from subsync.services.container import Services

router = APIRouter(prefix="/api/admin/billing", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.post("/expire-now")
def expire_now(services: Services = Depends(get_services), db: Session = Depends(get_db)):
    """Run the expiration pass immediately"""
    try:
        expired = services.billing.check_expired_subscriptions(db)
    except Exception as e:
        logger.error(f"Manual expiration check failed: {e}", exc_info=True)
        raise HTTPException(500, "Expiration check failed")
    return {"expired": expired}


@router.get("/scheduler")
def scheduler_status(services: Services = Depends(get_services)):
    return services.scheduler.get_status()


@router.post("/subscriptions/{subscription_id}/reactivate")
def reactivate_subscription(
    subscription_id: int,
    request_data: ReactivateRequest,
    services: Services = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Force a subscription back to active with an explicit period end"""
    try:
        subscription = services.lifecycle.reactivate_subscription(
            subscription_id, request_data.new_period_end, db, plan_id=request_data.plan_id
        )
    except BillingError as e:
        raise HTTPException(e.status_code, e.message)
    logger.info(f"Admin reactivated subscription {subscription_id}")
    return services.billing.get_subscription_status(subscription.user_id, db)


@router.get("/tasks/stats")
def task_queue_stats(services: Services = Depends(get_services)):
    return services.task_queue.get_queue_stats()


@router.get("/tasks/{task_id}")
def task_status(task_id: str, services: Services = Depends(get_services)):
    task = services.task_queue.get_task_status(task_id)
    if not task:
        raise HTTPException(404, "Task not found")
    return task
