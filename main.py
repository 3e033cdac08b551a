import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from cache import AggregateCache, get_default_cache
from database import SessionLocal
from errors import (
    ComputationInvariantViolation,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from models import CATEGORY_LABELS
from rollover import local_today
from scheduler import SchedulerManager
from schemas import CategoryOut, SubscriptionCancelIn, SubscriptionIn, SubscriptionOut
from services import (
    AnalyticsService,
    RolloverService,
    SubscriptionService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Subscription Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_current_user_id()


def today_for_request() -> date:
    return local_today()


def get_cache() -> AggregateCache:
    return get_default_cache()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ValidationError)
def handle_validation_error(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
def handle_not_found(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
def handle_transient_store_error(_request: Request, exc: TransientStoreError):
    logger.warning(f"transient_store_error: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable, retry later"},
        headers={"Retry-After": "30"},
    )


@app.exception_handler(ComputationInvariantViolation)
def handle_invariant_violation(_request: Request, exc: ComputationInvariantViolation):
    logger.error("computation_invariant_violation", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal computation error"})


def _subscriptions(db: Session, user_id: int, cache: AggregateCache) -> SubscriptionService:
    return SubscriptionService(db, user_id, cache=cache)


def _analytics(db: Session, user_id: int, cache: AggregateCache) -> AnalyticsService:
    return AnalyticsService(db, user_id, cache=cache)


@app.get("/api/categories", response_model=list[CategoryOut])
def api_categories():
    return [
        CategoryOut(value=category, label=english, label_ja=japanese)
        for category, (english, japanese) in CATEGORY_LABELS.items()
    ]


@app.get("/api/subscriptions", response_model=list[SubscriptionOut])
def api_list_subscriptions(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).list(include_inactive=include_inactive)


@app.post("/api/subscriptions", response_model=SubscriptionOut, status_code=201)
def api_create_subscription(
    data: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).create(data)


@app.get("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def api_get_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).get(subscription_id)


@app.put("/api/subscriptions/{subscription_id}", response_model=SubscriptionOut)
def api_update_subscription(
    subscription_id: str,
    data: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).update(subscription_id, data)


@app.post("/api/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def api_cancel_subscription(
    subscription_id: str,
    data: SubscriptionCancelIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).cancel(subscription_id, data)


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def api_delete_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    _subscriptions(db, user_id, cache).delete(subscription_id)
    return Response(status_code=204)


@app.get(
    "/api/subscriptions/{subscription_id}/history",
    response_model=list[SubscriptionOut],
)
def api_subscription_history(
    subscription_id: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
):
    return _subscriptions(db, user_id, cache).history(subscription_id)


@app.post("/api/rollover")
def api_run_rollover(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
    today: date = Depends(today_for_request),
):
    return RolloverService(db, user_id, cache=cache).run(today)


@app.get("/api/totals/monthly")
def api_monthly_totals(
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
    today: date = Depends(today_for_request),
):
    return _analytics(db, user_id, cache).monthly_totals_for_period(
        period, start, end, today=today
    )


@app.get("/api/totals/categories")
def api_category_totals(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
    today: date = Depends(today_for_request),
):
    return _analytics(db, user_id, cache).category_totals(month, today=today)


@app.get("/api/estimate/annual")
def api_annual_estimate(
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
    today: date = Depends(today_for_request),
):
    return _analytics(db, user_id, cache).annual_estimate(year or today.year, today=today)


@app.get("/api/summary")
def api_summary(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    cache: AggregateCache = Depends(get_cache),
    today: date = Depends(today_for_request),
):
    return _analytics(db, user_id, cache).summary(today=today)
