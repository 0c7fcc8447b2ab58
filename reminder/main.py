import asyncio
from contextlib import asynccontextmanager
from http import HTTPStatus
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from reminder.helpers.config import CONFIG
from reminder.helpers.http import close_sessions
from reminder.helpers.logging import logger
from reminder.helpers.monitoring import SpanAttributeEnum, start_as_current_span
from reminder.helpers.notification_scheduler import (
    NotificationScheduler,
    dispatch_all,
)
from reminder.models.error import ErrorModel
from reminder.models.notification import (
    DeliveryStatusEnum,
    NotificationPayloadModel,
    NotificationTestResultModel,
    SubscriptionCountModel,
    SweepReportModel,
)
from reminder.models.readiness import ReadinessEnum, ReadinessModel
from reminder.models.user import PushSubscriptionModel, PushUnsubscribeModel

# First log
logger.info(
    "event-reminder v%s",
    CONFIG.version,
)

# Persistences
_db = CONFIG.database.instance
_push = CONFIG.push.instance

# Single scheduler for the whole process
_scheduler = NotificationScheduler(
    config=CONFIG.scheduler,
    dashboard_url=CONFIG.push.dashboard_url,
    default_icon=CONFIG.push.default_icon,
    push=_push,
    store=_db,
)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    if CONFIG.scheduler.enabled:
        await _scheduler.start()
    else:
        logger.warning("Notification scheduler is disabled")

    try:
        yield

    # Stop sweeps, in-flight one is awaited
    finally:
        await _scheduler.stop()

    # Close HTTP session
    await close_sessions()


# FastAPI
api = FastAPI(
    description="Remind users of their events with browser push notifications, shortly before they start.",
    lifespan=lifespan,
    title="event-reminder",
    version=CONFIG.version,
)


@api.get("/health/liveness")
@start_as_current_span("health_liveness_get")
async def health_liveness_get() -> None:
    """
    Check if the service is running.

    No parameters are expected.

    Returns a 200 OK if the service is technically running.
    """
    return


@api.get(
    "/health/readiness",
    status_code=HTTPStatus.OK,
)
@start_as_current_span("health_readiness_get")
async def health_readiness_get() -> JSONResponse:
    """
    Check if the service is ready to serve requests.

    No parameters are expected. Services tested are: store, push, scheduler.

    Returns a 200 OK if the service is ready to serve requests. If the service is not ready, it should return a 503 Service Unavailable.
    """
    # Check all components in parallel
    (
        store_check,
        push_check,
    ) = await asyncio.gather(
        _db.readiness(),
        _push.readiness(),
    )
    # Scheduler is expected to run, unless disabled
    scheduler_check = (
        ReadinessEnum.OK
        if _scheduler.is_running or not CONFIG.scheduler.enabled
        else ReadinessEnum.FAIL
    )
    readiness = ReadinessModel.from_checks(
        {
            "store": store_check,
            "push": push_check,
            "scheduler": scheduler_check,
        }
    )
    return JSONResponse(
        content=readiness.model_dump(mode="json"),
        status_code=(
            HTTPStatus.OK
            if readiness.status == ReadinessEnum.OK
            else HTTPStatus.SERVICE_UNAVAILABLE
        ),
    )


@api.get("/notifications/public-key")
@start_as_current_span("notifications_public_key_get")
async def notifications_public_key_get() -> dict[str, str]:
    """
    Get the VAPID public key, browsers need it to subscribe.

    Returns a 500 Internal Server Error if push is not configured.
    """
    public_key = _push.public_key
    if not public_key:
        raise HTTPException(
            detail="Push notifications not configured on server",
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
        )
    return {"public_key": public_key}


@api.post("/notifications/trigger")
@start_as_current_span("notifications_trigger_post")
async def notifications_trigger_post() -> SweepReportModel:
    """
    Run a notification sweep now, and wait for it.

    Useful to test the notification flow without waiting for the timer.

    Returns the sweep report `SweepReportModel`, in JSON format.
    """
    return await _scheduler.trigger_check()


@api.post(
    "/users/{user_id}/subscriptions",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("user_subscription_post")
async def user_subscription_post(
    user_id: UUID,
    request: Request,
) -> SubscriptionCountModel:
    """
    Save a push subscription for the user.

    Required body parameters is a JSON object `PushSubscriptionModel`, as returned by the browser. A subscription with the same endpoint is replaced.

    Returns the number of subscriptions of the user.
    """
    SpanAttributeEnum.USER_ID.attribute(str(user_id))
    try:
        body = await request.json()
        subscription = PushSubscriptionModel.model_validate(body)
    except (ValidationError, ValueError) as e:
        raise RequestValidationError([str(e)]) from e

    user = await _db.user_subscription_upsert(
        subscription=subscription,
        user_id=user_id,
    )
    if not user:
        raise HTTPException(
            detail=f"User {user_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )

    return SubscriptionCountModel(
        message="Subscription saved successfully",
        subscription_count=len(user.push_subscriptions),
    )


@api.delete("/users/{user_id}/subscriptions")
@start_as_current_span("user_subscription_delete")
async def user_subscription_delete(
    user_id: UUID,
    request: Request,
) -> SubscriptionCountModel:
    """
    Remove a push subscription of the user.

    Required body parameters is a JSON object `PushUnsubscribeModel`.

    Returns the number of subscriptions left.
    """
    SpanAttributeEnum.USER_ID.attribute(str(user_id))
    try:
        body = await request.json()
        unsubscribe = PushUnsubscribeModel.model_validate(body)
    except (ValidationError, ValueError) as e:
        raise RequestValidationError([str(e)]) from e

    user = await _db.user_subscription_remove(
        endpoint=unsubscribe.endpoint,
        user_id=user_id,
    )
    if not user:
        raise HTTPException(
            detail=f"User {user_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )

    return SubscriptionCountModel(
        message="Unsubscribed successfully",
        subscription_count=len(user.push_subscriptions),
    )


@api.post("/users/{user_id}/notifications/test")
@start_as_current_span("user_notification_test_post")
async def user_notification_test_post(
    user_id: UUID,
) -> NotificationTestResultModel:
    """
    Send a test notification to all the subscriptions of the user.

    Subscriptions reported as gone by the push service are removed.

    Returns the delivery counts.
    """
    SpanAttributeEnum.USER_ID.attribute(str(user_id))
    user = await _db.user_get(user_id)
    if not user or not user.push_subscriptions:
        raise HTTPException(
            detail="No push subscriptions found for user",
            status_code=HTTPStatus.NOT_FOUND,
        )

    deliveries, removed = await dispatch_all(
        payload=NotificationPayloadModel.for_test(
            dashboard_url=CONFIG.push.dashboard_url,
            default_icon=CONFIG.push.default_icon,
        ),
        push=_push,
        store=_db,
        user=user,
    )
    delivered = sum(
        1 for delivery in deliveries if delivery.status == DeliveryStatusEnum.DELIVERED
    )
    return NotificationTestResultModel(
        delivered=delivered,
        failed=len(deliveries) - delivered,
        subscriptions_removed=removed,
        total=len(deliveries),
    )


@api.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions and return the error in a standard format.
    """
    return _standard_error(
        message=exc.detail,
        status_code=HTTPStatus(exc.status_code),
    )


@api.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation exceptions and return the error in a standard format.
    """
    return _standard_error(
        details=[str(x) for x in exc.errors()],
        message="Validation error",
        status_code=HTTPStatus.BAD_REQUEST,
    )


def _standard_error(
    message: str,
    status_code: HTTPStatus,
    details: list[str] | None = None,
) -> JSONResponse:
    """
    Generate a standard error response.
    """
    return JSONResponse(
        content=ErrorModel.from_message(message, *(details or [])).model_dump(
            mode="json"
        ),
        status_code=status_code,
    )
