import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

from aiojobs import Scheduler
from structlog.contextvars import unbind_contextvars

from reminder.helpers.config_models.scheduler import SchedulerModel
from reminder.helpers.logging import logger
from reminder.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    event_notified,
    gauge_set,
    push_delivery,
    start_as_current_span,
    subscription_removed,
    suppress,
    sweep_events,
    sweep_latency,
)
from reminder.models.event import EventModel
from reminder.models.notification import (
    DeliveryModel,
    DeliveryStatusEnum,
    NotificationPayloadModel,
    SweepReportModel,
)
from reminder.models.user import PushSubscriptionModel, UserModel
from reminder.persistence.ipush import IPush
from reminder.persistence.istore import IStore


def notification_window(
    now: datetime,
    config: SchedulerModel,
) -> tuple[datetime, datetime]:
    """
    Bounds of the notification window, both inclusive.
    """
    return now + config.window_start, now + config.window_end


async def dispatch_all(
    store: IStore,
    push: IPush,
    user: UserModel,
    payload: NotificationPayloadModel,
) -> tuple[list[DeliveryModel], int]:
    """
    Send a payload to all the subscriptions of a user, concurrently.

    Every delivery is awaited, a failure never stops the others. A subscription answering it is gone is removed as soon as its delivery settles.

    Returns the deliveries, in the subscriptions order, and the number of subscriptions removed.
    """
    removed = 0

    async def _dispatch(subscription: PushSubscriptionModel) -> DeliveryModel:
        nonlocal removed
        # Each dispatch runs in its own task, attributes do not leak to the siblings
        SpanAttributeEnum.PUSH_ENDPOINT.attribute(subscription.endpoint)
        delivery = await push.send(subscription, payload)
        counter_add(
            attributes={SpanAttributeEnum.DELIVERY_STATUS.value: delivery.status.value},
            metric=push_delivery,
            value=1,
        )
        if delivery.status != DeliveryStatusEnum.PERMANENT_FAILURE:
            return delivery

        logger.info("Removing invalid subscription %s", subscription.endpoint)
        try:
            await store.user_subscription_remove(
                endpoint=subscription.endpoint,
                user_id=user.user_id,
            )
            removed += 1
            counter_add(subscription_removed, 1)
        except Exception:
            logger.exception("Error removing subscription %s", subscription.endpoint)
        return delivery

    subscriptions = list(user.push_subscriptions)
    results = await asyncio.gather(
        *[_dispatch(subscription) for subscription in subscriptions],
        return_exceptions=True,
    )

    deliveries: list[DeliveryModel] = []
    for subscription, result in zip(subscriptions, results, strict=True):
        if isinstance(result, DeliveryModel):
            deliveries.append(result)
            continue
        # Unexpected error from the sender, keep the subscription and count it as a failure
        logger.error(
            "Unknown error sending to %s",
            subscription.endpoint,
            exc_info=result,
        )
        deliveries.append(
            DeliveryModel(
                endpoint=subscription.endpoint,
                error=str(result),
                status=DeliveryStatusEnum.TRANSIENT_FAILURE,
            )
        )

    return deliveries, removed


class NotificationScheduler:
    """
    Periodically notify the owners of events about to start.

    A sweep runs immediately on start, then every `interval_sec`. Each sweep searches the upcoming events in the notification window, sends a push notification to each subscription of the owner, then marks the event as notified, whatever the delivery outcome. Events are notified once, there is no retry at the event level.

    Sweeps never overlap, the timer and the manual trigger queue on the same lock. Host should create a single instance.
    """

    _clock: Callable[[], datetime]
    _config: SchedulerModel
    _dashboard_url: str
    _default_icon: str
    _jobs: Scheduler | None = None
    _lock: asyncio.Lock
    _push: IPush
    _store: IStore
    _timer: asyncio.Task | None = None

    def __init__(
        self,
        config: SchedulerModel,
        dashboard_url: str,
        default_icon: str,
        push: IPush,
        store: IStore,
        clock: Callable[[], datetime] | None = None,
    ):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._config = config
        self._dashboard_url = dashboard_url
        self._default_icon = default_icon
        self._lock = asyncio.Lock()
        self._push = push
        self._store = store

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    async def start(self) -> None:
        """
        Start the recurring sweeps.

        Does nothing if already running.
        """
        if self._timer:
            logger.warning("Notification scheduler already running")
            return

        logger.info(
            "Starting notification scheduler, checking every %s secs for events starting in %s-%s mins",
            self._config.interval_sec,
            self._config.window_start_min,
            self._config.window_end_min,
        )
        # No wait timeout, an in-flight sweep is never cancelled between dispatch and mark
        self._jobs = Scheduler(wait_timeout=None)
        self._timer = asyncio.create_task(self._run(self._jobs))

    async def stop(self) -> None:
        """
        Stop scheduling sweeps.

        A sweep in progress runs to completion and is awaited, without time limit. Does nothing if not running.
        """
        timer, self._timer = self._timer, None
        if not timer:
            return

        timer.cancel()
        with suppress(asyncio.CancelledError):
            await timer

        jobs, self._jobs = self._jobs, None
        if jobs is not None:
            await jobs.wait_and_close()

        logger.info("Notification scheduler stopped")

    async def trigger_check(self) -> SweepReportModel:
        """
        Run a single sweep, now, and wait for it.

        If a sweep is already running, it is awaited first.
        """
        logger.info("Manually triggering notification check")
        return await self._sweep()

    async def _run(self, jobs: Scheduler) -> None:
        """
        Timer loop, spawn a sweep then wait for the interval.

        Sweeps run as background jobs, so a slow sweep does not delay the next tick.
        """
        while True:
            await jobs.spawn(self._sweep())
            await asyncio.sleep(self._config.interval_sec)

    @start_as_current_span("scheduler_sweep")
    async def _sweep(self) -> SweepReportModel:
        async with self._lock:
            start = time.monotonic()
            now = self._clock()
            window_start, window_end = notification_window(now, self._config)
            report = SweepReportModel(
                window_end=window_end,
                window_start=window_start,
            )
            logger.info(
                "Checking for events between %s and %s", window_start, window_end
            )
            try:
                await self._sweep_events(report)
            finally:
                gauge_set(sweep_latency, time.monotonic() - start)
            return report

    async def _sweep_events(
        self,
        report: SweepReportModel,
    ) -> None:
        # Failure leaves the state unchanged, next sweep will retry
        try:
            events = await self._store.event_search_due(
                window_end=report.window_end,
                window_start=report.window_start,
            )
        except Exception:
            logger.exception("Error searching due events, sweep abandoned")
            report.errors += 1
            return

        report.events_found = len(events)
        gauge_set(sweep_events, len(events))
        if not events:
            logger.info("No events requiring notifications")
            return

        logger.info("Found %s event(s) requiring notifications", len(events))
        for event in events:
            # A slow sweep can reach an event after it started
            if not event.is_upcoming(self._clock()):
                logger.info("Event %s already started, skipping", event.title)
                report.events_skipped += 1
                continue
            await self._notify_event(event, report)

        logger.info(
            "Sweep done, %s event(s) marked, %s delivered, %s failed, %s subscription(s) removed",
            report.events_marked,
            report.delivered,
            report.transient_failures + report.permanent_failures,
            report.subscriptions_removed,
        )

    @start_as_current_span("scheduler_notify_event")
    async def _notify_event(
        self,
        event: EventModel,
        report: SweepReportModel,
    ) -> None:
        """
        Notify the owner of an event, then mark it as notified.

        Errors are caught here, so one event never prevents the processing of the others.
        """
        SpanAttributeEnum.EVENT_ID.attribute(str(event.event_id))
        SpanAttributeEnum.USER_ID.attribute(str(event.user_id))
        report.events_processed += 1
        try:
            user = await self._store.user_get(event.user_id)

            # No subscriber is handled, not pending
            if not user or not user.push_subscriptions:
                logger.info("No subscriptions for event %s", event.title)
                await self._mark_notified(event, report)
                return

            payload = NotificationPayloadModel.for_event(
                dashboard_url=self._dashboard_url,
                default_icon=self._default_icon,
                event=event,
                now=self._clock(),
            )
            logger.info(
                "Sending notifications for %s to %s subscription(s)",
                event.title,
                len(user.push_subscriptions),
            )
            deliveries, removed = await dispatch_all(
                payload=payload,
                push=self._push,
                store=self._store,
                user=user,
            )
            for delivery in deliveries:
                report.add_delivery(delivery)
            report.subscriptions_removed += removed
            successful = sum(
                1 for d in deliveries if d.status == DeliveryStatusEnum.DELIVERED
            )
            logger.info(
                "Results: %s successful, %s failed",
                successful,
                len(deliveries) - successful,
            )

            # Partial or total failure still counts as notified
            await self._mark_notified(event, report)

        except Exception:
            logger.exception("Error sending notification for event %s", event.title)
            report.errors += 1

        finally:
            unbind_contextvars(
                SpanAttributeEnum.EVENT_ID.value,
                SpanAttributeEnum.USER_ID.value,
            )

    async def _mark_notified(
        self,
        event: EventModel,
        report: SweepReportModel,
    ) -> None:
        if not await self._store.event_mark_notified(event):
            logger.info("Event %s was already marked as notified", event.title)
            return
        report.events_marked += 1
        counter_add(event_notified, 1)
        logger.info("Marked event as notified: %s", event.title)
