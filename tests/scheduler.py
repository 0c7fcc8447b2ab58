import asyncio
from datetime import datetime, timedelta
from uuid import UUID

import pytest
from pytest_assume.plugin import assume

from reminder.helpers.config_models.scheduler import SchedulerModel
from reminder.helpers.monitoring import sweep_latency
from reminder.helpers.notification_scheduler import NotificationScheduler, dispatch_all
from reminder.models.notification import DeliveryStatusEnum, NotificationPayloadModel
from reminder.models.user import UserModel
from reminder.persistence.sqlite import SqliteStore


@pytest.mark.asyncio(loop_scope="session")
async def test_window_selection(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user: UserModel,
) -> None:
    """
    Test only the events starting in 25 to 35 minutes are notified.

    Steps:
    1. Create events before, inside and after the window
    2. Run a sweep
    3. Check the events inside the window are notified and marked, the others are untouched
    """
    inside = [
        await event_factory(user, timedelta(minutes=25)),
        await event_factory(user, timedelta(minutes=30)),
        await event_factory(user, timedelta(minutes=35)),
    ]
    outside = [
        await event_factory(user, timedelta(minutes=24)),
        await event_factory(user, timedelta(minutes=36)),
    ]

    report = await scheduler.trigger_check()
    assume(report.events_found == 3)
    assume(report.events_marked == 3)
    assume(report.delivered == 3)
    assume(report.errors == 0)
    assume(len(push.sent) == 3)

    for event in inside:
        stored = await store.event_get(event.event_id)
        assume(stored and stored.notification_sent)
    for event in outside:
        stored = await store.event_get(event.event_id)
        assume(stored and not stored.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_payload(
    event_factory,
    now: datetime,
    push,
    scheduler: NotificationScheduler,
    user: UserModel,
) -> None:
    event = await event_factory(user, timedelta(minutes=30), title="Dentist")

    await scheduler.trigger_check()
    assume(len(push.sent) == 1)
    endpoint, payload = push.sent[0]
    assume(endpoint == user.push_subscriptions[0].endpoint)
    assume(payload.title == "🔔 Event Reminder")
    assume(payload.body == '"Dentist" starts in 30 minutes!')
    assume(payload.icon == "/icon.svg")
    assume(payload.tag == f"event-{event.event_id}")
    assume(payload.require_interaction)
    assume(payload.data.event_id == event.event_id)
    assume(payload.data.url == "/dashboard")
    assume(
        payload
        == NotificationPayloadModel.for_event(
            dashboard_url="/dashboard",
            default_icon="/icon.svg",
            event=event,
            now=now,
        )
    )


@pytest.mark.asyncio(loop_scope="session")
async def test_marked_on_transient_failure(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user_factory,
) -> None:
    """
    Test an event is marked even if every delivery failed.

    Steps:
    1. Create a user with two subscriptions, both failing temporarily
    2. Run a sweep
    3. Check the event is marked and the subscriptions are kept
    """
    user = await user_factory("phone", "laptop")
    for subscription in user.push_subscriptions:
        push.statuses[subscription.endpoint] = DeliveryStatusEnum.TRANSIENT_FAILURE
    event = await event_factory(user, timedelta(minutes=30))

    report = await scheduler.trigger_check()
    assume(report.transient_failures == 2)
    assume(report.delivered == 0)
    assume(report.subscriptions_removed == 0)
    assume(report.events_marked == 1)

    stored_event = await store.event_get(event.event_id)
    assume(stored_event and stored_event.notification_sent)
    stored_user = await store.user_get(user.user_id)
    assume(stored_user and stored_user.push_subscriptions == user.push_subscriptions)


@pytest.mark.asyncio(loop_scope="session")
async def test_permanent_failure_removes_subscription(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user_factory,
) -> None:
    """
    Test a gone subscription is removed, and only this one.

    Steps:
    1. Create a user with three subscriptions, the second one is gone
    2. Run a sweep
    3. Check two deliveries succeeded and the gone subscription is removed
    """
    user = await user_factory("phone", "tablet", "laptop")
    phone, tablet, laptop = user.push_subscriptions
    push.statuses[tablet.endpoint] = DeliveryStatusEnum.PERMANENT_FAILURE
    event = await event_factory(user, timedelta(minutes=30))

    report = await scheduler.trigger_check()
    assume(len(push.sent) == 3)
    assume(report.delivered == 2)
    assume(report.permanent_failures == 1)
    assume(report.subscriptions_removed == 1)

    stored_user = await store.user_get(user.user_id)
    assume(stored_user and stored_user.push_subscriptions == [phone, laptop])
    stored_event = await store.event_get(event.event_id)
    assume(stored_event and stored_event.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_unexpected_error_is_transient(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user_factory,
) -> None:
    user = await user_factory("phone", "laptop")
    phone, _ = user.push_subscriptions
    push.errors.add(phone.endpoint)
    event = await event_factory(user, timedelta(minutes=30))

    report = await scheduler.trigger_check()
    assume(report.delivered == 1)
    assume(report.transient_failures == 1)
    assume(report.errors == 0)

    stored_user = await store.user_get(user.user_id)
    assume(stored_user and len(stored_user.push_subscriptions) == 2)
    stored_event = await store.event_get(event.event_id)
    assume(stored_event and stored_event.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_no_subscription(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user_factory,
) -> None:
    """
    Test an event of a user without subscription is marked, without dispatch.
    """
    user = await user_factory()
    event = await event_factory(user, timedelta(minutes=30))

    report = await scheduler.trigger_check()
    assume(not push.sent)
    assume(report.events_marked == 1)

    stored = await store.event_get(event.event_id)
    assume(stored and stored.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_no_duplicate_dispatch(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    user: UserModel,
) -> None:
    """
    Test back to back sweeps notify an event once.
    """
    await event_factory(user, timedelta(minutes=30))

    first = await scheduler.trigger_check()
    second = await scheduler.trigger_check()
    assume(first.events_found == 1)
    assume(second.events_found == 0)
    assume(len(push.sent) == 1)


@pytest.mark.asyncio(loop_scope="session")
@pytest.mark.repeat(10)  # Catch multi-threading and concurrency issues
async def test_concurrent_triggers(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    user_factory,
) -> None:
    """
    Test concurrent sweeps do not notify an event twice.

    Steps:
    1. Create an event, deliveries are slow
    2. Trigger multiple sweeps at once
    3. Check a single notification was sent

    Test is repeated 10 times to catch multi-threading and concurrency issues.
    """
    user = await user_factory("phone")
    await event_factory(user, timedelta(minutes=30))
    push.delay_sec = 0.05

    reports = await asyncio.gather(*[scheduler.trigger_check() for _ in range(3)])
    assume(len(push.sent) == 1)
    assume(sum(report.events_marked for report in reports) == 1)


@pytest.mark.asyncio(loop_scope="session")
async def test_search_error(
    monkeypatch: pytest.MonkeyPatch,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
) -> None:
    """
    Test a failing search is reported, not raised.
    """

    async def _failing_search(*args, **kwargs):  # noqa: ARG001
        raise ConnectionError("Database unreachable")

    monkeypatch.setattr(store, "event_search_due", _failing_search)

    report = await scheduler.trigger_check()
    assume(report.errors == 1)
    assume(report.events_found == 0)
    assume(not push.sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_event_error_isolated(
    event_factory,
    monkeypatch: pytest.MonkeyPatch,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user: UserModel,
    user_factory,
) -> None:
    """
    Test an error on one event does not prevent processing the others.

    Steps:
    1. Create two events, the owner of the first one cannot be loaded
    2. Run a sweep
    3. Check the second event is still notified
    """
    broken_user = await user_factory("phone")
    broken = await event_factory(broken_user, timedelta(minutes=26))
    healthy = await event_factory(user, timedelta(minutes=30))

    user_get = store.user_get

    async def _user_get(user_id):
        if user_id == broken_user.user_id:
            raise ConnectionError("Database unreachable")
        return await user_get(user_id)

    monkeypatch.setattr(store, "user_get", _user_get)

    report = await scheduler.trigger_check()
    assume(report.events_found == 2)
    assume(report.events_processed == 2)
    assume(report.errors == 1)
    assume(report.events_marked == 1)

    stored_broken = await store.event_get(broken.event_id)
    assume(stored_broken and not stored_broken.notification_sent)
    stored_healthy = await store.event_get(healthy.event_id)
    assume(stored_healthy and stored_healthy.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_dispatch_all_remove_error(
    monkeypatch: pytest.MonkeyPatch,
    push,
    store: SqliteStore,
    user_factory,
) -> None:
    """
    Test a failing subscription removal does not fail the dispatch.
    """
    user = await user_factory("phone", "laptop")
    phone, laptop = user.push_subscriptions
    push.statuses[phone.endpoint] = DeliveryStatusEnum.PERMANENT_FAILURE

    async def _failing_remove(*args, **kwargs):  # noqa: ARG001
        raise ConnectionError("Database unreachable")

    monkeypatch.setattr(store, "user_subscription_remove", _failing_remove)

    deliveries, removed = await dispatch_all(
        payload=NotificationPayloadModel.for_test(
            dashboard_url="/dashboard",
            default_icon="/icon.svg",
        ),
        push=push,
        store=store,
        user=user,
    )
    assume([delivery.endpoint for delivery in deliveries] == [phone.endpoint, laptop.endpoint])
    assume(deliveries[0].status == DeliveryStatusEnum.PERMANENT_FAILURE)
    assume(deliveries[1].status == DeliveryStatusEnum.DELIVERED)
    assume(removed == 0)


@pytest.mark.asyncio(loop_scope="session")
async def test_start_stop(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user: UserModel,
) -> None:
    """
    Test the scheduler lifecycle.

    Steps:
    1. Create a due event
    2. Start the scheduler, twice
    3. Check the first sweep runs immediately
    4. Stop the scheduler, twice
    """
    event = await event_factory(user, timedelta(minutes=30))
    assume(not scheduler.is_running)

    await scheduler.start()
    await scheduler.start()  # No-op
    assume(scheduler.is_running)

    # First sweep does not wait for the interval
    for _ in range(50):
        stored = await store.event_get(event.event_id)
        if stored and stored.notification_sent:
            break
        await asyncio.sleep(0.1)

    await scheduler.stop()
    assume(not scheduler.is_running)
    await scheduler.stop()  # No-op
    assume(not scheduler.is_running)

    stored = await store.event_get(event.event_id)
    assume(stored and stored.notification_sent)
    assume(len(push.sent) == 1)

    # Can be started again
    await scheduler.start()
    assume(scheduler.is_running)
    await scheduler.stop()
    assume(len(push.sent) == 1)


@pytest.mark.asyncio(loop_scope="session")
async def test_recurring_sweeps(
    event_factory,
    now: datetime,
    push,
    store: SqliteStore,
    user: UserModel,
) -> None:
    """
    Test sweeps keep running after the first one.

    Steps:
    1. Start the scheduler with a 1 sec interval
    2. Wait for the first sweep to notify an event
    3. Create a new event
    4. Check a later tick notifies it
    """
    scheduler = NotificationScheduler(
        clock=lambda: now,
        config=SchedulerModel(interval_sec=1),
        dashboard_url="/dashboard",
        default_icon="/icon.svg",
        push=push,
        store=store,
    )
    first = await event_factory(user, timedelta(minutes=30))

    await scheduler.start()
    try:
        assume(await _wait_notified(store, first.event_id))
        second = await event_factory(user, timedelta(minutes=31))
        assume(await _wait_notified(store, second.event_id))
    finally:
        await scheduler.stop()

    assume(len(push.sent) == 2)


@pytest.mark.asyncio(loop_scope="session")
async def test_stop_during_sweep(
    event_factory,
    push,
    scheduler: NotificationScheduler,
    store: SqliteStore,
    user: UserModel,
) -> None:
    """
    Test stopping waits for the sweep in progress, instead of cancelling it.

    Steps:
    1. Create a due event, deliveries are slow
    2. Start the scheduler and wait for the delivery to begin
    3. Stop the scheduler
    4. Check the event was delivered once and marked
    """
    event = await event_factory(user, timedelta(minutes=30))
    push.delay_sec = 1

    await scheduler.start()
    for _ in range(50):
        if push.sent:
            break
        await asyncio.sleep(0.1)
    assume(len(push.sent) == 1)

    await scheduler.stop()
    assume(not scheduler.is_running)

    stored = await store.event_get(event.event_id)
    assume(stored and stored.notification_sent)
    assume(len(push.sent) == 1)


@pytest.mark.asyncio(loop_scope="session")
async def test_started_event_skipped(
    event_factory,
    now: datetime,
    push,
    store: SqliteStore,
    user: UserModel,
) -> None:
    """
    Test an event reached after its start is not notified.

    Clock jumps forward between the search and the processing, as a very slow sweep would.
    """
    instants = iter([now])
    scheduler = NotificationScheduler(
        clock=lambda: next(instants, now + timedelta(minutes=40)),
        config=SchedulerModel(),
        dashboard_url="/dashboard",
        default_icon="/icon.svg",
        push=push,
        store=store,
    )
    event = await event_factory(user, timedelta(minutes=30))

    report = await scheduler.trigger_check()
    assume(report.events_found == 1)
    assume(report.events_skipped == 1)
    assume(report.events_marked == 0)
    assume(not push.sent)

    stored = await store.event_get(event.event_id)
    assume(stored and not stored.notification_sent)


@pytest.mark.asyncio(loop_scope="session")
async def test_sweep_latency_recorded(
    monkeypatch: pytest.MonkeyPatch,
    scheduler: NotificationScheduler,
    store: SqliteStore,
) -> None:
    """
    Test the sweep duration is recorded for empty and failed sweeps too.
    """
    recorded: list[object] = []

    def _gauge_set(metric, value) -> None:  # noqa: ARG001
        recorded.append(metric)

    monkeypatch.setattr(
        "reminder.helpers.notification_scheduler.gauge_set", _gauge_set
    )

    # Nothing due
    await scheduler.trigger_check()
    assume(recorded.count(sweep_latency) == 1)

    async def _failing_search(*args, **kwargs):  # noqa: ARG001
        raise ConnectionError("Database unreachable")

    monkeypatch.setattr(store, "event_search_due", _failing_search)

    await scheduler.trigger_check()
    assume(recorded.count(sweep_latency) == 2)


async def _wait_notified(
    store: SqliteStore,
    event_id: UUID,
    timeout_sec: float = 5,
) -> bool:
    """
    Poll the store until the event is marked as notified.
    """
    for _ in range(int(timeout_sec * 10)):
        stored = await store.event_get(event_id)
        if stored and stored.notification_sent:
            return True
        await asyncio.sleep(0.1)
    return False
