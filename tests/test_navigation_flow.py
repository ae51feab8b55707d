"""Tests for the worker navigation flow: accepted -> arrived -> working -> completed."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from dispatch_sync.dispatch.errors import BookingActionError
from dispatch_sync.lifecycle.navigation import NavigationPhase
from dispatch_sync.lifecycle.state_machine import InvalidTransitionError
from dispatch_sync.schemas.booking_schema import BookingStatus
from dispatch_sync.schemas.event_schema import ActorRole, ChannelEvent
from dispatch_sync.session.worker_session import NoticeKind
from dispatch_sync.transport.rest_client import TransportError
from tests.conftest import (
    CUSTOMER_POINT,
    make_fast_config,
    post_request,
    start_customer,
    start_worker,
)
from tests.fakes import ScriptedLocationSource, offset

T0 = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def approach_route():
    return ScriptedLocationSource([
        offset(CUSTOMER_POINT, 3000),
        offset(CUSTOMER_POINT, 2000),
        offset(CUSTOMER_POINT, 1000),
    ])


async def accepted_job(backend, **worker_kwargs):
    customer = await start_customer(backend)
    worker = await start_worker(backend, **worker_kwargs)
    await post_request(backend, "b1")
    await worker.accept("b1")
    return customer, worker


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_full_job(self, backend):
        clock = FakeClock()
        customer, worker = await accepted_job(
            backend, clock=clock, location_source=approach_route(),
        )
        flow = await worker.start_navigation("b1")
        assert flow.phase == NavigationPhase.NAVIGATING
        await asyncio.sleep(0.05)

        view = customer.track("b1")
        assert view.worker_id == "w-a"
        assert view.worker_coordinate is not None
        assert view.eta_minutes is not None

        await flow.arrive()
        assert not flow.sampling
        assert backend.get("b1").status == BookingStatus.ARRIVED

        await flow.start_work()
        assert backend.get("b1").work_started_at == T0

        clock.advance(minutes=42, seconds=20)
        booking = await flow.complete(lambda: True, payment_method="cash")

        assert booking.status == BookingStatus.COMPLETED
        assert flow.phase == NavigationPhase.COMPLETED
        stored = backend.get("b1")
        assert stored.work_duration_min == 42
        assert stored.payment_method == "cash"
        assert worker.active_jobs() == []
        assert worker.navigation("b1") is None
        assert worker.notices == []
        assert customer.store.get("b1").status == BookingStatus.COMPLETED
        assert customer.track("b1").last_advisory == ChannelEvent.WORK_COMPLETED
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_declined_confirmation_keeps_working(self, backend):
        customer, worker = await accepted_job(backend)
        flow = await worker.start_navigation("b1")
        await flow.arrive()
        await flow.start_work()

        assert await flow.complete(lambda: False) is None
        assert flow.phase == NavigationPhase.WORKING
        assert backend.get("b1").status == BookingStatus.WORKING
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_async_confirmation(self, backend):
        customer, worker = await accepted_job(backend)
        flow = await worker.start_navigation("b1")
        await flow.arrive()
        await flow.start_work()

        async def confirm():
            await asyncio.sleep(0)
            return True

        await flow.complete(confirm)
        assert flow.phase == NavigationPhase.COMPLETED
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_steps_out_of_order_refused(self, backend):
        customer, worker = await accepted_job(backend)
        flow = worker.navigation("b1")
        with pytest.raises(InvalidTransitionError):
            await flow.arrive()
        assert flow.phase == NavigationPhase.IDLE
        with pytest.raises(InvalidTransitionError):
            await flow.complete(lambda: True)
        assert backend.get("b1").status == BookingStatus.ACCEPTED
        worker.close()
        customer.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_step_reverts_phase(self, backend):
        customer, worker = await accepted_job(backend, location_source=approach_route())
        flow = await worker.start_navigation("b1")
        backend.fail_next("status", TransportError("timed out"))

        with pytest.raises(BookingActionError) as info:
            await flow.arrive()

        assert info.value.retryable
        assert flow.phase == NavigationPhase.NAVIGATING
        assert flow.sampling
        assert worker.store.get("b1").status == BookingStatus.ACCEPTED
        assert not worker.store.has_optimistic("b1")

        await flow.arrive()
        assert flow.phase == NavigationPhase.ARRIVED
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_failed_start_work_clears_clock(self, backend):
        customer, worker = await accepted_job(backend)
        flow = await worker.start_navigation("b1")
        await flow.arrive()
        backend.fail_next("status", TransportError("timed out"))

        with pytest.raises(BookingActionError):
            await flow.start_work()
        assert flow.state.work_started_at is None
        assert flow.phase == NavigationPhase.ARRIVED
        worker.close()
        customer.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_requester_cancel_stops_sampling(self, backend):
        source = approach_route()
        customer, worker = await accepted_job(
            backend, config=make_fast_config(location_distance_m=0.0), location_source=source,
        )
        flow = await worker.start_navigation("b1")
        await asyncio.sleep(0.05)
        assert flow.sampling

        await customer.cancel("b1", reason="Fixed it myself")

        assert flow.phase == NavigationPhase.DISCARDED
        assert not flow.sampling
        assert [n.kind for n in worker.notices] == [NoticeKind.CANCELLED]
        assert worker.active_jobs() == []
        assert worker.navigation("b1") is None
        reads = source.reads
        await asyncio.sleep(0.05)
        assert source.reads == reads
        assert backend.get("b1").cancellation_reason == "Fixed it myself"

        with pytest.raises(BookingActionError):
            await flow.arrive()
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_degraded_channel_freezes_eta(self, backend):
        customer, worker = await accepted_job(backend)
        flow = worker.navigation("b1")
        flow.update_worker_coordinate(offset(CUSTOMER_POINT, 2200))
        eta = flow.state.eta_minutes

        flow.set_degraded(True)
        flow.update_worker_coordinate(offset(CUSTOMER_POINT, 200))
        assert flow.state.eta_minutes == eta

        flow.set_degraded(False)
        assert flow.state.eta_minutes == 1
        worker.close()
        customer.close()


class TestServerDrivenEnd:
    async def _navigating(self, backend):
        source = approach_route()
        channel = backend.channel("w-a", ActorRole.WORKER)
        customer, worker = await accepted_job(
            backend,
            config=make_fast_config(location_distance_m=0.0),
            location_source=source,
            channel=channel,
        )
        flow = await worker.start_navigation("b1")
        await asyncio.sleep(0.05)
        assert flow.sampling
        return customer, worker, channel, flow, source

    @pytest.mark.asyncio
    async def test_server_completion_stops_sampling(self, backend):
        customer, worker, channel, flow, source = await self._navigating(backend)

        await channel.deliver(
            "booking:updated", {"_id": "b1", "status": "completed", "workerId": "w-a"}
        )

        assert worker.store.get("b1").status == BookingStatus.COMPLETED
        assert not flow.sampling
        assert flow.phase == NavigationPhase.DISCARDED
        assert worker.navigation("b1") is None
        assert [n.kind for n in worker.notices] == [NoticeKind.ENDED]
        reads = source.reads
        await asyncio.sleep(0.05)
        assert source.reads == reads
        worker.close()
        customer.close()

    @pytest.mark.asyncio
    async def test_reassignment_stops_sampling(self, backend):
        customer, worker, channel, flow, source = await self._navigating(backend)

        await channel.deliver(
            "booking:updated", {"_id": "b1", "status": "accepted", "workerId": "w-z"}
        )

        assert worker.store.get("b1").assigned_worker_id == "w-z"
        assert not flow.sampling
        assert flow.closed
        assert worker.navigation("b1") is None
        assert worker.active_jobs() == []
        assert [n.kind for n in worker.notices] == [NoticeKind.REASSIGNED]
        reads = source.reads
        await asyncio.sleep(0.05)
        assert source.reads == reads
        with pytest.raises(BookingActionError):
            await flow.arrive()
        worker.close()
        customer.close()
