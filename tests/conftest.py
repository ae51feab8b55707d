"""Shared test fixtures and helpers."""

import dataclasses
from datetime import datetime, timezone
from typing import Optional

import pytest

from dispatch_sync.config import AlertConfig, AppConfig, NavigationConfig, SyncConfig, settings
from dispatch_sync.dispatch.store import ReconciliationStore
from dispatch_sync.lifecycle.state_machine import BookingLifecycle
from dispatch_sync.schemas.booking_schema import Booking, BookingStatus, Coordinate, Location
from dispatch_sync.schemas.event_schema import ActorRole
from dispatch_sync.schemas.worker_schema import VerificationStatus, WorkerProfile
from dispatch_sync.session.customer_session import CustomerSession
from dispatch_sync.session.worker_session import WorkerSession
from dispatch_sync.transport.loopback import LoopbackBackend, LoopbackChannel
from tests.fakes import RecordingAlertSink

CUSTOMER_POINT = Coordinate(latitude=-33.8731, longitude=151.2065)


@pytest.fixture
def lifecycle():
    return BookingLifecycle()


@pytest.fixture
def store():
    return ReconciliationStore(worker_id="w-a")


@pytest.fixture
def plumber_profile():
    return make_profile("w-a", {"plumber": VerificationStatus.VERIFIED})


@pytest.fixture
def fast_config():
    return make_fast_config()


def make_fast_config(
    alert_interval: float = 0.01,
    alert_timeout: float = 0.2,
    location_interval: float = 0.01,
    location_distance_m: float = 50.0,
    debounce: float = 0.01,
    poll_interval: float = 60.0,
) -> AppConfig:
    """Settings with millisecond timers so async tests finish quickly."""
    return dataclasses.replace(
        settings,
        alerts=AlertConfig(interval_sec=alert_interval, timeout_sec=alert_timeout),
        navigation=NavigationConfig(
            location_interval_sec=location_interval,
            location_distance_m=location_distance_m,
            eta_speed_kmh=30.0,
        ),
        sync=SyncConfig(refetch_debounce_sec=debounce, poll_interval_sec=poll_interval),
    )


def make_profile(
    worker_id: str = "w-a",
    verification: Optional[dict[str, VerificationStatus]] = None,
    categories: Optional[list[str]] = None,
) -> WorkerProfile:
    """Helper to create a WorkerProfile; categories default to the verification keys."""
    verification = verification if verification is not None else {
        "plumber": VerificationStatus.VERIFIED
    }
    return WorkerProfile(
        id=worker_id,
        service_categories=categories if categories is not None else list(verification),
        category_verification=verification,
    )


def make_booking(
    booking_id: str = "b1",
    status: BookingStatus = BookingStatus.PENDING,
    worker_id: Optional[str] = None,
    category: str = "plumber",
    requester_id: str = "u-1",
    coordinate: Optional[Coordinate] = CUSTOMER_POINT,
    **fields,
) -> Booking:
    """Helper to create a Booking with sensible defaults."""
    return Booking(
        id=booking_id,
        requester_id=requester_id,
        service_category=category,
        service_name=fields.pop("service_name", "Leaking tap"),
        location=Location(address="42 Wallaby Way", coordinates=coordinate),
        price=fields.pop("price", 120.0),
        status=status,
        assigned_worker_id=worker_id,
        created_at=datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc),
        **fields,
    )


def wire(booking: Booking, **overrides) -> dict:
    """Backend-shaped JSON dict for a booking, with wire-name overrides."""
    return {**booking.to_wire(), **overrides}


@pytest.fixture
def backend():
    return LoopbackBackend()


async def start_worker(
    backend: LoopbackBackend,
    worker_id: str = "w-a",
    config: Optional[AppConfig] = None,
    verification: VerificationStatus = VerificationStatus.VERIFIED,
    sink: Optional[RecordingAlertSink] = None,
    location_source=None,
    clock=None,
    channel: Optional[LoopbackChannel] = None,
) -> WorkerSession:
    """Start a plumber's session on the loopback backend."""
    session = WorkerSession(
        make_profile(worker_id, {"plumber": verification}),
        backend.api,
        channel or backend.channel(worker_id, ActorRole.WORKER),
        config=config or make_fast_config(),
        alert_sink=sink or RecordingAlertSink(),
        location_source=location_source,
        flow_clock=clock,
    )
    await session.start()
    return session


async def start_customer(
    backend: LoopbackBackend,
    user_id: str = "u-1",
    config: Optional[AppConfig] = None,
    channel: Optional[LoopbackChannel] = None,
) -> CustomerSession:
    session = CustomerSession(
        user_id,
        backend.api,
        channel or backend.channel(user_id, ActorRole.USER),
        config=config or make_fast_config(),
    )
    await session.start()
    return session


async def post_request(
    backend: LoopbackBackend,
    booking_id: str = "b1",
    category: str = "Plumber",
    requester_id: str = "u-1",
) -> Booking:
    """Create a pending booking the way a customer's app would."""
    return await backend.create_booking(
        requester_id,
        category,
        service_name="Leaking tap",
        address="42 Wallaby Way",
        coordinate=CUSTOMER_POINT,
        price=120,
        booking_id=booking_id,
    )
