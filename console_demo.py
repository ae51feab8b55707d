"""
Offline console demo: drives worker and customer sessions against the
in-process loopback backend. No network, no API keys.

Scenarios:
    race        two eligible workers accept the same booking at once
    filter      a worker with an unverified category never sees the request
    navigation  accept, drive over, arrive, work, complete
    cancel      the customer cancels while the worker is driving

Usage:
    python console_demo.py
    python console_demo.py --scenario race
"""

import argparse
import asyncio
import dataclasses
import sys
from typing import Optional

from dispatch_sync.config import AlertConfig, AppConfig, NavigationConfig, SyncConfig, settings
from dispatch_sync.dispatch.errors import BookingActionError
from dispatch_sync.schemas.booking_schema import Booking, Coordinate
from dispatch_sync.schemas.event_schema import ActorRole
from dispatch_sync.schemas.worker_schema import VerificationStatus, WorkerProfile
from dispatch_sync.session.customer_session import CustomerSession
from dispatch_sync.session.worker_session import WorkerSession
from dispatch_sync.transport.loopback import LoopbackBackend

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

CUSTOMER_HOME = Coordinate(latitude=-33.8731, longitude=151.2065)


def demo_config() -> AppConfig:
    """Settings with demo-speed timers."""
    return dataclasses.replace(
        settings,
        alerts=AlertConfig(interval_sec=0.25, timeout_sec=2.0),
        navigation=NavigationConfig(location_interval_sec=0.1, location_distance_m=50.0),
        sync=SyncConfig(refetch_debounce_sec=0.05, poll_interval_sec=30.0),
    )


class ConsoleAlertSink:
    """Prints the alert instead of ringing."""

    def __init__(self, who: str) -> None:
        self.who = who

    def beep(self) -> None:
        print(f"{DIM}    [{self.who}] *beep*{RESET}")

    def vibrate(self) -> None:
        print(f"{DIM}    [{self.who}] *bzzz*{RESET}")

    def cancel_vibration(self) -> None:
        pass

    def show_banner(self, booking: Booking) -> None:
        print(
            f"{YELLOW}{BOLD}  [{self.who}] NEW REQUEST{RESET}{YELLOW} "
            f"{booking.service_name} at {booking.location.address} (${booking.price:.0f}){RESET}"
        )

    def hide_banner(self, booking_id: str) -> None:
        print(f"{DIM}    [{self.who}] banner for {booking_id} hidden{RESET}")


class RouteLocationSource:
    """Walks a straight line from ``start`` to ``end`` one step per read."""

    def __init__(self, start: Coordinate, end: Coordinate, steps: int = 8) -> None:
        self._points = [
            Coordinate(
                latitude=start.latitude + (end.latitude - start.latitude) * i / steps,
                longitude=start.longitude + (end.longitude - start.longitude) * i / steps,
            )
            for i in range(steps + 1)
        ]
        self._index = 0

    async def current(self) -> Optional[Coordinate]:
        point = self._points[min(self._index, len(self._points) - 1)]
        self._index += 1
        return point


def plumber(worker_id: str, verification: VerificationStatus) -> WorkerProfile:
    return WorkerProfile(
        id=worker_id,
        name=worker_id.title(),
        service_categories=["plumber"],
        category_verification={"plumber": verification},
    )


class ConsoleDemo:
    """Scripted multi-session walkthroughs."""

    def __init__(self) -> None:
        self.config = demo_config()
        self.backend = LoopbackBackend()
        self.sessions: list = []

    def say(self, who: str, text: str) -> None:
        print(f"{GREEN}{BOLD}[{who}]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    async def _worker(
        self,
        worker_id: str,
        verification: VerificationStatus = VerificationStatus.VERIFIED,
        location_source: Optional[RouteLocationSource] = None,
    ) -> WorkerSession:
        session = WorkerSession(
            plumber(worker_id, verification),
            self.backend.api,
            self.backend.channel(worker_id, ActorRole.WORKER),
            config=self.config,
            alert_sink=ConsoleAlertSink(worker_id),
            location_source=location_source,
        )
        await session.start()
        self.sessions.append(session)
        return session

    async def _customer(self, user_id: str) -> CustomerSession:
        session = CustomerSession(
            user_id, self.backend.api, self.backend.channel(user_id, ActorRole.USER),
            config=self.config,
        )
        await session.start()
        self.sessions.append(session)
        return session

    async def _new_request(self, customer: CustomerSession) -> Booking:
        booking = await self.backend.create_booking(
            customer.user_id,
            "Plumber",
            service_name="Leaking kitchen tap",
            address="42 Wallaby Way, Sydney",
            coordinate=CUSTOMER_HOME,
            price=120,
        )
        await customer.refresh()
        self.say("customer", f"Requested {booking.service_name} ({booking.id})")
        return booking

    def close(self) -> None:
        for session in self.sessions:
            session.close()

    # ------------------------------------------------------------------ #
    # Scenarios
    # ------------------------------------------------------------------ #

    async def race(self) -> None:
        customer = await self._customer("user-1")
        alice = await self._worker("alice")
        bob = await self._worker("bob")
        booking = await self._new_request(customer)

        results = await asyncio.gather(
            alice.accept(booking.id), bob.accept(booking.id), return_exceptions=True
        )
        for name, result in zip(("alice", "bob"), results):
            if isinstance(result, BookingActionError):
                print(f"{RED}[{name}] {result}{RESET}")
            else:
                self.say(name, f"Got the job: {result.status.value}")
        self.system_log(f"alice pending: {[b.id for b in alice.pending_requests()]}")
        self.system_log(f"bob pending:   {[b.id for b in bob.pending_requests()]}")
        self.system_log(f"bob notices:   {[n.message for n in bob.notices]}")
        self.system_log(f"customer sees: {customer.store.get(booking.id).status.value}")

    async def filter(self) -> None:
        customer = await self._customer("user-2")
        carol = await self._worker("carol", VerificationStatus.PENDING)
        booking = await self._new_request(customer)
        self.system_log(
            f"carol (plumber verification pending) sees {len(carol.pending_requests())} "
            f"requests; alert active: {carol.alerts.active is not None}"
        )
        self.system_log(f"{booking.id} stays {self.backend.get(booking.id).status.value}")

    async def navigation(self) -> None:
        customer = await self._customer("user-3")
        start = Coordinate(latitude=-33.8900, longitude=151.1900)
        dave = await self._worker("dave", location_source=RouteLocationSource(start, CUSTOMER_HOME))
        booking = await self._new_request(customer)

        await dave.accept(booking.id)
        flow = await dave.start_navigation(booking.id)
        self.say("dave", "On my way")
        await asyncio.sleep(0.5)
        view = customer.track(booking.id)
        self.system_log(
            f"customer tracking: {view.distance_km or 0:.2f} km away, ETA {view.eta_minutes} min, "
            f"last update {view.last_advisory.value if view.last_advisory else '-'}"
        )
        await flow.arrive()
        self.say("dave", "Arrived")
        await flow.start_work()
        self.say("dave", "Working")
        await flow.complete(lambda: True, payment_method="cash")
        self.say("dave", f"Done. Phase: {flow.phase.value}")
        self.system_log(f"customer sees: {customer.store.get(booking.id).status.value}")
        self.system_log(f"location samples sent: {flow.samples_sent}")

    async def cancel(self) -> None:
        customer = await self._customer("user-4")
        start = Coordinate(latitude=-33.9000, longitude=151.1800)
        erin = await self._worker("erin", location_source=RouteLocationSource(start, CUSTOMER_HOME))
        booking = await self._new_request(customer)

        await erin.accept(booking.id)
        flow = await erin.start_navigation(booking.id)
        await asyncio.sleep(0.25)
        await customer.cancel(booking.id, reason="Fixed it myself")
        self.say("customer", "Cancelled")
        await asyncio.sleep(0.2)
        self.system_log(f"erin's navigation: {flow.phase.value}, sampling: {flow.sampling}")
        self.system_log(f"erin notices: {[n.message for n in erin.notices]}")

    SCENARIOS = ("race", "filter", "navigation", "cancel")

    async def run(self, scenario: Optional[str] = None) -> None:
        names = [scenario] if scenario else list(self.SCENARIOS)
        for name in names:
            if name not in self.SCENARIOS:
                print(f"{RED}Unknown scenario: {name}{RESET}")
                return
            print()
            print(f"{BOLD}{'=' * 60}{RESET}")
            print(f"{BOLD}  DISPATCH SYNC - Scenario: {name}{RESET}")
            print(f"{BOLD}{'=' * 60}{RESET}")
            try:
                await getattr(self, name)()
            finally:
                self.close()
                self.sessions.clear()
                self.backend = LoopbackBackend()
        print(f"\n{BOLD}{'=' * 60}{RESET}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispatch sync console demo")
    parser.add_argument("--scenario", choices=ConsoleDemo.SCENARIOS, default=None)
    args = parser.parse_args()
    try:
        asyncio.run(ConsoleDemo().run(args.scenario))
    except KeyboardInterrupt:
        print(f"\n{DIM}Demo interrupted.{RESET}")
        sys.exit(0)


if __name__ == "__main__":
    main()
