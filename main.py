"""
Dispatch sync client entry point.

Connects a worker or customer session to the live booking backend
(``API_URL`` / ``CHANNEL_URL``) and runs until interrupted. Console mode
runs the offline demo instead.

Usage:
    Worker:       python main.py worker <worker_id> plumber:verified electrician:pending
    Customer:     python main.py user <user_id>
    Console mode: python main.py console
"""

import asyncio
import logging
import sys

from dispatch_sync.config import settings

logger = logging.getLogger(__name__)


def _parse_categories(specs: list[str]):
    """``plumber:verified`` -> (["plumber"], {"plumber": VerificationStatus.VERIFIED})."""
    from dispatch_sync.schemas.worker_schema import VerificationStatus

    categories: list[str] = []
    verification: dict[str, VerificationStatus] = {}
    for item in specs:
        name, _, status = item.partition(":")
        categories.append(name)
        verification[name] = VerificationStatus(status or VerificationStatus.PENDING.value)
    return categories, verification


async def _run_live(role: str, actor_id: str, category_specs: list[str]) -> None:
    """Run one session against the real backend until cancelled."""
    from dispatch_sync.schemas.event_schema import ActorRole
    from dispatch_sync.schemas.worker_schema import WorkerProfile
    from dispatch_sync.session.customer_session import CustomerSession
    from dispatch_sync.session.worker_session import WorkerSession
    from dispatch_sync.transport.channel import EventChannel
    from dispatch_sync.transport.rest_client import BookingApiClient

    api = BookingApiClient()
    if role == ActorRole.WORKER.value:
        categories, verification = _parse_categories(category_specs)
        profile = WorkerProfile(
            id=actor_id, service_categories=categories, category_verification=verification
        )
        session = WorkerSession(profile, api, EventChannel(actor_id, ActorRole.WORKER))
    else:
        session = CustomerSession(actor_id, api, EventChannel(actor_id, ActorRole.USER))

    try:
        await session.start()
        logger.info("%s connected to %s", session.session_label, settings.backend.api_url)
        await asyncio.Event().wait()
    finally:
        session.close()
        await api.close()


def _run_console_mode() -> None:
    """Start the offline console demo (no backend required)."""
    from console_demo import ConsoleDemo

    asyncio.run(ConsoleDemo().run())


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode()
    elif len(sys.argv) > 2 and sys.argv[1] in ("worker", "user"):
        try:
            asyncio.run(_run_live(sys.argv[1], sys.argv[2], sys.argv[3:]))
        except KeyboardInterrupt:
            logger.info("Shutting down")
    else:
        print(__doc__)
        sys.exit(2)
