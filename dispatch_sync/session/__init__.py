from dispatch_sync.session.customer_session import CustomerSession
from dispatch_sync.session.worker_session import WorkerSession

__all__ = ["WorkerSession", "CustomerSession"]
