"""
Common constructor for kernel services.

A service is handed a ``Session`` it does not own.  It reads and writes
through ``self.gateway`` and ends its work with ``flush()``; whoever opened
the session (``session_scope()``, the scheduler, a request handler, a test)
commits or rolls back.  That keeps a multi-row effect such as a bid
selection inside one transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session

from solar_kernel.db.gateway import PersistenceGateway
from solar_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """Holds the caller's session, a clock and a gateway over the session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
        self.gateway = PersistenceGateway(session)
