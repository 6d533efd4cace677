"""
Service bundles handed to extractors.

Extractors never see the scheduler itself; they receive one of these
bundles with the handle they are allowed to use.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .models import NetworkState

if TYPE_CHECKING:
    from .status_store import StatusStore
    from ..runner.scheduler import SchedulerConfig


@dataclass
class Services:
    """
    Process-wide collaborators.

    Attributes:
        store: Status store (owns the connection pool)
        config: Scheduler configuration
        network_state: Chain snapshot taken at startup
    """
    store: "StatusStore"
    config: "SchedulerConfig"
    network_state: NetworkState


@dataclass
class TransactionalServices(Services):
    """Services plus a write connection inside an open transaction."""
    tx: Any = None


@dataclass
class LocalServices(Services):
    """Services plus a read-only connection."""
    conn: Any = None
