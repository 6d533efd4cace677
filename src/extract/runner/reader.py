"""
Read access to extracted data for downstream consumers.
"""

from typing import Any, Optional, Sequence

from ..core.extractor import BlockExtractor
from ..core.models import ExtractedBlock, NetworkState
from ..core.services import LocalServices
from ..core.status_store import StatusStore


def get_extractor_data(
    store: StatusStore,
    extractor: BlockExtractor,
    blocks: Sequence[ExtractedBlock],
    network_state: Optional[NetworkState] = None,
    config=None,
) -> Any:
    """
    Call extractor.get_data on a read-only connection.

    The scheduler never uses this; it exists for API servers, exports
    and other consumers of derived data.
    """
    with store.connection(read_only=True) as conn:
        services = LocalServices(
            store=store,
            config=config,
            network_state=network_state,
            conn=conn,
        )
        return extractor.get_data(services, list(blocks))
