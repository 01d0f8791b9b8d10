"""Registry backends."""

from typing import Any, Dict, Optional

from directory_sync.clock import Clock
from directory_sync.registry.base import TargetStore, ManualManagementViolation


def create_store(config: Dict[str, Any], source_type: str, clock: Optional[Clock] = None) -> TargetStore:
    """Create the registry store from the ``ytsaurus`` configuration section."""
    from directory_sync.registry.ytsaurus import YtsaurusStore

    store_config = dict(config['ytsaurus'])
    store_config.setdefault('error_handling', config.get('error_handling', {}))
    return YtsaurusStore(store_config, source_type=source_type, clock=clock)
