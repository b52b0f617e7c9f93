"""Watch channel lifecycle.

## Lifecycle

1. Created by `ChannelSetupService.connect_account` (subscribe + register)
2. Cursor advanced by the delta sync engine
3. Expiration rotated by `ChannelRenewer`
4. Deleted when the provider reports the resource gone (together with its
   events), or on disconnect
"""

from calendar_sync.channels.registry import ChannelRecord, ChannelRegistry, SyncLease
from calendar_sync.channels.renewer import ChannelRenewer, RenewalReport
from calendar_sync.channels.setup import ChannelSetupService, DisconnectReport

__all__ = [
    "ChannelRecord",
    "ChannelRegistry",
    "ChannelRenewer",
    "ChannelSetupService",
    "DisconnectReport",
    "RenewalReport",
    "SyncLease",
]
