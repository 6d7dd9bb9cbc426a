"""
Relay Agent package.

Off-chain relay service for cross-chain messaging: watches a source
endpoint for message events and performs the verifier or executor action
on the destination contract exactly once per message.
"""

from .config import RelayConfig
from .dispatch_gate import DispatchGate
from .event_decoder import EventDecoder
from .message_id import compute_guid, derive_message_id
from .models import RelayRole, RelaySession, SendEvent, SourceEvent, StatusEvent
from .relayer import RelayAgent

__all__ = [
    "RelayConfig",
    "RelayAgent",
    "DispatchGate",
    "EventDecoder",
    "RelayRole",
    "RelaySession",
    "SendEvent",
    "SourceEvent",
    "StatusEvent",
    "compute_guid",
    "derive_message_id",
]
__version__ = "0.1.0"
