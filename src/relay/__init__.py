"""
Message relay.

Modules:
- inbound: admission, dedup and sender normalization (`InboundFilter`)
- outbound: webhook relay and delayed replies (`OutboundRelay`)
- context: the owned `RelayContext` wiring every component
- handler: process entry point
"""

__all__ = [
    "inbound",
    "outbound",
    "context",
    "handler",
]
