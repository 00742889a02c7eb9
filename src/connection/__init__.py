"""
Connection lifecycle.

- events: typed protocol events
- client: `ProtocolClient` boundary to the messaging-protocol library
- bridge: websocket implementation of the boundary
- supervisor: `ConnectionSupervisor` state machine
"""

__all__ = ["events", "client", "bridge", "supervisor", "qr"]
