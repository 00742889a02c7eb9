"""
Common utilities for chat-relay.

Modules:
- config: environment-driven `Settings`
- log: loguru sink setup
- identity: sender/target identifier normalization
- dedup: bounded FIFO message-id window
- webhook: async webhook client
"""

__all__ = [
    "config",
    "dedup",
    "identity",
    "log",
    "webhook",
]
