"""Library Circulation MCP Resources Package

Resources are the read-only endpoints of the server: reservation queues,
a user's loans and notifications, and circulation statistics. Anything that
changes state is a tool.
"""

from .circulation import circulation_resources

all_resources = circulation_resources

__all__ = [
    "all_resources",
    "circulation_resources",
]
