"""
Library Circulation MCP Server Package.

This package implements the circulation core of a library as an MCP server:
lending copies, taking them back, renewing loans and queueing users for books
that are all out.

Key Components:
- models: Pydantic models for data validation and serialization
- database: SQLAlchemy schema, sessions and the circulation repositories
- config: Configuration management with Pydantic v2
- notifications: Fire-and-forget notification sinks
- resources: MCP resources (read-only endpoints)
- tools: MCP tools (operations with side effects)
"""

__version__ = "0.1.0"

# Make database module available at package level
from . import database

__all__ = [
    "__version__",
    "database",
]
