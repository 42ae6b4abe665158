"""
Tranche Kernel

Shared infrastructure for the tranche batch engine:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with context propagation
- SQLAlchemy declarative base, engine and session scopes
- Injectable clock
- Canonical hashing and locked sequence counters
"""

__version__ = "0.1.0"
