"""
Database package for QR Pay.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, create_engine, create_session_factory
from .models import Base, PaymentQrModel

__all__ = [
    "initialize_database",
    "create_engine",
    "create_session_factory",
    "Base",
    "PaymentQrModel",
]
