"""
QR Pay backend.

Issues signed, short-lived payment QRs for orders and reconciles gateway callbacks.
"""
__version__ = "0.1.0"
