"""
Shared FastAPI dependencies.

Bearer JWT authentication and access to the objects built at startup.
"""
from fastapi import Header, HTTPException, Request
from jose import jwt, JWTError

from ..services.order_store import OrderStore
from ..services.payment_qr_service import PaymentQrEngine


def get_current_user_id(request: Request, authorization: str = Header(None)) -> str:
    """
    Resolve the caller from an HS256 bearer token; the "sub" claim is the user id.

    Raises:
        HTTPException 401: Missing, malformed or invalid token
    """
    settings = request.app.state.settings
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id = claims.get("sub")
        if not user_id:
            raise ValueError("token has no subject")
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    return str(user_id)


def get_engine(request: Request) -> PaymentQrEngine:
    return request.app.state.engine


def get_order_store(request: Request) -> OrderStore:
    return request.app.state.order_store
