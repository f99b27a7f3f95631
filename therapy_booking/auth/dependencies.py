from fastapi import Depends, HTTPException, Query, WebSocketException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWTError

from therapy_booking.auth import jwt_handler
from therapy_booking.database import SessionLocal
from therapy_booking.models.user import User

security = HTTPBearer()


def resolve_user_from_token(token: str) -> User:
    """The user named by a bearer token's ``sub`` claim."""
    try:
        payload = jwt_handler.decode_access_token(token)
    except PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email.strip().lower()).first()
    finally:
        db.close()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> User:
    return resolve_user_from_token(credentials.credentials)


def get_stream_user(token: str = Query()) -> User:
    """Browsers cannot set headers on a WebSocket handshake, so streams pass the token in the query."""
    try:
        return resolve_user_from_token(token)
    except HTTPException as exc:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail)) from exc


def get_current_user_id(current_user: User = Depends(get_current_user)) -> str:
    return current_user.id
