import time
from typing import Optional

from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="budget-session")


def issue_session_token(user_id: int) -> str:
    payload = {"u": user_id, "iat": int(time.time())}
    return _serializer().dumps(payload)


def read_session_token(token: str) -> Optional[int]:
    """User id carried by a session cookie, or None if it is invalid or stale."""
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadData:
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id
