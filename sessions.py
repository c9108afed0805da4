import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

SESSION_COOKIE = "finlog_session"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session")


def max_age_seconds() -> int:
    return get_settings().session_max_age_days * 24 * 3600


def issue_session_token(user_id: int) -> str:
    token_data = {"u": user_id, "ts": int(time.time())}
    return _serializer().dumps(token_data)


def read_session_token(token: Optional[str]) -> Optional[int]:
    """Return the user id carried by a valid token, or None."""
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=max_age_seconds())
    except BadSignature:
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id
