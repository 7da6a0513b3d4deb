import base64
import hashlib
import json
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")


def _build_fernet() -> Fernet:
    digest = hashlib.sha256(SECRET_KEY.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


fernet = _build_fernet()


def seal_cookie_payload(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"))
    return fernet.encrypt(raw.encode("utf-8")).decode("utf-8")


def open_cookie_payload(token: str) -> dict[str, Any]:
    try:
        raw = fernet.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Invalid cookie token") from exc
    loaded = json.loads(raw)
    if not isinstance(loaded, dict):
        raise ValueError("Cookie payload must be an object")
    return loaded
