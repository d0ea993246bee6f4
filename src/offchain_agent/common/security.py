"""
Утилиты безопасности и авторизации.

Назначение:
- проверка X-API-Key для сервисных эндпоинтов (SERVICE_API_KEYS)
- проверка подписи push-доставки брокера (JWT HS256, claim body = sha256 тела)
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any

import jwt

from .config import get_settings, parse_csv
from .errors import UnauthorizedError


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str
    claims: dict[str, Any] | None = None


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def require_api_key(x_api_key: str | None) -> AuthContext:
    """
    Проверка X-API-Key.
    Пустой SERVICE_API_KEYS в dev = авторизация выключена; в prod так нельзя.
    """
    s = get_settings()
    keys = set(parse_csv(s.service_api_keys))
    if not keys:
        if _is_prod_env(s.app_env):
            raise UnauthorizedError("SERVICE_API_KEYS не задан в prod")
        return AuthContext(subject="anonymous", auth_type="none")

    if not x_api_key:
        raise UnauthorizedError("Не передан X-API-Key")
    for key in keys:
        if hmac.compare_digest(x_api_key, key):
            return AuthContext(subject="service", auth_type="api_key")
    raise UnauthorizedError("Неверный X-API-Key")


# =============================================================================
# ПОДПИСЬ PUSH-ДОСТАВКИ
# =============================================================================
def body_digest(body: bytes) -> str:
    """base64url(sha256(body)) без паддинга - значение claim "body"."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


def sign_push_body(body: bytes, *, key: str, issuer: str, url: str | None = None, ttl_sec: int = 300) -> str:
    """
    Подписать тело так же, как это делает брокер (dev-стенд и тесты).
    """
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": issuer,
        "iat": now,
        "nbf": now,
        "exp": now + ttl_sec,
        "body": body_digest(body),
    }
    if url:
        claims["sub"] = url
    return jwt.encode(claims, key, algorithm="HS256")


def verify_push_signature(body: bytes, signature: str | None, *, key: str | None, issuer: str) -> dict[str, Any]:
    """
    Проверка заголовка подписи push-доставки.

    - подпись - JWT HS256 с общим ключом
    - iss должен совпадать с PUSH_SIGNING_ISSUER
    - claim body должен совпадать с base64url(sha256(тело запроса))
    """
    if not key:
        raise UnauthorizedError("PUSH_SIGNING_KEY не задан")
    if not signature:
        raise UnauthorizedError("Нет подписи push-доставки")
    try:
        claims = jwt.decode(
            signature,
            key,
            algorithms=["HS256"],
            issuer=issuer,
            options={"require": ["iss", "exp", "body"], "verify_aud": False},
            leeway=5,
        )
    except jwt.PyJWTError as e:
        raise UnauthorizedError("Подпись push-доставки невалидна", details={"reason": str(e)[:200]}) from e

    expected = body_digest(body)
    got = str(claims.get("body") or "").rstrip("=")
    if not hmac.compare_digest(got, expected):
        raise UnauthorizedError("Хеш тела не совпадает с подписью")
    return claims
