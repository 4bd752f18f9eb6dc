from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import ValidationError

from config import Settings
from errors import Unauthorized
from schemas import IdentityClaims


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.auth_secret, salt="identity-token")


def issue_identity_token(settings: Settings, claims: IdentityClaims) -> str:
    return _serializer(settings).dumps(claims.model_dump())


def read_identity_token(
    settings: Settings, token: Optional[str], max_age: Optional[int] = None
) -> IdentityClaims:
    if not token:
        raise Unauthorized()
    max_age = settings.auth_token_max_age_secs if max_age is None else max_age
    try:
        data = _serializer(settings).loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise Unauthorized("Session expired") from exc
    except BadSignature as exc:
        raise Unauthorized() from exc
    try:
        return IdentityClaims.model_validate(data)
    except ValidationError as exc:
        raise Unauthorized() from exc


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
