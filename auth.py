"""
Access control

Bearer tokens are verified by the identity provider (Supabase Auth); the role
comes from the local user profile.
"""
import logging
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, Header

from config import get_settings
from database import get_db
from errors import AuthenticationFailed, Forbidden
from schemas import CurrentUser
from users import get_role

logger = logging.getLogger(__name__)


class SupabaseIdentityProvider:
    def __init__(self, url: str, service_key: str, timeout: float = 5.0):
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout

    def get_user(self, token: str) -> Optional[Dict[str, Any]]:
        """Resolve a token to ``{"id", "email"}``, or ``None`` when it is rejected."""
        resp = requests.get(
            f"{self.url}/auth/v1/user",
            headers={"apikey": self.service_key, "Authorization": f"Bearer {token}"},
            timeout=self.timeout,
        )
        if resp.status_code in (401, 403):
            return None
        resp.raise_for_status()
        data = resp.json()
        if not data.get("id"):
            return None
        return {"id": data["id"], "email": data.get("email")}


def get_identity_provider() -> SupabaseIdentityProvider:
    settings = get_settings()
    return SupabaseIdentityProvider(settings.supabase_url, settings.supabase_service_key)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationFailed("No token provided")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationFailed("No token provided")
    return token


def get_current_user(
    authorization: Optional[str] = Header(None),
    db=Depends(get_db),
    provider=Depends(get_identity_provider),
) -> CurrentUser:
    token = bearer_token(authorization)
    try:
        identity = provider.get_user(token)
    except requests.RequestException:
        logger.exception("Identity provider request failed")
        raise AuthenticationFailed()
    if not identity:
        raise AuthenticationFailed("Invalid token")
    return CurrentUser(id=identity["id"], email=identity.get("email"), role=get_role(db, identity["id"]))


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden()
    return user
