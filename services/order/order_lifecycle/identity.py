"""
Order Service — Identity

Who is calling. Tokens are verified by the user service; the workflow
only ever sees the resulting (user_id, role) pair.
"""

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
ADMIN = "admin"
SYSTEM = "system"


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM


SYSTEM_PRINCIPAL = Principal(user_id=0, role=SYSTEM)


class IdentityUnavailable(Exception):
    """The user service could not be reached."""


class IdentityClient:
    def __init__(self, user_service_url: str, timeout: float = 10.0) -> None:
        self.base_url = user_service_url.rstrip("/")
        self.timeout = timeout

    async def verify(self, token: str) -> Principal | None:
        """Returns None for an invalid or expired token."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.get(
                    f"{self.base_url}/api/auth/verify",
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as e:
                raise IdentityUnavailable(str(e)) from e

        if resp.status_code in (401, 403):
            return None
        if resp.status_code != 200:
            raise IdentityUnavailable(f"user service answered {resp.status_code}")

        body = resp.json()
        if not body.get("success"):
            return None
        user = body.get("data", {}).get("user", {})
        user_id = user.get("id", user.get("userId"))
        role = user.get("role")
        if user_id is None or role not in (CUSTOMER, ADMIN):
            logger.warning("Token verified but payload is unusable: %s", user)
            return None
        return Principal(user_id=int(user_id), role=role)
