"""Bearer token verification."""

from __future__ import annotations

from dataclasses import dataclass

from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey
from joserfc.jwt import JWTClaimsRegistry

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.services.transitions import ROLES, is_privileged


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a request."""

    user_id: str
    role: str

    @property
    def privileged(self) -> bool:
        return is_privileged(self.role)


def _unauthorized(message: str) -> ServiceError:
    return ServiceError("UNAUTHORIZED", message, 401, {})


class TokenValidator:
    """
    Verifies HS256 bearer tokens issued by the identity collaborator.

    A valid token carries ``sub`` (the user id) and ``role`` (one of
    client, tasker, ops, admin). Expired tokens are rejected.
    """

    def __init__(self, secret: str, algorithms: list[str]) -> None:
        self._key = OctKey.import_key(secret)
        self._algorithms = list(algorithms)
        self._claims_registry = JWTClaimsRegistry(
            sub={"essential": True},
            role={"essential": True, "values": sorted(ROLES)},
        )

    def validate(self, token: str) -> Actor:
        """
        Decode and verify a token, returning the actor it names.

        Raises:
            ServiceError: UNAUTHORIZED for any signature, format or claim failure
        """
        if not token:
            raise _unauthorized("Bearer token must not be empty")

        try:
            decoded = jwt.decode(token, self._key, algorithms=self._algorithms)
        except (JoseError, ValueError) as exc:
            raise _unauthorized("Invalid bearer token") from exc

        try:
            self._claims_registry.validate(decoded.claims)
        except JoseError as exc:
            raise _unauthorized("Bearer token claims are invalid") from exc

        user_id = decoded.claims.get("sub")
        role = decoded.claims.get("role")
        if not isinstance(user_id, str) or not user_id or not isinstance(role, str):
            raise _unauthorized("Bearer token claims are invalid")

        return Actor(user_id=user_id, role=role)
