"""Request context passed explicitly into every entry point."""

from dataclasses import dataclass
from typing import Optional

from bhasha.core.errors import AuthorizationError


@dataclass(frozen=True)
class RequestContext:
    """The acting user for an operation.

    Attributes:
        user_id: Identifier of the authenticated user
        request_id: Optional correlation id for logs
    """

    user_id: str
    request_id: Optional[str] = None

    def require_owner(self, owner_id: Optional[str], resource: str = "resource") -> None:
        """Raise AuthorizationError unless this user owns the resource."""
        if owner_id != self.user_id:
            raise AuthorizationError(f"Not authorized to modify this {resource}")

    @classmethod
    def system(cls, user_id: str) -> "RequestContext":
        """Context for background work acting on behalf of a record owner."""
        return cls(user_id=user_id, request_id="system")
