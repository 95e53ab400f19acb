from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from .errors import ForbiddenError, UnauthorizedError

if TYPE_CHECKING:
    from dossier.evidence.resolver import EntityResolver


class RequesterRole(str, Enum):
    """
    Closed set of requester roles.

    Anything the identity layer hands us that is not one of the named roles
    parses to UNKNOWN.
    """

    ADMIN = "admin"
    MODERATOR = "moderator"
    POSTER = "poster"
    SEEKER = "seeker"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "RequesterRole":
        if isinstance(value, RequesterRole):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class DecisionStatus(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class GateReason:
    AUTH_REQUIRED = "Authentication required"
    LISTING_NOT_FOUND = "Listing not found"
    NOT_OWNER = "Access denied: not your listing"
    DENIED = "Access denied"
    SEEKER_DENIED = "Seekers cannot access evidence packs"


@dataclass(frozen=True)
class EvidenceUser:
    """Authenticated caller as seen by the access gate."""

    user_id: str
    role: RequesterRole = RequesterRole.UNKNOWN

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", RequesterRole.parse(self.role))


@dataclass(frozen=True)
class AccessDecision:
    """
    Immutable gate decision.

    rule names the branch that decided; reason is caller-facing text and is
    set on every denial.
    """

    status: DecisionStatus
    rule: str
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == DecisionStatus.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "rule": self.rule, "reason": self.reason}


def _allow(rule: str) -> AccessDecision:
    return AccessDecision(status=DecisionStatus.ALLOW, rule=rule)


def _deny(rule: str, reason: str) -> AccessDecision:
    return AccessDecision(status=DecisionStatus.DENY, rule=rule, reason=reason)


def _ownership_decision(
    user: EvidenceUser,
    listing_id: str,
    resolver: "EntityResolver",
    *,
    rule: str,
    not_owner_reason: str,
) -> AccessDecision:
    listing = resolver.fetch_listing(listing_id)
    if listing is None:
        return _deny(rule, GateReason.LISTING_NOT_FOUND)
    if listing.poster_id and listing.poster_id == user.user_id:
        return _allow(rule)
    return _deny(rule, not_owner_reason)


def can_access_evidence(
    user: Optional[EvidenceUser],
    listing_id: str,
    *,
    resolver: "EntityResolver",
) -> AccessDecision:
    """
    Decide whether `user` may request the evidence pack for `listing_id`.

    Order
    1. no user / empty id -> deny
    2. admin, moderator -> allow
    3. poster -> allow only for a listing they own
    4. seeker -> deny
    5. unknown role -> ownership check, same as poster

    Security notes:
    - Stateless; the only I/O is the ownership lookup in steps 3 and 5.
    - Roles come from the authentication layer, never from the request body.
    """

    if user is None or not user.user_id:
        return _deny("authentication", GateReason.AUTH_REQUIRED)

    role = user.role
    if role in (RequesterRole.ADMIN, RequesterRole.MODERATOR):
        return _allow("privileged-role")
    if role == RequesterRole.SEEKER:
        return _deny("seeker", GateReason.SEEKER_DENIED)
    if role == RequesterRole.POSTER:
        return _ownership_decision(
            user, listing_id, resolver, rule="poster-ownership", not_owner_reason=GateReason.NOT_OWNER
        )
    return _ownership_decision(
        user, listing_id, resolver, rule="unknown-role-ownership", not_owner_reason=GateReason.DENIED
    )


def require_evidence_access(
    user: Optional[EvidenceUser],
    listing_id: str,
    *,
    resolver: "EntityResolver",
) -> AccessDecision:
    """Like can_access_evidence, but raises on denial."""

    decision = can_access_evidence(user, listing_id, resolver=resolver)
    if decision.allowed:
        return decision
    reason = decision.reason or "Access denied"
    if decision.rule == "authentication":
        raise UnauthorizedError(reason)
    raise ForbiddenError(reason)
