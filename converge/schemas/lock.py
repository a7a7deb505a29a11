"""LockToken - mutual-exclusion marker over the State Store."""

from dataclasses import dataclass, replace
from typing import Any, Optional


@dataclass(frozen=True)
class LockToken:
    """
    A held lock on a State Store.

    Times are wall-clock epoch seconds so that file-backed locks can be
    compared across processes.

    Attributes:
        token_id: ULID identifying this acquisition
        owner: Free-form owner label (user@host, CI run id, ...)
        acquired_at: When the lock was acquired
        expires_at: When the lock becomes reclaimable unless renewed
        ttl_seconds: TTL used on acquisition or last renewal
        reclaimed_from: Owner of the expired lock this one replaced, if any
    """
    token_id: str
    owner: str
    acquired_at: float
    expires_at: float
    ttl_seconds: float
    reclaimed_from: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def renewed(self, now: float, ttl_seconds: Optional[float] = None) -> "LockToken":
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return replace(self, expires_at=now + ttl, ttl_seconds=ttl)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "token_id": self.token_id,
            "owner": self.owner,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
            "ttl_seconds": self.ttl_seconds,
        }
        if self.reclaimed_from is not None:
            result["reclaimed_from"] = self.reclaimed_from
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockToken":
        return cls(
            token_id=data["token_id"],
            owner=data["owner"],
            acquired_at=float(data["acquired_at"]),
            expires_at=float(data["expires_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
            reclaimed_from=data.get("reclaimed_from"),
        )
