# access_validator.py
"""
Per-read allow/deny decision for eBook access tokens.

Checks run in a fixed order and the first failure wins:
token -> active -> expiry -> origin -> device.

An origin or device that was never seen before is either rejected (frozen
binding) or accepted and appended to the allow-list (growing binding),
depending on configuration. Drift flags only record that a read came from
something other than the issuance-time identity; they never deny.
"""

from __future__ import annotations

import datetime as dt
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Union

from access_errors import (
    AccessError,
    DeviceRejected,
    GrantExpired,
    GrantInactive,
    GrantNotFound,
    OriginRejected,
)
from access_grants import AccessGrant, AccessGrantStore, utcnow

logger = logging.getLogger(__name__)


class DenialReason(enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    ORIGIN_REJECTED = "origin_rejected"
    DEVICE_REJECTED = "device_rejected"


_ERRORS = {
    DenialReason.NOT_FOUND: GrantNotFound,
    DenialReason.INACTIVE: GrantInactive,
    DenialReason.EXPIRED: GrantExpired,
    DenialReason.ORIGIN_REJECTED: OriginRejected,
    DenialReason.DEVICE_REJECTED: DeviceRejected,
}


@dataclass(frozen=True)
class Allowed:
    grant: AccessGrant
    allowed = True


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    grant_id: int | None = None
    allowed = False

    def to_error(self) -> AccessError:
        return _ERRORS[self.reason](self.reason.value)


Decision = Union[Allowed, Denied]


class AccessValidator:
    def __init__(self, store: AccessGrantStore, *,
                 allow_origin_growth: bool = True,
                 allow_device_growth: bool = True,
                 clock: Callable[[], dt.datetime] = utcnow):
        self.store = store
        self.allow_origin_growth = allow_origin_growth
        self.allow_device_growth = allow_device_growth
        self.clock = clock

    def validate(self, access_token: str, observed_origin: str, observed_device: str) -> Decision:
        grant = self.store.find_by_token(access_token)
        if grant is None:
            return self._deny(DenialReason.NOT_FOUND)
        if not grant.is_active:
            return self._deny(DenialReason.INACTIVE, grant)

        now = self.clock()
        if grant.is_expired(now):
            return self._deny(DenialReason.EXPIRED, grant)

        new_origin = not grant.knows_origin(observed_origin)
        if new_origin and not self.allow_origin_growth:
            return self._deny(DenialReason.ORIGIN_REJECTED, grant)

        new_device = not grant.knows_device(observed_device)
        if new_device and not self.allow_device_growth:
            return self._deny(DenialReason.DEVICE_REJECTED, grant)

        origin_drift = observed_origin != grant.origin_address and not grant.origin_drifted
        device_drift = observed_device != grant.device_fingerprint and not grant.device_drifted

        # Lost updates here under concurrent reads are tolerated; none of
        # these writes can turn a later read into a denial.
        with self.store.engine.begin() as conn:
            self.store.record_access(grant.id, now, conn=conn)
            self.store.extend_binding(
                grant.id,
                [observed_origin] if new_origin else [],
                [observed_device] if new_device else [],
                conn=conn,
            )
            self.store.mark_drift(grant.id, origin=origin_drift, device=device_drift, conn=conn)
            grant = self.store.find_by_id(grant.id, conn)

        if new_origin or new_device:
            logger.info({
                "event": "grant_binding_grown",
                "grant_id": grant.id,
                "new_origin": new_origin,
                "new_device": new_device,
            })
        return Allowed(grant)

    def _deny(self, reason: DenialReason, grant: AccessGrant | None = None) -> Denied:
        logger.info({
            "event": "access_denied",
            "reason": reason.value,
            "grant_id": grant.id if grant else None,
        })
        return Denied(reason, grant.id if grant else None)

    def require(self, access_token: str, observed_origin: str, observed_device: str) -> AccessGrant:
        """Like validate() but raises the typed AccessError on denial."""
        decision = self.validate(access_token, observed_origin, observed_device)
        if isinstance(decision, Denied):
            raise decision.to_error()
        return decision.grant
