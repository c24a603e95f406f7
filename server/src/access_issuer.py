# access_issuer.py
"""
Creates (or idempotently refreshes) access grants for paid eBook purchases.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from access_errors import AccessError, GrantNotFound, IssuanceRejected, NotGrantOwner
from access_grants import AccessGrant, AccessGrantStore, utcnow
from commerce import CommerceGateway
from fingerprint import RequestIdentity

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = 365
TOKEN_BYTES = 32


def new_access_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


@dataclass
class IssuanceReport:
    order_id: int
    granted: list[AccessGrant] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "order_id": self.order_id,
            "granted": [g.to_json() for g in self.granted],
            "failed": [{"product_id": pid, "reason": reason} for pid, reason in self.failed],
        }


class AccessIssuer:
    def __init__(self, store: AccessGrantStore, commerce: CommerceGateway, *,
                 validity_days: int = DEFAULT_VALIDITY_DAYS,
                 clock: Callable[[], dt.datetime] = utcnow):
        if validity_days <= 0:
            raise ValueError("validity_days must be positive")
        self.store = store
        self.commerce = commerce
        self.validity = dt.timedelta(days=validity_days)
        self.clock = clock

    def issue(self, user_id: int, order_id: int, product_id: int,
              identity: RequestIdentity | None = None) -> AccessGrant:
        identity = identity or RequestIdentity()

        order = self.commerce.find_order(order_id)
        if order is None:
            raise IssuanceRejected("order not found")
        if order.user_id != int(user_id):
            raise IssuanceRejected("order does not belong to user")
        if not order.is_paid:
            raise IssuanceRejected("order is not paid")

        product = self.commerce.find_product(product_id)
        if product is None:
            raise IssuanceRejected("product not found")
        if not product.is_ebook:
            raise IssuanceRejected("product is not an eBook")

        now = self.clock()
        with self.store.engine.begin() as conn:
            existing = self.store.find_active_for(user_id, product_id, conn)
            if existing is not None:
                return self._refresh(existing, identity, now, conn, order_id=order_id)
        try:
            with self.store.engine.begin() as conn:
                grant = self.store.create(
                    conn,
                    user_id=user_id,
                    order_id=order_id,
                    product_id=product_id,
                    access_token=new_access_token(),
                    token_expiry=now + self.validity,
                    origin=identity.origin,
                    device=identity.device,
                    now=now,
                )
        except IntegrityError:
            # a concurrent issuer won the unique active_key; refresh its grant
            with self.store.engine.begin() as conn:
                existing = self.store.find_active_for(user_id, product_id, conn)
                if existing is None:
                    raise
                return self._refresh(existing, identity, now, conn, order_id=order_id)

        logger.info({
            "event": "grant_issued",
            "grant_id": grant.id,
            "user_id": grant.user_id,
            "order_id": grant.order_id,
            "product_id": grant.product_id,
            "token": grant.token_hint,
            "expires": grant.token_expiry.isoformat(),
        })
        return grant

    def _refresh(self, grant: AccessGrant, identity: RequestIdentity, now: dt.datetime, conn,
                 order_id: int | None = None) -> AccessGrant:
        self.store.extend_binding(grant.id, [identity.origin], [identity.device], conn=conn)
        self.store.record_access(grant.id, now, conn=conn)
        # a repurchase in a later paid order renews the window; replays of the
        # same order never do
        renewed = order_id is not None and int(order_id) != grant.order_id
        if renewed and grant.token_expiry < now + self.validity:
            self.store.extend_expiry(grant.id, now + self.validity, now, conn=conn)
        logger.info({
            "event": "grant_refreshed",
            "grant_id": grant.id,
            "user_id": grant.user_id,
            "product_id": grant.product_id,
            "renewed": renewed,
        })
        return self.store.find_by_id(grant.id, conn)

    def issue_for_order(self, order_id: int, identity: RequestIdentity | None = None) -> IssuanceReport:
        """Issue one grant per eBook line item. Items fail independently."""
        order = self.commerce.find_order(order_id)
        if order is None:
            raise IssuanceRejected("order not found")
        if not order.is_paid:
            raise IssuanceRejected("order is not paid")

        report = IssuanceReport(order_id=order.id)
        for product_id in dict.fromkeys(order.product_ids):
            product = self.commerce.find_product(product_id)
            if product is None or product.product_type != "digital":
                continue
            try:
                report.granted.append(self.issue(order.user_id, order.id, product_id, identity))
            except AccessError as e:
                logger.error({
                    "event": "grant_issue_failed",
                    "order_id": order.id,
                    "product_id": product_id,
                    "error": e.detail,
                })
                report.failed.append((product_id, e.detail))
            except SQLAlchemyError as e:
                # str(e) carries bound parameters, tokens included
                logger.error({
                    "event": "grant_issue_failed",
                    "order_id": order.id,
                    "product_id": product_id,
                    "error": str(getattr(e, "orig", None) or type(e).__name__),
                })
                report.failed.append((product_id, "database error"))
        return report

    def rotate(self, grant_id: int, requesting_user_id: int) -> AccessGrant:
        """Replace the token of an active grant. Old links stop working."""
        grant = self.store.find_by_id(grant_id)
        if grant is None or not grant.is_active:
            raise GrantNotFound()
        if grant.user_id != int(requesting_user_id):
            raise NotGrantOwner("only the owner can rotate an access token")
        now = self.clock()
        rotated = self.store.rotate_token(grant.id, new_access_token(), now + self.validity, now)
        logger.info({"event": "grant_rotated", "grant_id": grant.id, "user_id": grant.user_id})
        return rotated

    def revoke(self, token_or_id, requesting_user_id: int, *, is_admin: bool = False) -> AccessGrant:
        """Deactivate a grant. Only its owner or an admin may do this."""
        grant = self._resolve(token_or_id)
        if grant is None:
            raise GrantNotFound()
        if grant.user_id != int(requesting_user_id) and not is_admin:
            raise NotGrantOwner("only the owner or an admin can revoke access")
        if not grant.is_active:
            return grant
        revoked = self.store.deactivate(grant.id, self.clock())
        logger.warning({
            "event": "grant_revoked",
            "grant_id": grant.id,
            "user_id": grant.user_id,
            "product_id": grant.product_id,
            "revoked_by": int(requesting_user_id),
            "by_admin": bool(is_admin and grant.user_id != int(requesting_user_id)),
        })
        return revoked

    def _resolve(self, token_or_id) -> AccessGrant | None:
        if isinstance(token_or_id, int):
            return self.store.find_by_id(token_or_id)
        value = str(token_or_id).strip()
        if value.isdigit() and len(value) < TOKEN_BYTES * 2:
            return self.store.find_by_id(int(value))
        return self.store.find_by_token(value)
