# access_grants.py
"""
AccessGrant model and its SQL store.

One row per (user, product) right of access. Rows are never deleted: a
revoked grant keeps its history with ``is_active = 0`` and a NULL
``active_key``. ``active_key`` carries a unique index, which is what keeps a
second active grant from being minted for the same purchase when two
issuance requests race.
"""

from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

_COLUMNS = """
    id, user_id, order_id, product_id, access_token, token_expiry,
    origin_address, device_fingerprint, allowed_origins, allowed_devices,
    origin_drifted, device_drifted, last_access_at, access_count, is_active,
    created_at
"""


def utcnow() -> dt.datetime:
    # naive UTC, matching what DATETIME columns hand back
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None, microsecond=0)


def as_datetime(value) -> dt.datetime | None:
    if value is None or isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value))


def active_key(user_id: int, product_id: int) -> str:
    return f"{int(user_id)}:{int(product_id)}"


class AllowList(tuple):
    """Insertion-ordered, duplicate-free, append-only set of strings."""

    def __new__(cls, values: Iterable[str] = ()):
        seen: list[str] = []
        for v in values:
            if v not in seen:
                seen.append(v)
        return super().__new__(cls, seen)

    @classmethod
    def from_json(cls, raw) -> "AllowList":
        if not raw:
            return cls()
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return cls(json.loads(raw))

    def to_json(self) -> str:
        return json.dumps(list(self))

    def with_added(self, *values: str) -> "AllowList":
        return AllowList((*self, *values))


@dataclass(frozen=True)
class AccessGrant:
    id: int
    user_id: int
    order_id: int
    product_id: int
    access_token: str
    token_expiry: dt.datetime
    origin_address: str
    device_fingerprint: str
    allowed_origins: AllowList
    allowed_devices: AllowList
    origin_drifted: bool = False
    device_drifted: bool = False
    last_access_at: dt.datetime | None = None
    access_count: int = 0
    is_active: bool = True
    created_at: dt.datetime | None = None

    @classmethod
    def from_row(cls, row) -> "AccessGrant":
        return cls(
            id=int(row.id),
            user_id=int(row.user_id),
            order_id=int(row.order_id),
            product_id=int(row.product_id),
            access_token=row.access_token,
            token_expiry=as_datetime(row.token_expiry),
            origin_address=row.origin_address,
            device_fingerprint=row.device_fingerprint,
            allowed_origins=AllowList.from_json(row.allowed_origins),
            allowed_devices=AllowList.from_json(row.allowed_devices),
            origin_drifted=bool(row.origin_drifted),
            device_drifted=bool(row.device_drifted),
            last_access_at=as_datetime(row.last_access_at),
            access_count=int(row.access_count or 0),
            is_active=bool(row.is_active),
            created_at=as_datetime(row.created_at),
        )

    def is_expired(self, now: dt.datetime) -> bool:
        return now > self.token_expiry

    def knows_origin(self, origin: str) -> bool:
        return origin == self.origin_address or origin in self.allowed_origins

    def knows_device(self, device: str) -> bool:
        return device == self.device_fingerprint or device in self.allowed_devices

    @property
    def token_hint(self) -> str:
        return self.access_token[:8]

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "token_expiry": self.token_expiry.isoformat(),
            "last_access_at": self.last_access_at.isoformat() if self.last_access_at else None,
            "access_count": self.access_count,
            "is_active": self.is_active,
            "origin_drifted": self.origin_drifted,
            "device_drifted": self.device_drifted,
        }


class AccessGrantStore:
    """SQL persistence for access grants.

    Methods taking ``conn`` run inside the caller's transaction; the others
    open their own with ``engine.begin()``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    # --- reads ---

    def _one(self, where: str, params: dict, conn: Connection | None = None) -> AccessGrant | None:
        sql = text(f"SELECT {_COLUMNS} FROM AccessGrants WHERE {where} LIMIT 1")
        if conn is not None:
            row = conn.execute(sql, params).first()
        else:
            with self.engine.connect() as c:
                row = c.execute(sql, params).first()
        return AccessGrant.from_row(row) if row else None

    def find_by_id(self, grant_id: int, conn: Connection | None = None) -> AccessGrant | None:
        return self._one("id = :id", {"id": int(grant_id)}, conn)

    def find_by_token(self, token: str, conn: Connection | None = None) -> AccessGrant | None:
        if not token:
            return None
        return self._one("access_token = :token", {"token": token}, conn)

    def find_active_for(self, user_id: int, product_id: int,
                        conn: Connection | None = None) -> AccessGrant | None:
        return self._one("active_key = :key", {"key": active_key(user_id, product_id)}, conn)

    def _many(self, where: str, params: dict) -> list[AccessGrant]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {_COLUMNS} FROM AccessGrants WHERE {where} ORDER BY created_at DESC, id DESC"),
                params,
            ).all()
        return [AccessGrant.from_row(r) for r in rows]

    def list_for_user(self, user_id: int) -> list[AccessGrant]:
        return self._many("user_id = :uid", {"uid": int(user_id)})

    def list_for_order(self, order_id: int) -> list[AccessGrant]:
        return self._many("order_id = :oid", {"oid": int(order_id)})

    # --- writes ---

    def create(self, conn: Connection, *, user_id: int, order_id: int, product_id: int,
               access_token: str, token_expiry: dt.datetime, origin: str, device: str,
               now: dt.datetime) -> AccessGrant:
        """Insert a new active grant. Raises IntegrityError if one is already active."""
        res = conn.execute(
            text("""
                INSERT INTO AccessGrants (
                    user_id, order_id, product_id, access_token, token_expiry,
                    origin_address, device_fingerprint, allowed_origins, allowed_devices,
                    origin_drifted, device_drifted, last_access_at, access_count,
                    is_active, active_key, created_at, updated_at
                ) VALUES (
                    :user_id, :order_id, :product_id, :token, :expiry,
                    :origin, :device, :origins, :devices,
                    0, 0, :now, 0,
                    1, :active_key, :now, :now
                )
            """),
            {
                "user_id": int(user_id),
                "order_id": int(order_id),
                "product_id": int(product_id),
                "token": access_token,
                "expiry": token_expiry,
                "origin": origin,
                "device": device,
                "origins": AllowList([origin]).to_json(),
                "devices": AllowList([device]).to_json(),
                "now": now,
                "active_key": active_key(user_id, product_id),
            },
        )
        return self.find_by_id(int(res.lastrowid), conn)

    def record_access(self, grant_id: int, at: dt.datetime, conn: Connection | None = None) -> None:
        sql = text("""
            UPDATE AccessGrants
            SET access_count = access_count + 1, last_access_at = :at, updated_at = :at
            WHERE id = :id
        """)
        params = {"id": int(grant_id), "at": at}
        if conn is not None:
            conn.execute(sql, params)
        else:
            with self.engine.begin() as c:
                c.execute(sql, params)

    def extend_binding(self, grant_id: int, origins: Iterable[str] = (), devices: Iterable[str] = (),
                       conn: Connection | None = None) -> None:
        """Merge values into the allow-lists. Existing members are never removed."""
        origins, devices = list(origins), list(devices)
        if not origins and not devices:
            return
        if conn is None:
            with self.engine.begin() as c:
                return self.extend_binding(grant_id, origins, devices, conn=c)
        row = conn.execute(
            text("SELECT allowed_origins, allowed_devices FROM AccessGrants WHERE id = :id"),
            {"id": int(grant_id)},
        ).first()
        if row is None:
            return
        merged_origins = AllowList.from_json(row.allowed_origins).with_added(*origins)
        merged_devices = AllowList.from_json(row.allowed_devices).with_added(*devices)
        conn.execute(
            text("""
                UPDATE AccessGrants
                SET allowed_origins = :origins, allowed_devices = :devices
                WHERE id = :id
            """),
            {"id": int(grant_id), "origins": merged_origins.to_json(), "devices": merged_devices.to_json()},
        )

    def mark_drift(self, grant_id: int, *, origin: bool = False, device: bool = False,
                   conn: Connection | None = None) -> None:
        sets = []
        if origin:
            sets.append("origin_drifted = 1")
        if device:
            sets.append("device_drifted = 1")
        if not sets:
            return
        sql = text(f"UPDATE AccessGrants SET {', '.join(sets)} WHERE id = :id")
        if conn is not None:
            conn.execute(sql, {"id": int(grant_id)})
        else:
            with self.engine.begin() as c:
                c.execute(sql, {"id": int(grant_id)})

    def extend_expiry(self, grant_id: int, expiry: dt.datetime, now: dt.datetime,
                      conn: Connection | None = None) -> None:
        """Move token_expiry forward; an earlier expiry is never written."""
        sql = text("""
            UPDATE AccessGrants
            SET token_expiry = :expiry, updated_at = :now
            WHERE id = :id AND is_active = 1 AND token_expiry < :expiry
        """)
        params = {"id": int(grant_id), "expiry": expiry, "now": now}
        if conn is not None:
            conn.execute(sql, params)
        else:
            with self.engine.begin() as c:
                c.execute(sql, params)

    def rotate_token(self, grant_id: int, token: str, expiry: dt.datetime, now: dt.datetime) -> AccessGrant | None:
        with self.engine.begin() as conn:
            conn.execute(
                text("""
                    UPDATE AccessGrants
                    SET access_token = :token, token_expiry = :expiry, updated_at = :now
                    WHERE id = :id AND is_active = 1
                """),
                {"id": int(grant_id), "token": token, "expiry": expiry, "now": now},
            )
            return self.find_by_id(grant_id, conn)

    def deactivate(self, grant_id: int, now: dt.datetime) -> AccessGrant | None:
        with self.engine.begin() as conn:
            conn.execute(
                text("""
                    UPDATE AccessGrants
                    SET is_active = 0, active_key = NULL, updated_at = :now
                    WHERE id = :id
                """),
                {"id": int(grant_id), "now": now},
            )
            return self.find_by_id(grant_id, conn)
