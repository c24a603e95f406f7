# fingerprint.py
"""
Weak device / network identity signals for eBook reads.

Both helpers accept a plain header mapping so they can be used outside a
request context; `request_metadata()` builds that mapping from the current
Flask request.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Mapping

from flask import request
from werkzeug.datastructures import Headers

FINGERPRINT_LENGTH = 32
UNKNOWN = "unknown"

# Trusted infrastructure first, raw socket address last.
_ORIGIN_HEADERS = ("X-Forwarded-For", "X-Real-IP", "CF-Connecting-IP")
_DEVICE_HEADERS = ("User-Agent", "Accept-Language", "Accept-Encoding", "Accept")


@dataclass(frozen=True)
class RequestMetadata:
    headers: Mapping[str, str] = field(default_factory=Headers)
    remote_addr: str | None = None

    def __post_init__(self):
        if not isinstance(self.headers, Headers):
            object.__setattr__(self, "headers", Headers(dict(self.headers)))

    def header(self, name: str) -> str:
        return (self.headers.get(name) or "").strip()


@dataclass(frozen=True)
class RequestIdentity:
    origin: str = UNKNOWN
    device: str = UNKNOWN


def request_metadata(req=None) -> RequestMetadata:
    req = req if req is not None else request
    return RequestMetadata(headers=req.headers, remote_addr=req.remote_addr)


def client_origin(meta: RequestMetadata) -> str:
    forwarded = meta.header("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in _ORIGIN_HEADERS[1:]:
        value = meta.header(name)
        if value:
            return value
    return meta.remote_addr or UNKNOWN


def fingerprint(meta: RequestMetadata) -> str:
    parts = [meta.header(h) for h in _DEVICE_HEADERS]
    parts.append(client_origin(meta))
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def identify(meta: RequestMetadata) -> RequestIdentity:
    return RequestIdentity(origin=client_origin(meta), device=fingerprint(meta))
