"""Opaque, tamper-evident continuation tokens for ListTasks.

A token records the creation sequence number of the last task returned and
a fingerprint of the filters it was issued for, signed with HMAC-SHA256.
Tasks are listed in creation order, so resuming strictly after that sequence
number never skips or repeats a task.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass

from tes_api.storage.base import TaskStorage

from .errors import InvalidArgumentError
from .models import Task

DEFAULT_PAGE_SIZE = 256
MAX_PAGE_SIZE = 2048
TOKEN_VERSION = 1


def clamp_page_size(page_size: int | None) -> int:
    if page_size is None or page_size <= 0:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


@dataclass(frozen=True)
class PageCursor:
    seq: int


class PageTokenCodec:
    def __init__(self, secret: bytes | str | None = None) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        # Without a configured secret tokens stay valid for this process only.
        self._secret = secret or secrets.token_bytes(32)

    def encode(self, cursor: PageCursor, *, project: str, name_prefix: str) -> str:
        payload = json.dumps(
            {"v": TOKEN_VERSION, "seq": cursor.seq, "f": _fingerprint(project, name_prefix)},
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def decode(self, token: str, *, project: str, name_prefix: str) -> PageCursor | None:
        """Return the cursor for `token`, or None for an empty token (first page)."""
        if not token:
            return None
        body, sep, signature = token.partition(".")
        if not sep:
            raise InvalidArgumentError("Malformed page_token")
        try:
            payload = _b64decode(body)
            expected = _b64decode(signature)
        except (binascii.Error, ValueError) as exc:
            raise InvalidArgumentError("Malformed page_token") from exc
        if not hmac.compare_digest(expected, self._sign(payload)):
            raise InvalidArgumentError("page_token signature mismatch")

        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise InvalidArgumentError("Malformed page_token") from exc
        if not isinstance(data, dict) or data.get("v") != TOKEN_VERSION:
            raise InvalidArgumentError("Unsupported page_token version")
        seq = data.get("seq")
        if not isinstance(seq, int) or isinstance(seq, bool) or seq < 0:
            raise InvalidArgumentError("Malformed page_token")
        if data.get("f") != _fingerprint(project, name_prefix):
            raise InvalidArgumentError("page_token was issued for different filters")
        return PageCursor(seq=seq)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, hashlib.sha256).digest()


def paginate(
    storage: TaskStorage,
    codec: PageTokenCodec,
    *,
    project: str = "",
    name_prefix: str = "",
    page_size: int | None = None,
    page_token: str = "",
) -> tuple[list[Task], str]:
    """One page of tasks plus the token for the next page ("" when exhausted)."""
    limit = clamp_page_size(page_size)
    cursor = codec.decode(page_token, project=project, name_prefix=name_prefix)
    records = storage.list_tasks(
        project=project,
        name_prefix=name_prefix,
        after_seq=cursor.seq if cursor else 0,
        # One extra row tells us whether another page exists.
        limit=limit + 1,
    )
    page = records[:limit]
    next_token = ""
    if len(records) > limit:
        next_token = codec.encode(
            PageCursor(seq=page[-1].seq), project=project, name_prefix=name_prefix
        )
    return [record.task for record in page], next_token


def _fingerprint(project: str, name_prefix: str) -> str:
    digest = hashlib.sha256(f"{project}\x00{name_prefix}".encode()).hexdigest()
    return digest[:16]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))
