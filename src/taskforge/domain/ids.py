"""Run id generation."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Final

RUN_ID_PREFIX: Final[str] = "run"
_RUN_SUFFIX_BYTES: Final[int] = 4
_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(
    r"^run_\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z_[0-9a-f]{8}$"
)

_RandBytes = Callable[[int], bytes]


def generate_run_id(*, now: datetime | None = None, randbytes: _RandBytes | None = None) -> str:
    """Return ``run_<utc timestamp>_<8 hex>``; sortable by start time."""

    moment = (now or datetime.now(UTC)).astimezone(UTC)
    stamp = moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"
    source = randbytes if randbytes is not None else secrets.token_bytes
    suffix = source(_RUN_SUFFIX_BYTES).hex()
    return f"{RUN_ID_PREFIX}_{stamp}_{suffix}"


def is_run_id(value: str) -> bool:
    return bool(_RUN_ID_RE.match(value))


__all__ = ["RUN_ID_PREFIX", "generate_run_id", "is_run_id"]
