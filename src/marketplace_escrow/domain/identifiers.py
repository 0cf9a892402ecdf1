"""Human-readable codes for transactions and disputes.

Format: <PREFIX>-<YEAR>-<6 chars of A-Z0-9>, e.g. TXN-2026-4F7K2Q.
Uniqueness is enforced by a database constraint; callers regenerate on
collision.
"""

from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime

_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 6


def _generate(prefix: str, now: datetime | None = None) -> str:
    year = (now or datetime.now(UTC)).year
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{prefix}-{year}-{suffix}"


def generate_transaction_code(now: datetime | None = None) -> str:
    return _generate("TXN", now)


def generate_dispute_protocol(now: datetime | None = None) -> str:
    return _generate("DSP", now)
