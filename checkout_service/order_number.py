"""
Checkout Service — order number generator

Format: PREFIX-YYYYMMDD-XXXX (e.g. ORD-20260125-7K2Q). Four random
characters are not collision-proof; uniqueness comes from the unique
constraint on orders.order_number and the retry loop in commands.create_order.
"""

import secrets
import string
from datetime import datetime, timezone

ALPHABET = string.ascii_uppercase + string.digits
SUFFIX_LENGTH = 4


def generate_order_number(prefix: str = "ORD", now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{prefix}-{now:%Y%m%d}-{suffix}"
