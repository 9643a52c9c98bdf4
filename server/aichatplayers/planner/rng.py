from __future__ import annotations

import hashlib
import random


def seed_for(*inputs: str) -> int:
    # Inputs are concatenated in the given order with no separator.
    digest = hashlib.sha256("".join(inputs).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def seeded_random(request_id: str, tick: int, time_ms: int) -> random.Random:
    return random.Random(seed_for(request_id, str(tick), str(time_ms)))
