"""
Offline license keys.

Format: HA-{TIER}-{P1}-{P2}
- TIER is BETA, PREMIUM or UNLIMITED (all grant the beta plan).
- P1 is 8 characters from A-Z0-9.
- P2 is 7 characters from A-Z0-9 followed by one checksum letter.

checksum = sum(ord(c) * (i + 1) for i, c in enumerate(TIER + P1 + P2[:7])) % 26,
encoded as chr(ord('A') + checksum).

The checksum catches typos and casual edits. Anyone who reads this module can
mint keys, so it is a convenience gate and not an anti-piracy boundary.
"""

import re
import secrets
from dataclasses import dataclass
from typing import Optional

KEY_PREFIX = "HA"
VALID_TIERS = ("BETA", "PREMIUM", "UNLIMITED")
KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
PART_LENGTH = 8

_PART_RE = re.compile(r"^[A-Z0-9]{8}$")


@dataclass(frozen=True)
class KeyCheck:
    """Outcome of inspecting a key. failure is None when the key is valid."""
    normalized: str
    tier: Optional[str]
    failure: Optional[str]  # format | tier | charset | checksum

    @property
    def valid(self) -> bool:
        return self.failure is None


def normalize(key: str) -> str:
    return (key or "").strip().upper()


def calculate_checksum(text: str) -> int:
    total = 0
    for i, ch in enumerate(text):
        total += ord(ch) * (i + 1)
    return total % 26


def _random_part(rng, length: int = PART_LENGTH) -> str:
    return "".join(rng.choice(KEY_ALPHABET) for _ in range(length))


def generate(tier: str = "beta", rng=None) -> str:
    """
    Mint a key for tier (beta, premium or unlimited; case-insensitive).

    rng only needs a choice() method; defaults to the secrets module.
    """
    tier_upper = normalize(tier)
    if tier_upper not in VALID_TIERS:
        raise ValueError(f"Unknown license tier: {tier}")

    source = rng or secrets
    part1 = _random_part(source)
    part2_base = _random_part(source, PART_LENGTH - 1)
    checksum = calculate_checksum(tier_upper + part1 + part2_base)
    part2 = part2_base + chr(ord("A") + checksum)
    return f"{KEY_PREFIX}-{tier_upper}-{part1}-{part2}"


def inspect(key: str) -> KeyCheck:
    normalized = normalize(key)
    parts = normalized.split("-")

    if len(parts) != 4 or parts[0] != KEY_PREFIX:
        return KeyCheck(normalized, None, "format")

    _, tier, part1, part2 = parts
    if tier not in VALID_TIERS:
        return KeyCheck(normalized, None, "tier")

    if not _PART_RE.match(part1) or not _PART_RE.match(part2):
        return KeyCheck(normalized, tier, "charset")

    expected = calculate_checksum(tier + part1 + part2[:7])
    actual = (ord(part2[7]) - ord("A") + 26) % 26
    if expected != actual:
        return KeyCheck(normalized, tier, "checksum")

    return KeyCheck(normalized, tier, None)


def validate(key: str) -> bool:
    return inspect(key).valid
