from __future__ import annotations

import string
from typing import Protocol, Sequence

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 8


class RandomSource(Protocol):
    def choice(self, seq: Sequence[str]) -> str: ...


def normalize_question_key(text: str) -> str:
    """Canonical form of a question used as the duplicate-index key."""
    return text.strip().lower()


def generate_invite_code(rng: RandomSource, length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(rng.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def canonicalize_invite_code(raw_code: str | None) -> str:
    """Normalize user-provided invite code to the stored format."""
    code = (raw_code or "").strip()
    if not code:
        raise ValueError("Invite code cannot be empty.")
    return code
