"""
Captcha - Security Module
CAPTCHA code generation and answer checking.
"""

import secrets

CAPTCHA_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I


def generate_code(length: int = 6) -> str:
    if length < 1:
        raise ValueError("CAPTCHA length must be positive")
    return "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(length))


def check_answer(expected: str, answer: str) -> bool:
    """Case-insensitive, whitespace-tolerant comparison."""
    if answer is None:
        return False
    return secrets.compare_digest(
        expected.strip().upper().encode("utf-8"),
        answer.strip().upper().encode("utf-8"),
    )
