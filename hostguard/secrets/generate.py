"""Secret content generation.

Values produced here are written to disk by the manager and never logged.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

from hostguard.inventory.models import SecretType

ALPHANUMERIC = string.ascii_letters + string.digits
# Symbols that survive env files, URLs and shell quoting without escaping
PASSWORD_SYMBOLS = "-_.~!@#%^*+="
PASSWORD_CLASSES = (string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS)


def random_string(length: int, alphabet: str = ALPHANUMERIC) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def policy_password(length: int) -> str:
    """A password holding at least one character from every class."""
    if length < len(PASSWORD_CLASSES):
        raise ValueError(f"Password length must be at least {len(PASSWORD_CLASSES)}")
    chars = [secrets.choice(cls) for cls in PASSWORD_CLASSES]
    alphabet = "".join(PASSWORD_CLASSES)
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def derive(base: bytes, label: str, length: int) -> str:
    """Derive a credential from another secret with HMAC-SHA256 in counter mode."""
    output = ""
    counter = 0
    while len(output) < length:
        counter += 1
        message = f"{label}:{counter}".encode("utf-8")
        output += hmac.new(base, message, hashlib.sha256).hexdigest()
    return output[:length]


def satisfies_password_policy(value: str) -> bool:
    return all(any(c in cls for c in value) for cls in PASSWORD_CLASSES)


def generate(secret_type: SecretType, length: int, base: bytes | None = None, label: str = "") -> bytes:
    if secret_type == SecretType.OPAQUE:
        value = random_string(length)
    elif secret_type == SecretType.PASSWORD:
        value = policy_password(length)
    elif secret_type == SecretType.DERIVED:
        if base is None:
            raise ValueError("Derived secrets need base content")
        value = derive(base, label, length)
    else:
        raise ValueError(f"Unsupported secret type: {secret_type}")
    return value.encode("utf-8")
