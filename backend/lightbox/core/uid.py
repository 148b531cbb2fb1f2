import secrets
import string

UID_ALPHABET = string.digits + string.ascii_letters
UID_LENGTH = 24


def new_uid(length: int = UID_LENGTH) -> str:
    """Random base62 identifier used for images, collections and jobs."""
    return "".join(secrets.choice(UID_ALPHABET) for _ in range(length))


def is_uid(value: str) -> bool:
    return len(value) == UID_LENGTH and all(ch in UID_ALPHABET for ch in value)
