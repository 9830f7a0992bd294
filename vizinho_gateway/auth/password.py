"""
Vizinho Virtual Gateway - Password Hashing

bcrypt hashing for account passwords. The work factor comes from
settings (BCRYPT_WORK_FACTOR); hashes created with a lower factor are
upgraded on the next successful login.

Security:
- Never log or expose plaintext passwords
- bcrypt salts every hash
"""

import bcrypt

# 2^12 rounds; tests pass a lower factor explicitly
DEFAULT_WORK_FACTOR = 12


def hash_password(password: str, work_factor: int = DEFAULT_WORK_FACTOR) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plaintext password
        work_factor: log2 of the bcrypt rounds

    Returns:
        The modular-crypt hash string, salt included

    Example:
        >>> hash_password("Morador2024").startswith("$2b$")
        True
    """
    salt = bcrypt.gensalt(rounds=work_factor)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Constant-time check of a password against a bcrypt hash.

    Args:
        plain_password: Password as typed by the user
        hashed_password: Stored bcrypt hash

    Returns:
        True on a match; False on a mismatch or a malformed hash

    Example:
        >>> stored = hash_password("Morador2024")
        >>> verify_password("Morador2024", stored), verify_password("wrong", stored)
        (True, False)
    """
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        # Malformed hash
        return False


def needs_rehash(hashed_password: str, target_work_factor: int = DEFAULT_WORK_FACTOR) -> bool:
    """
    Check whether a stored hash should be upgraded.

    Args:
        hashed_password: Stored bcrypt hash
        target_work_factor: Work factor currently configured

    Returns:
        True if the hash used a lower work factor or is not bcrypt at all

    Example:
        >>> needs_rehash(hash_password("Morador2024", 4), target_work_factor=12)
        True
    """
    try:
        # $2b$12$<salt+hash>
        work_factor = int(hashed_password.split("$")[2])
    except (ValueError, IndexError):
        return True
    return work_factor < target_work_factor
