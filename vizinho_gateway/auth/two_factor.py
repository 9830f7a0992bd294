"""
Vizinho Virtual Gateway - TOTP Two-Factor Authentication

RFC 6238 time-based one-time passwords via pyotp. Secrets are base32
strings shared with the user's authenticator app.
"""

from typing import Optional

import pyotp


def setup_key(user_id: str) -> str:
    return f"two_factor_setup:{user_id}"


def new_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    """
    otpauth:// URI the authenticator app imports, usually as a QR code.

    Example:
        >>> provisioning_uri("JBSWY3DPEHPK3PXP", "ana@vizinho.test", "Vizinho Virtual")
        'otpauth://totp/Vizinho%20Virtual:ana%40vizinho.test?secret=JBSWY3DPEHPK3PXP&issuer=Vizinho%20Virtual'
    """
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_code(secret: Optional[str], code: Optional[str], valid_window: int) -> bool:
    """
    Check a TOTP code against a secret.

    Args:
        secret: Base32 secret; None never verifies
        code: Code typed by the user; surrounding whitespace is ignored
        valid_window: 30-second steps accepted either side of now, for clock drift

    Returns:
        True if the code matches the current time step or one inside the window
    """
    if not secret or not code:
        return False
    code = code.strip()
    if not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=valid_window)
