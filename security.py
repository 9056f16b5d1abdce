"""Password and pincode hashing.

passlib's pbkdf2_sha256 is pure Python, so no native bcrypt backend is needed.
"""
from typing import Optional

from passlib.context import CryptContext

pwd_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_secret(secret: str) -> str:
    """Hash a plaintext password or pincode (never store plaintext)."""
    if secret is None:
        raise ValueError("secret cannot be None")
    return pwd_ctx.hash(secret)


def verify_secret(plain: Optional[str], hashed: Optional[str]) -> bool:
    """Verify plain against hashed. Returns False when either side is missing."""
    if not plain or not hashed:
        return False
    try:
        return pwd_ctx.verify(plain, hashed)
    except ValueError:
        return False
