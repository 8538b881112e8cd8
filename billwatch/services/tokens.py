"""Approval token minting and hashing."""
import hashlib
import secrets

TOKEN_BYTES = 32


class TokenGenerator:
    """Mints unguessable URL-safe approval tokens."""

    def __init__(self, nbytes: int = TOKEN_BYTES):
        self.nbytes = nbytes

    def generate(self) -> str:
        return secrets.token_urlsafe(self.nbytes)


def hash_token(token: str) -> str:
    # Only the digest is stored; the raw token lives in the client's link.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
