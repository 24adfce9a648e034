# Auth: password hashing, token codec, error type
from vitachat.auth.errors import AuthenticationError
from vitachat.auth.password import hash_password, verify_password
from vitachat.auth.token import TokenClaims, TokenCodec

__all__ = [
    "AuthenticationError",
    "TokenClaims",
    "TokenCodec",
    "hash_password",
    "verify_password",
]
