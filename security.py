"""
HS256 tokens and password/token hashing.

Tokens are plain JWTs signed with ``JWT_SECRET``; ``exp`` is stored as
epoch seconds. Anything wrong with a token surfaces as ``ValueError``.
"""
import json
import hmac
import base64
import binascii
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import config

HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()

def _b64url_decode(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)

def _sign(signing_input: bytes, secret: str) -> str:
    return _b64url_encode(hmac.new(secret.encode(), signing_input, hashlib.sha256).digest())

def jwt_encode(payload: dict, secret: str) -> str:
    header_b64 = _b64url_encode(json.dumps(HEADER, separators=(',', ':')).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(',', ':')).encode())
    signing_input = f"{header_b64}.{payload_b64}"
    return f"{signing_input}.{_sign(signing_input.encode(), secret)}"

def jwt_decode(token: str, secret: str) -> dict:
    parts = token.split('.')
    if len(parts) != 3:
        raise ValueError("Malformed token")
    header_b64, payload_b64, sig_b64 = parts
    if not hmac.compare_digest(_sign(f"{header_b64}.{payload_b64}".encode(), secret), sig_b64):
        raise ValueError("Invalid signature")
    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Malformed token: {e}")
    if header.get("alg") != HEADER["alg"]:
        raise ValueError("Unsupported algorithm")
    exp = payload.get("exp")
    if exp is not None and datetime.now(timezone.utc).timestamp() > float(exp):
        raise ValueError("Token expired")
    return payload


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = int(expire.timestamp())
    return jwt_encode(to_encode, config.JWT_SECRET)


# Salted PBKDF2 password hashes, stored as "pbkdf2_sha256$<iterations>$<salt>$<hash>"
PBKDF2_ITERATIONS = 120_000

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"

def verify_password(password: str, hashed: str) -> bool:
    try:
        _, iterations, salt, digest = hashed.split("$")
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()

def generate_reset_token() -> Tuple[str, str]:
    """Return ``(token, sha256 hash)``; only the hash is persisted."""
    token = secrets.token_hex(20)
    return token, hash_token(token)

def generate_otp() -> Tuple[str, str]:
    otp = f"{secrets.randbelow(10 ** 6):06d}"
    return otp, hash_token(otp)
