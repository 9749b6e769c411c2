"""PKCE (RFC 7636) and state generation for the authorization-code flow."""

import base64
import hashlib
import secrets
from dataclasses import dataclass

CODE_CHALLENGE_METHOD = "S256"

# Random bytes behind each value; base64url yields 43 chars for 32 bytes
VERIFIER_BYTES = 32
STATE_BYTES = 16

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


@dataclass(frozen=True)
class PKCEPair:
    """Code verifier and its S256 challenge."""

    verifier: str
    challenge: str
    method: str = CODE_CHALLENGE_METHOD


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Generate a base64url code verifier from ``num_bytes`` random bytes.

    Raises:
        ValueError: If the encoded verifier would fall outside 43-128 chars
    """
    verifier = secrets.token_urlsafe(num_bytes)
    if not MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Code verifier must be {MIN_VERIFIER_LENGTH}-{MAX_VERIFIER_LENGTH} "
            f"characters, {num_bytes} bytes gives {len(verifier)}"
        )
    return verifier


def generate_code_challenge(verifier: str) -> str:
    """Return BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair(num_bytes: int = VERIFIER_BYTES) -> PKCEPair:
    verifier = generate_code_verifier(num_bytes)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate a 128-bit base64url state nonce for CSRF protection."""
    return secrets.token_urlsafe(STATE_BYTES)
