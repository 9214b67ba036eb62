"""
auth/keys.py -- RSA key material for access token signing.

Key material is loaded once at startup into an immutable KeyPair and handed to
TokenSigner. A load failure raises AuthError(SIGNING_ERROR) from here so the
process refuses to start, rather than failing on the first sign-in.

The public half can be loaded alone (private_path=None) for services that only
verify tokens.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jws
from jose.exceptions import JOSEError

from auth.errors import AuthError, ErrorKind

logger = logging.getLogger("tokengate.keys")

ALGORITHM = "RS256"
DEFAULT_KEY_BITS = 2048


@dataclass(frozen=True)
class KeyPair:
    """Parsed RSA keys. private_key is None for a verify-only deployment."""

    public_key: jwk.Key
    private_key: jwk.Key | None = None

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None


def _construct(pem: str | bytes, label: str) -> jwk.Key:
    try:
        return jwk.construct(pem, ALGORITHM)
    except JOSEError as exc:
        raise AuthError(ErrorKind.SIGNING_ERROR, f"Could not parse {label} key: {exc}", operation="load_keys") from exc


def _read(path: str | Path, label: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise AuthError(
            ErrorKind.SIGNING_ERROR,
            f"Could not read {label} key file '{path}': {exc.strerror}",
            operation="load_keys",
        ) from exc


def key_pair_from_pem(private_pem: str | bytes | None, public_pem: str | bytes) -> KeyPair:
    """Parse PEM-encoded keys and check that the two halves belong together."""
    public_key = _construct(public_pem, "public")
    if private_pem is None:
        return KeyPair(public_key=public_key)

    private_key = _construct(private_pem, "private")
    try:
        sample = jws.sign(b"tokengate-key-check", private_key, algorithm=ALGORITHM)
        jws.verify(sample, public_key, algorithms=[ALGORITHM])
    except JOSEError as exc:
        raise AuthError(
            ErrorKind.SIGNING_ERROR,
            "Private and public keys do not form a pair.",
            operation="load_keys",
        ) from exc
    return KeyPair(public_key=public_key, private_key=private_key)


def load_key_pair(private_path: str | Path | None, public_path: str | Path) -> KeyPair:
    """Load PEM key files from disk. Raises AuthError(SIGNING_ERROR) on any failure."""
    public_pem = _read(public_path, "public")
    private_pem = _read(private_path, "private") if private_path is not None else None
    pair = key_pair_from_pem(private_pem, public_pem)
    logger.info("RSA key material loaded (public=%s, signing=%s)", public_path, pair.can_sign)
    return pair


def generate_key_pair(bits: int = DEFAULT_KEY_BITS) -> tuple[bytes, bytes]:
    """Return a fresh (private_pem, public_pem) pair. PKCS#8 / SubjectPublicKeyInfo."""
    private = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def write_key_pair(directory: str | Path, bits: int = DEFAULT_KEY_BITS, overwrite: bool = False) -> tuple[Path, Path]:
    """Generate a key pair and write private.pem / public.pem into directory.

    The private key file is created with mode 0600. Existing files are never
    replaced unless overwrite=True: rotating the key pair invalidates every
    access token in circulation.
    """
    out = Path(directory)
    out.mkdir(parents=True, exist_ok=True)
    private_path = out / "private.pem"
    public_path = out / "public.pem"
    if not overwrite and (private_path.exists() or public_path.exists()):
        raise FileExistsError(f"Key files already exist in '{out}'. Pass overwrite=True to replace them.")

    private_pem, public_pem = generate_key_pair(bits)
    private_path.write_bytes(private_pem)
    private_path.chmod(0o600)
    public_path.write_bytes(public_pem)
    return private_path, public_path


def ephemeral_key_pair(bits: int = DEFAULT_KEY_BITS) -> KeyPair:
    """In-memory key pair for development. Tokens die with the process."""
    logger.warning("WARNING: Using an ephemeral RSA key pair. Access tokens will not survive a restart.")
    private_pem, public_pem = generate_key_pair(bits)
    return key_pair_from_pem(private_pem, public_pem)
