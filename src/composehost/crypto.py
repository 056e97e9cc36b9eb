"""
Encryption primitives for secret documents.

Each secret document has a random 32-byte data key. Values are encrypted with
AES-256-GCM under that key, with the variable name as associated data so a
ciphertext cannot be moved to another key. The data key is wrapped once per
recipient: an ephemeral X25519 key agreement with the recipient public key,
HKDF-SHA256 to derive a wrapping key, then AES-256-GCM.

Identities (private keys) live in a non-versioned file:

    # created: 2026-10-19T10:00:00+00:00
    # public key: chpub1...
    CHSEC1...
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import secrets
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config_constants import ENCRYPTED_VALUE_PREFIX, PRIVATE_KEY_PREFIX, PUBLIC_KEY_PREFIX
from .errors import DecryptionError, KeyNotFoundError, RecipientError

DATA_KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
X25519_KEY_SIZE = 32

_WRAP_INFO = b"composehost/v1 data key"

ENCRYPTED_VALUE_PATTERN = re.compile(
    r"^ENC\[AES256_GCM,data:(?P<data>[A-Za-z0-9+/=]*),iv:(?P<iv>[A-Za-z0-9+/=]+),"
    r"tag:(?P<tag>[A-Za-z0-9+/=]+),type:(?P<type>str)\]$"
)


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64url(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def encode_public_key(key: X25519PublicKey) -> str:
    return PUBLIC_KEY_PREFIX + _b64url(key.public_bytes_raw())


def decode_public_key(text: str, name: str = "recipient") -> X25519PublicKey:
    text = text.strip()
    if not text.startswith(PUBLIC_KEY_PREFIX):
        raise RecipientError(f"{name}: public key must start with '{PUBLIC_KEY_PREFIX}'")
    try:
        raw = _unb64url(text[len(PUBLIC_KEY_PREFIX):])
    except ValueError as e:
        raise RecipientError(f"{name}: public key is not valid base64") from e
    if len(raw) != X25519_KEY_SIZE:
        raise RecipientError(f"{name}: public key must be {X25519_KEY_SIZE} bytes, got {len(raw)}")
    return X25519PublicKey.from_public_bytes(raw)


@dataclass(frozen=True)
class Identity:
    """A local private key."""

    private_key: X25519PrivateKey

    @property
    def public_key(self) -> str:
        return encode_public_key(self.private_key.public_key())

    def secret_text(self) -> str:
        return PRIVATE_KEY_PREFIX + _b64url(self.private_key.private_bytes_raw())


def generate_identity() -> Identity:
    return Identity(X25519PrivateKey.generate())


def parse_identity(text: str, source: str = "<string>") -> Identity:
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if not line.startswith(PRIVATE_KEY_PREFIX):
            raise KeyNotFoundError(f"{source}: private key must start with '{PRIVATE_KEY_PREFIX}'")
        try:
            raw = _unb64url(line[len(PRIVATE_KEY_PREFIX):])
        except ValueError as e:
            raise KeyNotFoundError(f"{source}: private key is not valid base64") from e
        if len(raw) != X25519_KEY_SIZE:
            raise KeyNotFoundError(f"{source}: private key must be {X25519_KEY_SIZE} bytes, got {len(raw)}")
        return Identity(X25519PrivateKey.from_private_bytes(raw))
    raise KeyNotFoundError(f"{source}: no private key found in file")


def load_identity(path: Path) -> Identity:
    """Load the local private key; missing or unreadable files raise KeyNotFoundError."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise KeyNotFoundError(
            f"private key not found at {path}. "
            "Run 'composehost keygen' or set COMPOSEHOST_KEY_FILE."
        )
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise KeyNotFoundError(f"cannot read private key {path}: {e}") from e
    return parse_identity(text, str(path))


def format_identity(identity: Identity) -> str:
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    return (
        f"# created: {created}\n"
        f"# public key: {identity.public_key}\n"
        f"{identity.secret_text()}\n"
    )


def write_identity(path: Path, identity: Identity, force: bool = False) -> Path:
    """Write an identity file with mode 600. Refuses to overwrite unless forced."""
    path = Path(path).expanduser()
    if path.exists() and not force:
        raise FileExistsError(f"private key already exists at {path} (use --force to replace it)")
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(format_identity(identity))
    path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return path


def new_data_key() -> bytes:
    return secrets.token_bytes(DATA_KEY_SIZE)


def _derive_wrap_key(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=DATA_KEY_SIZE,
        salt=ephemeral_pub + recipient_pub,
        info=_WRAP_INFO,
    )
    return hkdf.derive(shared)


def wrap_data_key(data_key: bytes, recipient: str) -> str:
    """Wrap the data key for one recipient public key. Returns base64 text."""
    recipient_key = decode_public_key(recipient)
    ephemeral = X25519PrivateKey.generate()
    ephemeral_pub = ephemeral.public_key().public_bytes_raw()
    recipient_pub = recipient_key.public_bytes_raw()

    wrap_key = _derive_wrap_key(ephemeral.exchange(recipient_key), ephemeral_pub, recipient_pub)
    nonce = secrets.token_bytes(NONCE_SIZE)
    wrapped = AESGCM(wrap_key).encrypt(nonce, data_key, recipient_pub)
    return _b64(ephemeral_pub + nonce + wrapped)


def unwrap_data_key(blob: str, identity: Identity) -> bytes:
    """Open one recipient slot. Raises DecryptionError when the slot is not ours."""
    try:
        raw = base64.b64decode(blob, validate=True)
    except ValueError as e:
        raise DecryptionError("recipient slot is not valid base64") from e
    if len(raw) < X25519_KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("recipient slot too short")

    ephemeral_pub = raw[:X25519_KEY_SIZE]
    nonce = raw[X25519_KEY_SIZE:X25519_KEY_SIZE + NONCE_SIZE]
    wrapped = raw[X25519_KEY_SIZE + NONCE_SIZE:]
    recipient_pub = identity.private_key.public_key().public_bytes_raw()

    try:
        shared = identity.private_key.exchange(X25519PublicKey.from_public_bytes(ephemeral_pub))
    except ValueError as e:
        raise DecryptionError("recipient slot has an invalid ephemeral key") from e
    wrap_key = _derive_wrap_key(shared, ephemeral_pub, recipient_pub)
    try:
        return AESGCM(wrap_key).decrypt(nonce, wrapped, recipient_pub)
    except InvalidTag as e:
        raise DecryptionError("private key cannot open this recipient slot") from e


def is_encrypted_value(value: str) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_VALUE_PREFIX)


def encrypt_value(plaintext: str, data_key: bytes, aad: str) -> str:
    nonce = secrets.token_bytes(NONCE_SIZE)
    sealed = AESGCM(data_key).encrypt(nonce, plaintext.encode("utf-8"), aad.encode("utf-8"))
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return f"ENC[AES256_GCM,data:{_b64(ciphertext)},iv:{_b64(nonce)},tag:{_b64(tag)},type:str]"


def decrypt_value(token: str, data_key: bytes, aad: str) -> str:
    match = ENCRYPTED_VALUE_PATTERN.match(token)
    if not match:
        raise DecryptionError(f"malformed ciphertext for '{aad}'")

    try:
        ciphertext = base64.b64decode(match.group("data"), validate=True)
        nonce = base64.b64decode(match.group("iv"), validate=True)
        tag = base64.b64decode(match.group("tag"), validate=True)
    except ValueError as e:
        raise DecryptionError(f"malformed ciphertext for '{aad}'") from e
    try:
        plaintext = AESGCM(data_key).decrypt(nonce, ciphertext + tag, aad.encode("utf-8"))
    except InvalidTag as e:
        raise DecryptionError(f"ciphertext for '{aad}' failed authentication") from e
    except ValueError as e:
        raise DecryptionError(f"malformed ciphertext for '{aad}': {e}") from e
    return plaintext.decode("utf-8")


def compute_mac(variables: Mapping[str, str], data_key: bytes) -> str:
    """HMAC-SHA256 over every plaintext key/value pair, in sorted key order."""
    digest = hmac.new(data_key, digestmod=hashlib.sha256)
    for key in sorted(variables):
        digest.update(key.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(variables[key].encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()
