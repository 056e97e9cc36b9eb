#!/usr/bin/env python3
"""
Secret store adapter: encrypted secret documents on disk.

An encrypted secret document is TOML:

    [variables]
    DB_HOSTNAME = "db.internal"
    DB_PASSWORD = "ENC[AES256_GCM,data:...,iv:...,tag:...,type:str]"

    [metadata]
    version = "1"
    encrypted_regex = ".*PASSWORD.*"
    last_modified = "2026-10-19T10:00:00+00:00"
    mac = "ENC[AES256_GCM,...]"

    [[metadata.recipients]]
    name = "mabel"
    recipient = "chpub1..."
    enc = "<wrapped data key>"

Only keys matching ``encrypted_regex`` hold ciphertext; the rest stay
readable so reviews can see what changed. The MAC covers every plaintext
value, so plaintext keys cannot be edited without re-encrypting either.
"""

from __future__ import annotations

import hmac
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Mapping

from .config_constants import PUBLIC_KEY_SUFFIX, SECRETS_FORMAT_VERSION
from .crypto import (
    Identity,
    compute_mac,
    decode_public_key,
    decrypt_value,
    encrypt_value,
    is_encrypted_value,
    new_data_key,
    unwrap_data_key,
    wrap_data_key,
)
from .errors import DecryptionError, DocumentNotFoundError, ParseError, RecipientError
from .file_utils import read_text, write_text_atomic
from .settings import parse_toml_string

logger = logging.getLogger(__name__)

MAC_AAD = "metadata.mac"


@dataclass(frozen=True)
class RecipientKey:
    """A public key from the keystore; ``name`` is the .pub file stem."""

    name: str
    public_key: str


@dataclass(frozen=True)
class RecipientSlot:
    name: str
    recipient: str
    enc: str


@dataclass(frozen=True)
class SecretDocument:
    variables: dict[str, str]
    encrypted_regex: str
    recipients: tuple[RecipientSlot, ...]
    mac: str
    last_modified: str = ""
    version: str = SECRETS_FORMAT_VERSION
    source: str = field(default="<memory>", compare=False)

    def is_secret_key(self, key: str) -> bool:
        return re.search(self.encrypted_regex, key) is not None

    @property
    def recipient_names(self) -> list[str]:
        return [slot.name for slot in self.recipients]

    def to_toml_dict(self) -> dict:
        return {
            "variables": dict(self.variables),
            "metadata": {
                "version": self.version,
                "encrypted_regex": self.encrypted_regex,
                "last_modified": self.last_modified,
                "mac": self.mac,
                "recipients": [
                    {"name": slot.name, "recipient": slot.recipient, "enc": slot.enc}
                    for slot in self.recipients
                ],
            },
        }


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _require_str(table: dict, key: str, source: str, where: str) -> str:
    value = table.get(key)
    if not isinstance(value, str):
        raise ParseError(f"{where}.{key} must be a string", source)
    return value


def secret_document_from_dict(data: dict, source: str = "<memory>") -> SecretDocument:
    """Validate the structure of a parsed secret document."""
    variables = data.get("variables", {})
    metadata = data.get("metadata")
    if not isinstance(variables, dict):
        raise ParseError("[variables] must be a table", source)
    if not isinstance(metadata, dict):
        raise ParseError("[metadata] table missing; not an encrypted secret document", source)

    for key, value in variables.items():
        if not isinstance(value, str):
            raise ParseError(f"variables.{key} must be a string", source)

    version = _require_str(metadata, "version", source, "metadata")
    if version != SECRETS_FORMAT_VERSION:
        raise ParseError(f"unsupported secret document version {version!r}", source)

    raw_slots = metadata.get("recipients", [])
    if not isinstance(raw_slots, list) or not raw_slots:
        raise ParseError("metadata.recipients must be a non-empty array of tables", source)

    slots = []
    for index, raw in enumerate(raw_slots):
        where = f"metadata.recipients[{index}]"
        if not isinstance(raw, dict):
            raise ParseError(f"{where} must be a table", source)
        slots.append(RecipientSlot(
            name=_require_str(raw, "name", source, where),
            recipient=_require_str(raw, "recipient", source, where),
            enc=_require_str(raw, "enc", source, where),
        ))

    encrypted_regex = _require_str(metadata, "encrypted_regex", source, "metadata")
    try:
        re.compile(encrypted_regex)
    except re.error as e:
        raise ParseError(f"metadata.encrypted_regex is invalid: {e}", source) from e

    return SecretDocument(
        variables=dict(variables),
        encrypted_regex=encrypted_regex,
        recipients=tuple(slots),
        mac=_require_str(metadata, "mac", source, "metadata"),
        last_modified=str(metadata.get("last_modified", "")),
        version=version,
        source=source,
    )


def load_secret_document(path: Path) -> SecretDocument:
    path = Path(path)
    if not path.is_file():
        raise DocumentNotFoundError(str(path), "encrypted secret document")
    data = parse_toml_string(read_text(path), str(path))
    return secret_document_from_dict(data, str(path))


def write_secret_document(path: Path, document: SecretDocument) -> None:
    """Write a secret document atomically with tomli_w."""
    import tomli_w

    # committed file; matching values are ciphertext
    write_text_atomic(path, tomli_w.dumps(document.to_toml_dict()), mode=0o644)
    logger.debug(f"Wrote secret document: {path}")


def load_keystore(keystore: Path) -> list[RecipientKey]:
    """Read every ``*.pub`` file in the keystore directory, sorted by name."""
    keystore = Path(keystore)
    if not keystore.is_dir():
        logger.debug(f"Keystore directory not present: {keystore}")
        return []

    keys = []
    for pub_file in sorted(keystore.glob(f"*{PUBLIC_KEY_SUFFIX}")):
        lines = [
            line.strip() for line in read_text(pub_file).splitlines()
            if line.strip() and not line.strip().startswith("#")
        ]
        if not lines:
            raise RecipientError(f"public key file is empty: {pub_file}")
        decode_public_key(lines[0], name=str(pub_file))
        keys.append(RecipientKey(name=pub_file.stem, public_key=lines[0]))

    logger.debug(f"Keystore {keystore}: {len(keys)} recipient(s)")
    return keys


def select_recipients(available: Iterable[RecipientKey], names: Iterable[str] = ()) -> list[RecipientKey]:
    """Pick recipients by name; no names means every available key."""
    available = list(available)
    names = list(names)
    if not names:
        selected = available
    else:
        by_name = {key.name: key for key in available}
        unknown = [name for name in names if name not in by_name]
        if unknown:
            raise RecipientError(f"recipient(s) not in keystore: {', '.join(unknown)}")
        selected = [by_name[name] for name in names]

    if not selected:
        raise RecipientError("no recipients available; add a public key to the keystore first")
    return selected


def _wrap_slots(data_key: bytes, recipients: list[RecipientKey]) -> tuple[RecipientSlot, ...]:
    return tuple(
        RecipientSlot(name=key.name, recipient=key.public_key, enc=wrap_data_key(data_key, key.public_key))
        for key in recipients
    )


def encrypt_variables(
    variables: Mapping[str, str],
    recipients: list[RecipientKey],
    encrypted_regex: str,
) -> SecretDocument:
    """
    Encrypt a plaintext variable set under a fresh data key.

    Keys matching ``encrypted_regex`` become ciphertext; all other keys are
    copied unchanged.
    """
    if not recipients:
        raise RecipientError("at least one recipient is required to encrypt")

    pattern = re.compile(encrypted_regex)
    data_key = new_data_key()

    stored: dict[str, str] = {}
    encrypted_count = 0
    for key, value in variables.items():
        if pattern.search(key):
            stored[key] = encrypt_value(value, data_key, key)
            encrypted_count += 1
        else:
            stored[key] = value

    logger.info(
        f"Encrypted {encrypted_count} of {len(stored)} variable(s) "
        f"for {len(recipients)} recipient(s): {', '.join(key.name for key in recipients)}"
    )

    return SecretDocument(
        variables=stored,
        encrypted_regex=encrypted_regex,
        recipients=_wrap_slots(data_key, recipients),
        mac=encrypt_value(compute_mac(variables, data_key), data_key, MAC_AAD),
        last_modified=_timestamp(),
    )


def open_data_key(document: SecretDocument, identity: Identity) -> bytes:
    """Unwrap the data key with the local identity, trying our own slot first."""
    own = [slot for slot in document.recipients if slot.recipient == identity.public_key]
    others = [slot for slot in document.recipients if slot.recipient != identity.public_key]

    for slot in own + others:
        try:
            data_key = unwrap_data_key(slot.enc, identity)
        except DecryptionError:
            continue
        logger.debug(f"Opened recipient slot '{slot.name}' in {document.source}")
        return data_key

    raise DecryptionError(
        f"private key {identity.public_key} cannot open any recipient slot in {document.source} "
        f"(recipients: {', '.join(document.recipient_names)})"
    )


def decrypt_document(document: SecretDocument, identity: Identity) -> dict[str, str]:
    """
    Decrypt the pattern-matching keys of ``document`` into a plaintext variable set.

    Raises:
        DecryptionError: no slot opens, a value fails authentication, a
            matching key is stored in plaintext, or the MAC does not match
    """
    data_key = open_data_key(document, identity)

    plaintext: dict[str, str] = {}
    for key, value in document.variables.items():
        if not document.is_secret_key(key):
            plaintext[key] = value
            continue
        if not is_encrypted_value(value):
            raise DecryptionError(
                f"'{key}' matches the encryption pattern but is stored in plaintext in {document.source}"
            )
        plaintext[key] = decrypt_value(value, data_key, key)

    expected = decrypt_value(document.mac, data_key, MAC_AAD)
    if not hmac.compare_digest(expected, compute_mac(plaintext, data_key)):
        raise DecryptionError(f"MAC mismatch in {document.source}; the document was modified after encryption")

    logger.debug(f"Decrypted {len(plaintext)} variable(s) from {document.source}")
    return plaintext


def update_recipients(
    document: SecretDocument,
    identity: Identity,
    recipients: list[RecipientKey],
) -> SecretDocument:
    """
    Re-wrap the existing data key for a new recipient list.

    Variable values and the MAC are carried over untouched; no value is
    decrypted.
    """
    if not recipients:
        raise RecipientError("at least one recipient is required")

    data_key = open_data_key(document, identity)
    before = set(document.recipient_names)
    after = {key.name for key in recipients}
    logger.info(
        f"Updating recipients for {document.source}: "
        f"added={sorted(after - before) or '-'} removed={sorted(before - after) or '-'}"
    )
    return replace(document, recipients=_wrap_slots(data_key, recipients), last_modified=_timestamp())

