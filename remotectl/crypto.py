# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Credential decryption for stored secrets (Fernet)."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from remotectl.errors import CredentialDecryptError, RemotectlError
from remotectl.paths import HostPaths

logger = logging.getLogger(__name__)


class SecretCipher:
    """Encrypts and decrypts credential values with a Fernet key."""

    def __init__(self, key: Union[str, bytes]):
        if isinstance(key, str):
            key = key.encode("ascii")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise RemotectlError(
                f"Invalid secret key: {e}",
                hint="Generate one with 'remotectl keygen'",
            ) from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise CredentialDecryptError("Credential is empty")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise CredentialDecryptError(
                "Credential could not be decrypted",
                hint="Was the secret key changed since the credential was stored?",
            ) from e


def generate_key() -> str:
    return Fernet.generate_key().decode("ascii")


def load_cipher(configured_key: Optional[str] = None, data_dir: Optional[Path] = None) -> SecretCipher:
    """Resolve the key: REMOTECTL_SECRET_KEY, then config, then the key file.

    The key file is created with mode 0600 on first use.
    """
    key = os.environ.get("REMOTECTL_SECRET_KEY") or configured_key
    if key:
        return SecretCipher(key)

    key_file = HostPaths.secret_key_file(data_dir)
    if key_file.exists():
        return SecretCipher(key_file.read_text().strip())

    key_file.parent.mkdir(parents=True, exist_ok=True)
    key = generate_key()
    key_file.write_text(key)
    os.chmod(key_file, 0o600)
    logger.info(f"Generated secret key at {key_file}")
    return SecretCipher(key)
