# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Tunnel bearer tokens."""

import base64
import hmac
import secrets

TOKEN_BYTES = 32
TOKEN_SECRET_PREFIX = "tunnel-token-"
TOKEN_SECRET_TYPE = "tunnel_token"


def generate_token() -> str:
    """Return a 52-character base32 token (256 bits, no padding)."""
    return base64.b32encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").rstrip("=")


def tokens_match(presented: str, stored: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


def token_secret_name(server_id: str) -> str:
    """Name of the secret record holding a server's tunnel token."""
    return f"{TOKEN_SECRET_PREFIX}{server_id}"


def server_id_from_secret_name(name: str) -> str:
    if not name.startswith(TOKEN_SECRET_PREFIX):
        return ""
    return name[len(TOKEN_SECRET_PREFIX):]
