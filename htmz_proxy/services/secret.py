"""
Secret manager - loads or generates the shared HMAC secret.

The secret is 32 random bytes, hex-encoded, persisted with owner-only
permissions. It only rotates when the file is deleted and the process restarts.
"""
from __future__ import annotations

import os
import secrets
from pathlib import Path

from htmz_proxy.errors import InternalError
from htmz_proxy.logging import get_logger
from htmz_proxy.state import app_state

logger = get_logger(__name__)

SECRET_BYTES = 32
SECRET_FILE_MODE = 0o600


def generate_secret() -> str:
    """Generate a new secret: 256 bits from the OS CSPRNG, as 64 hex chars."""
    return secrets.token_hex(SECRET_BYTES)


def _write_secret(path: Path, secret: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # open() only applies the mode when it creates the file; chmod covers an existing one
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECRET_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(secret)
    os.chmod(path, SECRET_FILE_MODE)


def load_or_create_secret(path: str) -> bytes:
    """
    Load the secret from `path`, creating it if absent or empty.

    Returns:
        The secret as bytes (UTF-8 of the hex text), the HMAC key clients use

    Raises:
        OSError: If the file cannot be read or written
    """
    secret_path = Path(path)

    if secret_path.exists():
        secret = secret_path.read_text(encoding="utf-8").strip()
        if secret:
            mode = secret_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(f"Secret file {secret_path} has mode {oct(mode)}, tightening to 0o600")
                os.chmod(secret_path, SECRET_FILE_MODE)
            logger.info(f"Loaded HMAC secret from {secret_path}")
            return secret.encode("utf-8")
        logger.warning(f"Secret file {secret_path} is empty, generating a new secret")

    secret = generate_secret()
    _write_secret(secret_path, secret)
    logger.info(f"Generated new HMAC secret at {secret_path}")
    return secret.encode("utf-8")


def get_secret() -> bytes:
    """
    Return the secret loaded at startup.

    Raises:
        InternalError: If startup has not loaded a secret yet
    """
    if app_state.secret is None:
        logger.error("HMAC secret not loaded")
        raise InternalError()
    return app_state.secret
