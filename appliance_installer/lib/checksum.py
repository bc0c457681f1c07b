from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from ..errors import IntegrityError

logger = logging.getLogger(__name__)

CHUNK = 4 * 1024 * 1024


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def checksum_path(artifact: str) -> Path:
    return Path(f"{artifact}.sha256")


def write_checksum(artifact: str) -> Path:
    """Write a detached `sha256sum`-compatible checksum next to `artifact`."""

    digest = sha256_file(artifact)
    out = checksum_path(artifact)
    out.write_text(f"{digest}  {Path(artifact).name}\n", encoding="utf-8")
    logger.info("Checksum %s -> %s", digest, str(out))
    return out


def read_checksum(artifact: str) -> str:
    p = checksum_path(artifact)
    if not p.exists():
        raise IntegrityError(f"Missing checksum file {p}", stage="verify")
    fields = p.read_text(encoding="utf-8").split()
    if not fields or len(fields[0]) != 64:
        raise IntegrityError(f"Malformed checksum file {p}", stage="verify")
    return fields[0].lower()


def verify_checksum(artifact: str) -> str:
    """Verify `artifact` against its detached checksum; return the digest."""

    expected = read_checksum(artifact)
    actual = sha256_file(artifact)
    if actual != expected:
        raise IntegrityError(
            f"Checksum mismatch for {artifact}: expected {expected}, got {actual}",
            stage="verify",
        )
    logger.info("Checksum OK for %s", artifact)
    return actual
