from __future__ import annotations

import secrets
import string
import time
import uuid

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def new_batch_id() -> str:
    """Generate a batch id of the form ``batch_<epoch ms>_<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(9))
    return f"batch_{int(time.time() * 1000)}_{suffix}"


def file_item_id(batch_id: str, index: int) -> str:
    return f"{batch_id}_file_{index}"


def processed_file_key(name: str, size_bytes: int) -> str:
    """Key used to recognise a file already processed in an earlier batch."""
    return f"{name}_{size_bytes}"
