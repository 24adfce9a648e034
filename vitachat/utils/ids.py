"""Identifier helpers."""

import secrets
import string
import time

_ALPHABET = string.ascii_lowercase + string.digits


def new_message_id() -> str:
    """msg_<epoch ms>_<9 random chars>"""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"msg_{int(time.time() * 1000)}_{suffix}"
