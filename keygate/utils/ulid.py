"""ULID generation for KeyGate record identifiers.

Key record ids are ULIDs: 26-character Crockford Base32 strings that sort by
creation time, so the admin overview lists keys oldest-first without an extra
index. Uses the `python-ulid` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character uppercase string.

    Example::

        key_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
    """
    return str(ULID())
