"""Request policy: IP black/white lists and the path allow-list.

Path patterns support ``*`` wildcards. Each pattern is escaped, every ``*``
becomes ``.*``, and the result is anchored at both ends, so ``/api/*``
matches ``/api/v1/things`` but not ``/other/api``.

Patterns are compiled once, when the policy is built. Invalid patterns
cannot occur (everything but ``*`` is escaped).

IMPORT RULES:
  - `import re2` ONLY — `import re` is PROHIBITED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import re2  # google-re2. NEVER: import re

from keygate.config import PolicyConfig
from keygate.gate.decision import DenyReason


def compile_path_pattern(pattern: str) -> Any:
    """Compile one allow-list pattern into an anchored re2 regex."""
    body = ".*".join(re2.escape(part) for part in pattern.split("*"))
    return re2.compile(f"^{body}$")


@dataclass
class RequestPolicy:
    """Immutable-by-convention snapshot of the IP and path rules."""

    whitelist_ips: frozenset[str] = frozenset()
    blacklist_ips: frozenset[str] = frozenset()
    allowed_paths: tuple[str, ...] = ()
    _compiled: list[Any] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self._compiled = [compile_path_pattern(p) for p in self.allowed_paths]

    @classmethod
    def from_config(cls, policy: PolicyConfig) -> "RequestPolicy":
        return cls(
            whitelist_ips=frozenset(policy.whitelist_ips),
            blacklist_ips=frozenset(policy.blacklist_ips),
            allowed_paths=tuple(policy.allowed_paths),
        )

    def path_allowed(self, path: str) -> bool:
        """An empty allow-list allows every path."""
        if not self._compiled:
            return True
        return any(regex.match(path) for regex in self._compiled)

    def check(self, client_ip: Optional[str], path: str) -> Optional[DenyReason]:
        """Steps 2–4 of the pipeline. Returns the deny reason, or None to continue."""
        if client_ip is not None and client_ip in self.blacklist_ips:
            return DenyReason.IP_BLACKLISTED
        if self.whitelist_ips and client_ip not in self.whitelist_ips:
            return DenyReason.IP_NOT_WHITELISTED
        if not self.path_allowed(path):
            return DenyReason.PATH_NOT_ALLOWED
        return None
