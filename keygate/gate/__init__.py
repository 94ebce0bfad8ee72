"""KeyGate authentication gate package.

Public API:
  - AuthenticationGate   — the ordered decision pipeline
  - AuthRequest          — transport-neutral request view
  - Allowed / Denied     — decisions; DenyReason — closed deny taxonomy
  - RequestPolicy        — IP lists + compiled path allow-list
  - require_api_key()    — FastAPI Depends() dependency (401 on any denial)
"""

from __future__ import annotations

from keygate.gate.decision import Allowed, Decision, Denied, DenyReason
from keygate.gate.middleware import require_api_key
from keygate.gate.pipeline import AuthenticationGate, AuthRequest
from keygate.gate.policy import RequestPolicy, compile_path_pattern

__all__ = [
    "Allowed",
    "AuthRequest",
    "AuthenticationGate",
    "Decision",
    "Denied",
    "DenyReason",
    "RequestPolicy",
    "compile_path_pattern",
    "require_api_key",
]
