"""
Caller Context Module

Identity of the already-authorized caller, handed in by the request layer.
Used for audit attribution and log correlation only.
"""

from dataclasses import dataclass, field
from typing import Optional
import uuid


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller identity, role and branch scope"""
    actor_id: str
    role: str = "system"
    branch_id: Optional[str] = None
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))


SYSTEM_CONTEXT = CallerContext(actor_id="system", role="system")


def resolve_context(context: Optional[CallerContext]) -> CallerContext:
    """Fall back to the system identity for batch and internal calls"""
    return context or SYSTEM_CONTEXT
