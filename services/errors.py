"""
Domain errors shared by the SMS services and mapped to HTTP by the routers.
"""

import enum
from typing import Optional


class RejectReason(str, enum.Enum):
    OPTED_OUT = "opted_out"
    PENDING_OPT_IN = "pending_opt_in"
    UPGRADE_REQUIRED = "upgrade_required"
    MESSAGING_DISABLED = "messaging_disabled"
    MISSING_AGENCY_PHONE = "missing_agency_phone"


class SmsError(Exception):
    """Base class for orchestrator errors."""


class SendRejected(SmsError):
    """Policy rejection. Expected, user-facing, never retried."""

    def __init__(self, reason: RejectReason, detail: str = ""):
        self.reason = reason
        self.detail = detail or reason.value
        super().__init__(self.detail)


class ProviderSendError(SmsError):
    """The SMS provider refused or never answered."""

    def __init__(self, code: Optional[str], detail: str):
        self.code = code
        self.detail = detail
        super().__init__(f"[{code}] {detail}" if code else detail)


class ReplyGenerationError(SmsError):
    """LLM unavailable, timed out or returned nothing usable."""


class BillingReportError(SmsError):
    """Usage could not be reported to the billing provider."""


class InvalidStatusTransition(SmsError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Message cannot move from {current.value} to {target.value}")


class InvalidOptInTransition(SmsError):
    pass
