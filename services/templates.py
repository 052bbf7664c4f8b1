"""
SMS message types and templates.

Templates use `{{placeholder}}` syntax. Only known keys are replaced; anything
left unresolved makes the send gate hold the message as a draft.
"""

import enum
import re
from typing import Any, List, Mapping, Optional

from models import Agency


class MessageType(str, enum.Enum):
    WELCOME = "welcome"
    BIRTHDAY = "birthday"
    BILLING_REMINDER = "billing_reminder"
    LAPSE_REMINDER = "lapse_reminder"
    POLICY_PACKET = "policy_packet"
    HOLIDAY = "holiday"
    QUARTERLY_CHECKIN = "quarterly_checkin"
    AI_RESPONSE = "ai_response"
    MANUAL = "manual"
    OPT_OUT_CONFIRMATION = "opt_out_confirmation"
    OPT_IN_CONFIRMATION = "opt_in_welcome"
    HELP_RESPONSE = "help_response"


# Agency column prefix for the per-type enabled/require_approval/template settings
AGENCY_SETTING_PREFIX = {
    MessageType.WELCOME: "sms_welcome",
    MessageType.BIRTHDAY: "sms_birthday",
    MessageType.BILLING_REMINDER: "sms_billing",
    MessageType.LAPSE_REMINDER: "sms_lapse",
    MessageType.POLICY_PACKET: "sms_policy_packet",
    MessageType.HOLIDAY: "sms_holiday",
    MessageType.QUARTERLY_CHECKIN: "sms_quarterly",
}

DEFAULT_TEMPLATES = {
    MessageType.WELCOME: (
        "Welcome {{client_first_name}}! Thank you for choosing {{agency_name}} for your life "
        "insurance needs. Your agent {{agent_name}} is here to help. Complete your account setup "
        "via the invitation sent to {{client_email}}. Msg&data rates may apply. Reply STOP to opt out."
    ),
    MessageType.BILLING_REMINDER: (
        "Hi {{client_first_name}}, this is a friendly reminder that your insurance premium is due "
        "soon. Please ensure funds are available for your scheduled payment. Thank you!"
    ),
    MessageType.LAPSE_REMINDER: (
        "Hi {{client_first_name}}, your policy is pending lapse. Your agent {{agent_name}} will "
        "reach out shortly at this number: {{agent_phone}}"
    ),
    MessageType.BIRTHDAY: (
        "Happy Birthday, {{client_first_name}}! Wishing you a great year ahead from your friends "
        "at {{agency_name}}."
    ),
    MessageType.POLICY_PACKET: (
        "Hi {{client_first_name}}, it has been two weeks since your policy took effect. Have you "
        "received your policy packet in the mail? Reply here if you have any questions."
    ),
    MessageType.HOLIDAY: (
        "{{holiday_greeting}}, {{client_first_name}}! Wishing you and your family a wonderful day. "
        "- {{agent_name}}"
    ),
    MessageType.QUARTERLY_CHECKIN: (
        "Hi {{client_first_name}}, it's {{agent_name}} with your quarterly policy check-in. Have there "
        "been any changes to your coverage needs or beneficiaries? Reach me at {{agent_phone}}."
    ),
}

PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Replace known `{{keys}}`; a known key with no value renders as empty."""
    def _sub(match):
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(_sub, template)


def find_unresolved_placeholders(body: str) -> List[str]:
    return PLACEHOLDER.findall(body or "")


def agency_setting(agency: Optional[Agency], message_type: MessageType, suffix: str, default=None):
    prefix = AGENCY_SETTING_PREFIX.get(message_type)
    if agency is None or prefix is None:
        return default
    value = getattr(agency, f"{prefix}_{suffix}", None)
    return default if value is None else value


def template_for(agency: Optional[Agency], message_type: MessageType) -> str:
    return agency_setting(agency, message_type, "template") or DEFAULT_TEMPLATES[message_type]


def first_name(full_name: Optional[str]) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else "there"


# =============================================================================
# COMPLIANCE REPLIES
# =============================================================================

def opt_out_confirmation(brand: str, support_email: str) -> str:
    return (
        f"{brand}: You have been unsubscribed and will receive no further messages. "
        f"For assistance, contact {support_email}."
    )


def help_response(brand: str, support_email: str, privacy_url: str, terms_url: str) -> str:
    return (
        f"{brand}: For assistance, email {support_email}. Visit {privacy_url} for our privacy "
        f"policy and {terms_url} for terms & conditions."
    )


def opt_in_confirmation(agency_name: Optional[str], brand: str) -> str:
    return (
        f"Thanks for re-subscribing! You'll receive policy updates and reminders from "
        f"{agency_name or brand} by text. Reply STOP to opt out anytime."
    )
