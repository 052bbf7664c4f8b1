"""
Inbound message classifier.

Decides whether a client text is safe for an automated policy-information
reply. Pure and deterministic: no I/O, no caching (deal data can change
between messages).

Three layers, evaluated in order, short-circuiting:
1. Hard block  - claims, policy changes, advice, legal, "I want/need ..." -> NON_DEAL
2. Shape       - must look like an information request, else -> NOT_QUESTION
3. Entities    - first matching entity rule decides whether the deal holds
                 the data needed to answer (-> DEAL_RELATED) or not (-> NON_DEAL)

Precision over recall: anything doubtful is escalated to a human.
"""

import enum
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Pattern, Tuple


class ClassificationResult(str, enum.Enum):
    DEAL_RELATED = "deal_related"
    NON_DEAL = "non_deal"
    NOT_QUESTION = "not_question"


# =============================================================================
# LAYER 1 - HARD BLOCK
# =============================================================================

HARD_BLOCK_PATTERNS: Tuple[Pattern, ...] = tuple(re.compile(p) for p in (
    # Claims and incidents
    r"\b(claim|accident|damage|incident|injury|file a claim|report|emergency)\b",
    # Policy changes
    r"\b(cancel|modify|change|update|add|remove|switch|transfer)\b.*\b(policy|coverage|beneficiary|payment)\b",
    r"\b(new policy|another policy|different policy|more coverage)\b",
    # Advice and recommendations
    r"\b(should i|recommend|advice|opinion|suggest|better|compare|shop around)\b",
    # Legal and complaints
    r"\b(lawyer|sue|complaint|dispute|refund|fraud|legal)\b",
    # Action requests
    r"\b(i want|i need|i would like|help me|tell me|please)\b.*\b(to|cancel|change|file|get|add)\b",
    # Procedural how-to
    r"\bhow (do i|can i|to)\b",
))


# =============================================================================
# LAYER 2 - QUESTION SHAPE
# =============================================================================

INTERROGATIVE_START = re.compile(
    r"^(what|when|where|who|which|how much|how many|is|are|do|does|can|will)\b"
)
QUESTION_CUE = re.compile(r"\b(what|when|where|who|which|is|are|my|the)\b")

STATEMENT_PATTERNS: Tuple[Pattern, ...] = tuple(re.compile(p) for p in (
    r"\bi want to know\b",
    r"\bcan you tell me how to\b",
    r"\bwould like to\b",
    r"\bi need to\b",
    r"\bhelp me\b",
))


# =============================================================================
# LAYER 3 - ENTITY AVAILABILITY
# =============================================================================

@dataclass(frozen=True)
class EntityRule:
    name: str
    patterns: Tuple[Pattern, ...]
    fields: Tuple[str, ...]
    required: bool

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _rule(name, patterns, fields, required) -> EntityRule:
    return EntityRule(name, tuple(re.compile(p) for p in patterns), tuple(fields), required)


# Order matters: the first rule whose trigger matches decides.
ENTITY_RULES: Tuple[EntityRule, ...] = (
    _rule("policy_number",
          [r"policy number", r"policy #", r"policy.*number"],
          ["policy_number"], True),
    _rule("premium",
          [r"premium", r"payment", r"cost", r"how much", r"pay.*month", r"monthly", r"annual"],
          ["monthly_premium", "annual_premium"], True),
    _rule("effective_date",
          [r"effective date", r"start date", r"when.*start", r"policy.*start", r"begin", r"effective"],
          ["policy_effective_date"], True),
    _rule("carrier",
          [r"carrier", r"company", r"insurer", r"insurance company", r"policy with",
           r"who.*insur", r"which.*insurance", r"what.*insurance"],
          ["carrier.name"], True),
    _rule("product",
          [r"product", r"type of (policy|insurance|coverage)", r"kind of (policy|insurance|coverage)",
           r"coverage type", r"what (insurance|coverage|policy) do i have", r"what do i have"],
          ["carrier.name", "policy_number"], True),
    _rule("beneficiary",
          [r"beneficiary", r"beneficiaries", r"who else.*on my policy", r"who.*on my policy",
           r"how many people", r"people on my policy", r"covered.*policy"],
          ["beneficiary"], False),
    # Contact details must win over the generic "agent" rule below
    _rule("agent_contact",
          [r"agent.*(email|contact|phone|number)", r"email.*(agent|address)", r"contact.*agent"],
          ["agent.email", "agent.phone_number"], False),
    _rule("agent",
          [r"agent", r"who.*agent", r"my agent"],
          ["agent.first_name", "agent.last_name"], True),
    _rule("status",
          [r"status", r"active", r"is.*active", r"policy.*active", r"still.*active"],
          ["status", "status_standardized"], True),
    _rule("billing",
          [r"billing cycle", r"billing", r"how often", r"when.*pay", r"payment.*schedule",
           r"next payment", r"due date"],
          ["billing_cycle"], False),
    _rule("general",
          [r"my policy", r"my insurance", r"policy info", r"policy details", r"tell me about my"],
          ["policy_number", "carrier.name", "status", "monthly_premium"], False),
)


def _clean(text: str) -> str:
    return (text or "").lower().strip()


def get_field(facts: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path ("carrier.name") against nested mappings."""
    current: Any = facts
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _populated(value: Any) -> bool:
    return value is not None and value != ""


def is_hard_blocked(text: str) -> bool:
    cleaned = _clean(text)
    return any(p.search(cleaned) for p in HARD_BLOCK_PATTERNS)


def has_question_shape(text: str) -> bool:
    cleaned = _clean(text)
    is_request = bool(INTERROGATIVE_START.search(cleaned)) or (
        "?" in cleaned and bool(QUESTION_CUE.search(cleaned))
    )
    is_statement = any(p.search(cleaned) for p in STATEMENT_PATTERNS)
    return is_request and not is_statement


def match_entity_rule(text: str) -> Optional[EntityRule]:
    cleaned = _clean(text)
    for rule in ENTITY_RULES:
        if rule.matches(cleaned):
            return rule
    return None


def has_required_data(text: str, deal_facts: Mapping[str, Any]) -> bool:
    rule = match_entity_rule(text)
    if rule is None:
        return False

    if rule.required:
        return any(_populated(get_field(deal_facts, f)) for f in rule.fields)
    return True


def classify(text: str, deal_facts: Optional[Mapping[str, Any]] = None) -> ClassificationResult:
    if is_hard_blocked(text):
        return ClassificationResult.NON_DEAL

    if not has_question_shape(text):
        return ClassificationResult.NOT_QUESTION

    if deal_facts is not None and not has_required_data(text, deal_facts):
        return ClassificationResult.NON_DEAL

    return ClassificationResult.DEAL_RELATED
