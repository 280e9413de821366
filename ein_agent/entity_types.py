from __future__ import annotations

"""
Entity classification: raw entity-type string -> (category, sub-type).

classify_entity() is a pure function; all site-facing identifiers it exposes
(choice control ids) are table data so they can change without touching the
orchestrator.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class EntityCategory(str, Enum):
    SOLE_PROPRIETOR = "SoleProprietor"
    PARTNERSHIP = "Partnership"
    CORPORATION = "Corporation"
    LLC = "LLC"
    TRUST = "Trust"
    OTHER = "Other"


_LLC_SPELLINGS = (
    "LLC",
    "Limited Liability",
    "Limited Liability Company",
    "Limited Liability Company (LLC)",
    "Company (LLC)",
    "Professional Limited Liability Company",
    "Professional Limited Liability Company (PLLC)",
    "PLLC",
)

ENTITY_CATEGORY_TABLE: Dict[str, EntityCategory] = {
    "sole proprietorship": EntityCategory.SOLE_PROPRIETOR,
    "sole proprietor": EntityCategory.SOLE_PROPRIETOR,
    "individual": EntityCategory.SOLE_PROPRIETOR,
    "doing business as (dba)": EntityCategory.SOLE_PROPRIETOR,
    "dba": EntityCategory.SOLE_PROPRIETOR,
    "partnership": EntityCategory.PARTNERSHIP,
    "joint venture": EntityCategory.PARTNERSHIP,
    "limited partnership": EntityCategory.PARTNERSHIP,
    "general partnership": EntityCategory.PARTNERSHIP,
    "limited liability partnership": EntityCategory.PARTNERSHIP,
    "llp": EntityCategory.PARTNERSHIP,
    "co-ownership": EntityCategory.PARTNERSHIP,
    "c-corporation": EntityCategory.CORPORATION,
    "s-corporation": EntityCategory.CORPORATION,
    "professional corporation": EntityCategory.CORPORATION,
    "corporation": EntityCategory.CORPORATION,
    "non-profit corporation": EntityCategory.OTHER,
    "association": EntityCategory.OTHER,
    "trusteeship": EntityCategory.TRUST,
    "trust": EntityCategory.TRUST,
}
ENTITY_CATEGORY_TABLE.update({s.lower(): EntityCategory.LLC for s in _LLC_SPELLINGS})

SUB_TYPE_TABLE: Dict[str, str] = {
    "sole proprietorship": "Sole Proprietor",
    "sole proprietor": "Sole Proprietor",
    "individual": "Sole Proprietor",
    "doing business as (dba)": "Sole Proprietor",
    "dba": "Sole Proprietor",
    "partnership": "Partnership",
    "limited partnership": "Partnership",
    "general partnership": "Partnership",
    "limited liability partnership": "Partnership",
    "llp": "Partnership",
    "co-ownership": "Partnership",
    "joint venture": "Joint Venture",
    "c-corporation": "Corporation",
    "corporation": "Corporation",
    "s-corporation": "S Corporation",
    "professional corporation": "Personal Service Corporation",
}

TRUST_TYPE_TABLE: Dict[str, str] = {
    "revocable": "Revocable Trust",
    "revocable trust": "Revocable Trust",
    "irrevocable": "Irrevocable Trust",
    "irrevocable trust": "Irrevocable Trust",
    "charitable": "Charitable Trust",
    "charitable trust": "Charitable Trust",
    "conservatorship": "Conservatorship",
    "custodianship": "Custodianship",
    "guardianship": "Guardianship",
    "bankruptcy estate": "Bankruptcy Estate (Individual)",
}

DEFAULT_SUB_TYPE: Dict[EntityCategory, Optional[str]] = {
    EntityCategory.SOLE_PROPRIETOR: "Sole Proprietor",
    EntityCategory.PARTNERSHIP: "Partnership",
    EntityCategory.CORPORATION: "Corporation",
    EntityCategory.LLC: None,
    EntityCategory.TRUST: "Irrevocable Trust",
    EntityCategory.OTHER: "Other",
}

NONPROFIT_KEYWORDS: Tuple[str, ...] = ("non-profit", "nonprofit", "charity", "charitable", "501(c)", "tax-exempt")
NONPROFIT_SUB_TYPE = "Non-Profit/Tax-Exempt Organization"

# choice-control ids on the entity and sub-type screens
CATEGORY_CHOICE_IDS: Dict[EntityCategory, str] = {
    EntityCategory.SOLE_PROPRIETOR: "sole",
    EntityCategory.PARTNERSHIP: "partnerships",
    EntityCategory.CORPORATION: "corporations",
    EntityCategory.LLC: "limited",
    EntityCategory.TRUST: "trusts",
    EntityCategory.OTHER: "viewadditional",
}

SUB_TYPE_CHOICE_IDS: Dict[str, str] = {
    "Sole Proprietor": "sole",
    "Household Employer": "house",
    "Partnership": "parnership",
    "Joint Venture": "joint",
    "Corporation": "corp",
    "S Corporation": "scorp",
    "Personal Service Corporation": "personalservice",
    "Revocable Trust": "revocable",
    "Irrevocable Trust": "irrevocable",
    "Charitable Trust": "charitable",
    "Conservatorship": "conservatorship",
    "Custodianship": "custodianship",
    "Guardianship": "guardianship",
    "Bankruptcy Estate (Individual)": "bankruptcy",
    NONPROFIT_SUB_TYPE: "nonprofit",
    "Other": "other_option",
}
DEFAULT_SUB_TYPE_CHOICE_ID = "other_option"

# LLC with exactly two members in these jurisdictions gets an extra question
TWO_MEMBER_DISAMBIGUATION_STATES: FrozenSet[str] = frozenset({"AZ", "CA", "ID", "LA", "NV", "NM", "TX", "WA", "WI"})
ARTICLES_FILED_CATEGORIES: FrozenSet[EntityCategory] = frozenset({EntityCategory.CORPORATION, EntityCategory.LLC})
FISCAL_MONTH_CATEGORIES: FrozenSet[EntityCategory] = frozenset({EntityCategory.PARTNERSHIP, EntityCategory.CORPORATION})
TRADE_NAME_CATEGORIES: FrozenSet[EntityCategory] = frozenset({EntityCategory.SOLE_PROPRIETOR})
CARE_OF_CATEGORIES: FrozenSet[EntityCategory] = frozenset({EntityCategory.CORPORATION})

ENTITY_SUFFIXES: Dict[EntityCategory, Tuple[str, ...]] = {
    EntityCategory.SOLE_PROPRIETOR: ("LLC", "LC", "PLLC", "PA", "Corp", "Inc"),
    EntityCategory.CORPORATION: ("LLC", "PLLC", "LC"),
    EntityCategory.LLC: ("Corp", "Inc", "PA"),
}


@dataclass(frozen=True)
class EntityClassification:
    raw_type: str
    category: EntityCategory
    sub_type: Optional[str]

    @property
    def category_choice_id(self) -> str:
        return CATEGORY_CHOICE_IDS[self.category]

    @property
    def sub_type_choice_id(self) -> Optional[str]:
        if self.sub_type is None:
            return None
        return SUB_TYPE_CHOICE_IDS.get(self.sub_type, DEFAULT_SUB_TYPE_CHOICE_ID)

    @property
    def has_sub_type_screen(self) -> bool:
        return self.sub_type is not None

    @property
    def needs_articles_filed_state(self) -> bool:
        return self.category in ARTICLES_FILED_CATEGORIES

    @property
    def needs_fiscal_month(self) -> bool:
        return self.category in FISCAL_MONTH_CATEGORIES

    @property
    def uses_trade_name(self) -> bool:
        return self.category in TRADE_NAME_CATEGORIES

    @property
    def name_suffixes(self) -> Tuple[str, ...]:
        return ENTITY_SUFFIXES.get(self.category, ())


def _key(value: Optional[str]) -> str:
    return " ".join((value or "").strip().lower().split())


def looks_nonprofit(description: Optional[str]) -> bool:
    d = (description or "").lower()
    return any(k in d for k in NONPROFIT_KEYWORDS)


def classify_entity(
    entity_type: Optional[str],
    description: Optional[str] = "",
    trust_type: Optional[str] = None,
) -> EntityClassification:
    k = _key(entity_type)
    category = ENTITY_CATEGORY_TABLE.get(k, EntityCategory.OTHER)

    if category == EntityCategory.TRUST:
        sub_type = TRUST_TYPE_TABLE.get(_key(trust_type)) or DEFAULT_SUB_TYPE[category]
    elif category == EntityCategory.OTHER:
        # ambiguous bucket: the description decides
        sub_type = NONPROFIT_SUB_TYPE if looks_nonprofit(description) else "Other"
    else:
        sub_type = SUB_TYPE_TABLE.get(k, DEFAULT_SUB_TYPE[category])

    return EntityClassification(raw_type=(entity_type or "").strip(), category=category, sub_type=sub_type)
