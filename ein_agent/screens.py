from __future__ import annotations

"""
screens.py

Declarative description of the target site's screens.

FIELD_LOCATORS maps logical field names to locators. build_screen_plan()
turns a CaseRecord into an ordered list of ScreenPlan entries, one per
workflow state, each holding the actions to perform. A "submit" action is a
transition and is always followed by a checkpoint. Nothing in here touches
a browser.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .entity_types import (
    EntityCategory,
    EntityClassification,
    TWO_MEMBER_DISAMBIGUATION_STATES,
    classify_entity,
    CARE_OF_CATEGORIES,
)
from .models import CaseRecord, ElementLocator, WorkflowState
from .normalize import (
    ADDRESS_EXTRA_CHARS,
    DESCRIPTION_EXTRA_CHARS,
    NAME_EXTRA_CHARS,
    MONTH_NAMES,
    clean_text,
    month_from_name,
    normalize_state,
    normalize_zip,
    parse_formation_date,
    parse_month_number,
    split_phone,
    split_ssn,
    strip_entity_suffix,
)

DEFAULT_FISCAL_MONTH = "DECEMBER"


# -----------------------------------------------------------------------------
# Locator table
# -----------------------------------------------------------------------------
def _submit(value: str, name: Optional[str] = None) -> ElementLocator:
    if name:
        return ElementLocator.xpath(f"//input[@type='submit' and @name='{name}' and contains(@value, '{value}')]")
    return ElementLocator.xpath(f"//input[@type='submit' and contains(@value, '{value}')]")


FIELD_LOCATORS: Dict[str, ElementLocator] = {
    # navigation
    "landing_ready": ElementLocator.css("input[type='submit'][value='Begin Application >>']"),
    "begin_application": _submit("Begin Application"),
    "form_ready": ElementLocator.by_id("individual-leftcontent"),
    "continue": _submit("Continue >>"),
    "accept_as_entered": _submit("Accept As Entered"),
    "final_submit": _submit("Submit"),
    # LLC
    "llc_members": ElementLocator.by_id("numbermem"),
    "llc_state": ElementLocator.by_id("state"),
    # responsible party
    "sole_first_name": ElementLocator.by_id("applicantFirstName"),
    "sole_middle_name": ElementLocator.by_id("applicantMiddleName"),
    "sole_last_name": ElementLocator.by_id("applicantLastName"),
    "sole_ssn_3": ElementLocator.by_id("applicantSSN3"),
    "sole_ssn_2": ElementLocator.by_id("applicantSSN2"),
    "sole_ssn_4": ElementLocator.by_id("applicantSSN4"),
    "rp_first_name": ElementLocator.by_id("responsiblePartyFirstName"),
    "rp_middle_name": ElementLocator.by_id("responsiblePartyMiddleName"),
    "rp_last_name": ElementLocator.by_id("responsiblePartyLastName"),
    "rp_ssn_3": ElementLocator.by_id("responsiblePartySSN3"),
    "rp_ssn_2": ElementLocator.by_id("responsiblePartySSN2"),
    "rp_ssn_4": ElementLocator.by_id("responsiblePartySSN4"),
    # address
    "physical_street": ElementLocator.by_id("physicalAddressStreet"),
    "physical_city": ElementLocator.by_id("physicalAddressCity"),
    "physical_state": ElementLocator.by_id("physicalAddressState"),
    "physical_zip": ElementLocator.by_id("physicalAddressZipCode"),
    "care_of": ElementLocator.by_id("physicalAddressCareofName"),
    "phone_3": ElementLocator.by_id("phoneFirst3"),
    "phone_3b": ElementLocator.by_id("phoneMiddle3"),
    "phone_4": ElementLocator.by_id("phoneLast4"),
    "international_phone": ElementLocator.by_id("internationalPhoneNumber"),
    "mailing_street": ElementLocator.by_id("mailingAddressStreet"),
    "mailing_city": ElementLocator.by_id("mailingAddressCity"),
    "mailing_state": ElementLocator.by_id("mailingAddressState"),
    "mailing_zip": ElementLocator.by_id("mailingAddressPostalCode"),
    # business
    "legal_name": ElementLocator.by_id("businessOperationalLegalName"),
    "trade_name": ElementLocator.by_id("businessOperationalTradeName"),
    "county": ElementLocator.by_id("businessOperationalCounty"),
    "business_state": ElementLocator.by_id("businessOperationalState"),
    "articles_filed_state": ElementLocator.by_id("articalsFiledState"),
    "formation_month": ElementLocator.by_id("BUSINESS_OPERATIONAL_MONTH_ID"),
    "formation_year": ElementLocator.by_id("BUSINESS_OPERATIONAL_YEAR_ID"),
    "fiscal_month": ElementLocator.by_id("fiscalMonth"),
    # activity
    "activity_description": ElementLocator.by_id("pleasespecify"),
}

# exclusive-choice control ids that are not entity-type specific
CHOICE_IDS: Dict[str, str] = {
    "llc_spouses_no": "radio_n",
    "reason_new_business": "newbiz",
    "is_responsible_party": "iamsole",
    "mailing_same": "radioAnotherAddress_n",
    "mailing_different": "radioAnotherAddress_y",
    "trucking_no": "radioTrucking_n",
    "gambling_no": "radioInvolveGambling_n",
    "excise_no": "radioExciseTax_n",
    "tobacco_no": "radioSellTobacco_n",
    "employees_no": "radioHasEmployees_n",
    "activity_other": "other",
    "service_other": "other",
    "receive_online": "receiveonline",
}


# -----------------------------------------------------------------------------
# Plan types
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class FieldAction:
    kind: str  # text | choice | dropdown | submit | optional_click
    key: str
    value: str = ""
    required: bool = True

    @property
    def locator(self) -> ElementLocator:
        if self.kind == "choice":
            return ElementLocator.by_id(self.value)
        return FIELD_LOCATORS[self.key]


@dataclass(frozen=True)
class ScreenPlan:
    state: WorkflowState
    actions: Tuple[FieldAction, ...]

    def keys(self) -> List[str]:
        return [a.key for a in self.actions]


def _text(key: str, value: object, required: bool = True) -> FieldAction:
    return FieldAction("text", key, "" if value is None else str(value), required)


def _choice(key: str, element_id: str, required: bool = True) -> FieldAction:
    return FieldAction("choice", key, element_id, required)


def _dropdown(key: str, value: object, required: bool = True) -> FieldAction:
    return FieldAction("dropdown", key, "" if value is None else str(value), required)


def _continue(key: str = "continue") -> FieldAction:
    return FieldAction("submit", key)


def _optional_click(key: str) -> FieldAction:
    return FieldAction("optional_click", key, required=False)


def needs_two_member_disambiguation(case: CaseRecord, classification: EntityClassification) -> bool:
    return (
        classification.category == EntityCategory.LLC
        and case.number_of_members == 2
        and normalize_state(case.entity_state or case.entity_state_record_state) in TWO_MEMBER_DISAMBIGUATION_STATES
    )


def fiscal_month_value(case: CaseRecord) -> str:
    raw = (case.closing_month or "").strip()
    n = parse_month_number(raw) or month_from_name(raw)
    if n is None:
        return DEFAULT_FISCAL_MONTH
    return MONTH_NAMES[n - 1].upper()


# -----------------------------------------------------------------------------
# Plan builder
# -----------------------------------------------------------------------------
def _entity_screens(case: CaseRecord, c: EntityClassification) -> List[ScreenPlan]:
    screens = [
        ScreenPlan(
            WorkflowState.ENTITY_CLASSIFICATION,
            (_choice("entity_category", c.category_choice_id), _continue()),
        )
    ]

    actions: List[FieldAction] = []
    if c.category == EntityCategory.LLC:
        state = normalize_state(case.entity_state or case.entity_state_record_state)
        # the members screen sits one page past the category confirmation
        actions += [
            _continue(),
            _text("llc_members", case.number_of_members),
            _dropdown("llc_state", state),
            _continue(),
        ]
        if needs_two_member_disambiguation(case, c):
            actions += [_choice("llc_spouses_no", CHOICE_IDS["llc_spouses_no"]), _continue(), _continue()]
        else:
            actions.append(_continue())
    elif c.has_sub_type_screen:
        actions += [_choice("entity_sub_type", c.sub_type_choice_id or ""), _continue(), _continue()]
    actions += [_choice("reason_new_business", CHOICE_IDS["reason_new_business"]), _continue()]
    screens.append(ScreenPlan(WorkflowState.SUB_TYPE_SELECTION, tuple(actions)))
    return screens


def _responsible_party_screen(case: CaseRecord, c: EntityClassification) -> ScreenPlan:
    prefix = "sole" if c.category == EntityCategory.SOLE_PROPRIETOR else "rp"
    ssn = split_ssn(case.responsible_ssn) or ("", "", "")
    actions = [
        _text(f"{prefix}_first_name", clean_text(case.responsible_first_name, NAME_EXTRA_CHARS)),
        _text(f"{prefix}_middle_name", clean_text(case.responsible_middle_name, NAME_EXTRA_CHARS), required=False),
        _text(f"{prefix}_last_name", clean_text(case.responsible_last_name, NAME_EXTRA_CHARS)),
        _text(f"{prefix}_ssn_3", ssn[0]),
        _text(f"{prefix}_ssn_2", ssn[1]),
        _text(f"{prefix}_ssn_4", ssn[2]),
        _continue(),
        _choice("is_responsible_party", CHOICE_IDS["is_responsible_party"]),
        _continue(),
    ]
    return ScreenPlan(WorkflowState.RESPONSIBLE_PARTY, tuple(actions))


def _mailing_actions(case: CaseRecord) -> List[FieldAction]:
    m = case.mailing_address
    return [
        _text("mailing_street", clean_text(m.street if m else case.business_address_1, ADDRESS_EXTRA_CHARS)),
        _text("mailing_city", clean_text(m.city if m else case.city, NAME_EXTRA_CHARS)),
        _dropdown("mailing_state", normalize_state(m.state if m else case.entity_state)),
        _text("mailing_zip", normalize_zip(m.zip_code if m else case.zip_code)),
    ]


def _address_screen(case: CaseRecord, c: EntityClassification) -> ScreenPlan:
    phone = split_phone(case.phone)

    if c.category == EntityCategory.TRUST:
        # trusts are asked for a mailing address and a single phone field
        actions = _mailing_actions(case)
        actions.append(_text("international_phone", "".join(phone) if phone else "", required=False))
        actions += [_continue(), _optional_click("accept_as_entered")]
        return ScreenPlan(WorkflowState.ADDRESS_DETAILS, tuple(actions))

    street = " ".join(x for x in (case.business_address_1, case.business_address_2) if x and x.strip())
    actions = [
        _text("physical_street", clean_text(street, ADDRESS_EXTRA_CHARS)),
        _text("physical_city", clean_text(case.city, NAME_EXTRA_CHARS)),
        _dropdown("physical_state", normalize_state(case.entity_state)),
        _text("physical_zip", normalize_zip(case.zip_code)),
    ]
    if phone:
        actions += [
            _text("phone_3", phone[0], required=False),
            _text("phone_3b", phone[1], required=False),
            _text("phone_4", phone[2], required=False),
        ]
    if c.category in CARE_OF_CATEGORIES and case.care_of_name.strip():
        actions.append(_text("care_of", clean_text(case.care_of_name, NAME_EXTRA_CHARS), required=False))

    separate_mailing = case.mailing_address is not None and not case.mailing_address.is_empty
    actions.append(
        _choice("mailing_different", CHOICE_IDS["mailing_different"])
        if separate_mailing
        else _choice("mailing_same", CHOICE_IDS["mailing_same"])
    )
    actions += [_continue(), _optional_click("accept_as_entered")]
    if separate_mailing:
        actions += _mailing_actions(case)
        actions += [_continue(), _optional_click("accept_as_entered")]
    return ScreenPlan(WorkflowState.ADDRESS_DETAILS, tuple(actions))


def business_name(case: CaseRecord, c: EntityClassification) -> str:
    raw = case.trade_name if (c.uses_trade_name and case.trade_name.strip()) else case.entity_name
    return clean_text(strip_entity_suffix(clean_text(raw, NAME_EXTRA_CHARS), c.name_suffixes), NAME_EXTRA_CHARS)


def _business_screen(case: CaseRecord, c: EntityClassification) -> ScreenPlan:
    name_key = "trade_name" if c.uses_trade_name else "legal_name"
    state = normalize_state(case.entity_state)
    filed_state = normalize_state(case.entity_state_record_state or case.entity_state)
    month, year = parse_formation_date(case.formation_date)

    actions = [
        _text(name_key, business_name(case, c)),
        _text("county", clean_text(case.county, NAME_EXTRA_CHARS), required=False),
        _dropdown("business_state", state, required=False),
    ]
    if c.needs_articles_filed_state:
        actions.append(_dropdown("articles_filed_state", filed_state))
    actions += [
        _dropdown("formation_month", month if month else "", required=False),
        _text("formation_year", year if year else "", required=False),
    ]
    if c.needs_fiscal_month:
        actions.append(_dropdown("fiscal_month", fiscal_month_value(case), required=False))
    actions.append(_continue())
    return ScreenPlan(WorkflowState.BUSINESS_DETAILS, tuple(actions))


def _activity_screen(case: CaseRecord) -> ScreenPlan:
    actions = [
        _choice("trucking_no", CHOICE_IDS["trucking_no"]),
        _choice("gambling_no", CHOICE_IDS["gambling_no"]),
        _choice("excise_no", CHOICE_IDS["excise_no"]),
        _choice("tobacco_no", CHOICE_IDS["tobacco_no"]),
        _choice("employees_no", CHOICE_IDS["employees_no"]),
        _continue(),
        _choice("activity_other", CHOICE_IDS["activity_other"]),
        _continue(),
        _choice("service_other", CHOICE_IDS["service_other"]),
        _text("activity_description", clean_text(case.description, DESCRIPTION_EXTRA_CHARS)),
        _continue(),
        _choice("receive_online", CHOICE_IDS["receive_online"]),
        _continue(),
    ]
    return ScreenPlan(WorkflowState.ACTIVITY_DETAILS, tuple(actions))


def build_screen_plan(case: CaseRecord, classification: Optional[EntityClassification] = None) -> List[ScreenPlan]:
    c = classification or classify_entity(case.entity_type, case.description, case.trust_type)
    plan = _entity_screens(case, c)
    plan.append(_responsible_party_screen(case, c))
    plan.append(_address_screen(case, c))
    plan.append(_business_screen(case, c))
    plan.append(_activity_screen(case))
    return plan
