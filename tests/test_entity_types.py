import pytest

from ein_agent.entity_types import (
    DEFAULT_SUB_TYPE_CHOICE_ID,
    NONPROFIT_SUB_TYPE,
    EntityCategory,
    classify_entity,
)


@pytest.mark.parametrize(
    "raw,category,sub_type",
    [
        ("Sole Proprietorship", EntityCategory.SOLE_PROPRIETOR, "Sole Proprietor"),
        ("  limited   partnership ", EntityCategory.PARTNERSHIP, "Partnership"),
        ("Joint Venture", EntityCategory.PARTNERSHIP, "Joint Venture"),
        ("S-Corporation", EntityCategory.CORPORATION, "S Corporation"),
        ("Professional Limited Liability Company (PLLC)", EntityCategory.LLC, None),
        ("llc", EntityCategory.LLC, None),
    ],
)
def test_classify_known_types(raw, category, sub_type):
    c = classify_entity(raw)
    assert c.category == category
    assert c.sub_type == sub_type


def test_trusteeship_uses_trust_type():
    c = classify_entity("Trusteeship", trust_type="Revocable")
    assert c.category == EntityCategory.TRUST
    assert c.sub_type == "Revocable Trust"
    assert c.sub_type_choice_id == "revocable"


def test_trust_without_trust_type_defaults_to_irrevocable():
    assert classify_entity("Trust").sub_type == "Irrevocable Trust"


def test_unknown_type_is_other_and_description_decides():
    plain = classify_entity("Cooperative", description="Grocery co-op")
    assert plain.category == EntityCategory.OTHER
    assert plain.sub_type == "Other"
    assert plain.sub_type_choice_id == DEFAULT_SUB_TYPE_CHOICE_ID

    charity = classify_entity("Association", description="A 501(c) charity for animals")
    assert charity.sub_type == NONPROFIT_SUB_TYPE


def test_llc_has_no_sub_type_screen_but_needs_articles_state():
    c = classify_entity("LLC")
    assert not c.has_sub_type_screen
    assert c.sub_type_choice_id is None
    assert c.needs_articles_filed_state
    assert not c.needs_fiscal_month


def test_branch_flags_per_category():
    sole = classify_entity("Sole Proprietorship")
    corp = classify_entity("Corporation")
    assert sole.uses_trade_name and not corp.uses_trade_name
    assert corp.needs_fiscal_month and corp.needs_articles_filed_state
    assert "Inc" in sole.name_suffixes
