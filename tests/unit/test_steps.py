from datetime import date

import pytest

from formpilot.automation.reference import load_reference, lookup_code, resolve_location
from formpilot.automation.steps import (
    FieldMapping,
    load_step_plan,
    parse_step_plan,
    resolve_value,
    split_date,
    translate_value,
    validate_completeness,
    validate_plan,
)
from formpilot.core.enums import FieldType


def test_plan_has_seventeen_ordered_steps():
    plan = load_step_plan()

    assert plan.form_version == "ds160"
    assert plan.total_steps == 17
    assert [step.number for step in plan.steps] == list(range(1, 18))
    assert all(step.next_target == "#ctl00_SiteContentPlaceHolder_UpdateButton3" for step in plan.steps)


def test_security_questions_expand_to_radios_with_explanations():
    step = load_step_plan().step(13)
    disease = next(field for field in step.fields if field.key == "security_background1.communicable_disease")

    assert disease.type == FieldType.RADIO
    assert disease.required and disease.postback
    assert disease.radio_target("Y") == "#ctl00_SiteContentPlaceHolder_FormView1_rblDisease_0"
    assert disease.radio_target("N") == "#ctl00_SiteContentPlaceHolder_FormView1_rblDisease_1"
    explain = disease.conditional.branch("Y")[0]
    assert explain.key == "security_background1.communicable_disease_explain"
    assert explain.target.endswith("tbxDisease")
    assert disease.conditional.branch("N") == ()


def test_parse_qualifies_targets_and_nests_conditionals():
    plan = parse_step_plan(
        {
            "target_prefix": "#form_",
            "next_target": "#next",
            "steps": [
                {
                    "number": 2,
                    "name": "Second",
                    "fields": [{"key": "b.value", "target": ".already-css", "type": "text"}],
                },
                {
                    "number": 1,
                    "name": "First",
                    "fields": [
                        {
                            "key": "a.flag",
                            "target": "rblFlag",
                            "type": "radio",
                            "conditional": {"when": "Y", "fields": [{"key": "a.detail", "target": "tbxDetail", "type": "text"}]},
                        }
                    ],
                },
            ],
        }
    )

    assert [step.number for step in plan.steps] == [1, 2]
    first = plan.step(1)
    assert [field.key for field in first.walk()] == ["a.flag", "a.detail"]
    assert first.fields[0].conditional.fields[0].target == "#form_tbxDetail"
    assert plan.step(2).fields[0].target == ".already-css"
    with pytest.raises(KeyError):
        plan.step(9)


def test_resolve_value_reads_nested_flat_and_indexed_keys():
    values = {
        "personal_info": {"surnames": "KHAN", "middle": "  "},
        "personal_info.given_names": "AYESHA",
        "other": {"list": [{"country": "India"}]},
    }

    assert resolve_value(values, "personal_info.surnames") == "KHAN"
    assert resolve_value(values, "personal_info.given_names") == "AYESHA"
    assert resolve_value(values, "other.list.0.country") == "India"
    assert resolve_value(values, "personal_info.middle") is None
    assert resolve_value(values, "other.list.3.country") is None
    assert resolve_value(values, "missing.key") is None


@pytest.mark.parametrize(
    ("mapping", "raw", "expected"),
    [
        (FieldMapping(key="x", type=FieldType.RADIO), "Yes", "Y"),
        (FieldMapping(key="x", type=FieldType.RADIO), False, "N"),
        (FieldMapping(key="x", type=FieldType.SELECT, value_map={"MALE": "M"}), "male", "M"),
        (FieldMapping(key="x", type=FieldType.SELECT, lookup="countries"), "India", "IND"),
        (FieldMapping(key="x", type=FieldType.SELECT, lookup="countries"), "Atlantis", "Atlantis"),
        (FieldMapping(key="x", type=FieldType.TEXT), "  Lahore ", "Lahore"),
    ],
)
def test_translate_value(mapping, raw, expected):
    assert translate_value(mapping, raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["1990-05-04", "04-MAY-1990", "04 May 1990", "04/05/1990", date(1990, 5, 4), "1990-05-04T10:00:00"],
)
def test_split_date_formats(raw):
    assert split_date(raw) == ("04", "MAY", "1990")


def test_split_date_rejects_garbage():
    with pytest.raises(ValueError):
        split_date("sometime in spring")


def test_completeness_warnings_are_advisory():
    step = load_step_plan().step(1)
    warnings = validate_completeness(
        step,
        {
            "personal_info": {
                "surnames": "KHAN",
                "date_of_birth": "not a date",
                "other_names_used": "Yes",
            }
        },
    )
    keys = {warning.field_key for warning in warnings}

    assert "personal_info.given_names" in keys
    assert "personal_info.date_of_birth" in keys
    assert "personal_info.surnames" not in keys
    assert all(warning.step == 1 for warning in warnings)


def test_security_answer_without_explanation_warns():
    step = load_step_plan().step(13)
    warnings = validate_completeness(step, {"security_background1": {"communicable_disease": "Yes"}})

    assert "security_background1.communicable_disease_explain" in {w.field_key for w in warnings}


def test_validate_plan_collects_every_step(field_map):
    warnings = validate_plan(load_step_plan(), field_map)
    assert {warning.step for warning in warnings} >= {13, 14, 15, 16, 17}


def test_reference_tables():
    assert lookup_code(load_reference("countries"), " pakistan ") == "PKST"
    assert resolve_location(None) == ("ISL", "PAKISTAN, ISLAMABAD")
    assert resolve_location("Not specified") == ("ISL", "PAKISTAN, ISLAMABAD")
    assert resolve_location("India, Mumbai") == ("BMB", "INDIA, MUMBAI")
    assert resolve_location("Somewhere Else") == ("Somewhere Else", "SOMEWHERE ELSE")
