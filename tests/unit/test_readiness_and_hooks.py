import pytest

from formpilot.automation.hooks import ANY_STEP, HookContext, StepHooks, settle_after_postback, split_ssn
from formpilot.automation.mock_driver import MockFormDriver
from formpilot.automation.readiness import ReadinessLadder
from formpilot.automation.steps import FieldMapping, StepDefinition
from formpilot.core.enums import FieldType
from formpilot.core.errors import TransportTimeout


def _ladder():
    return ReadinessLadder(primary_timeout_ms=100, secondary_timeout_ms=50, grace_ms=10)


@pytest.mark.parametrize(
    ("stall_tiers", "expected"),
    [(0, "networkidle"), (1, "domcontentloaded"), (2, "grace")],
)
def test_ladder_falls_back_tier_by_tier(stall_tiers, expected):
    driver = MockFormDriver(stall_tiers=stall_tiers)
    assert _ladder().wait(driver, phase="navigate") == expected


def test_ladder_gives_up_after_last_tier():
    driver = MockFormDriver(stall_tiers=3)

    with pytest.raises(TransportTimeout) as excinfo:
        _ladder().wait(driver, phase="form_step_4", step=4)

    assert excinfo.value.code == "STEP_4_TIMEOUT"
    assert excinfo.value.step == 4
    assert driver.waits == ["networkidle", "domcontentloaded", "ready"]
    assert driver.pauses == [10]


def test_split_ssn_overlay():
    step = StepDefinition(number=2, name="Personal Information 2", fields=(), next_target="#next")

    assert split_ssn(step, {"personal_info": {"us_social_security_number": "123-45-6789"}}) == {
        "personal_info.ssn_1": "123",
        "personal_info.ssn_2": "45",
        "personal_info.ssn_3": "6789",
    }
    assert split_ssn(step, {"personal_info": {"us_social_security_number": "12345"}}) is None
    assert split_ssn(step, {}) is None


def test_pre_step_hooks_apply_to_their_step_only():
    hooks = StepHooks()
    hooks.pre_step(2, lambda step, values: {"extra": "two"})
    hooks.pre_step(ANY_STEP, lambda step, values: {"every": step.number})
    original = {"a": 1}

    second = hooks.run_pre_step(StepDefinition(2, "two", (), "#next"), original)
    third = hooks.run_pre_step(StepDefinition(3, "three", (), "#next"), original)

    assert second == {"a": 1, "every": 2, "extra": "two"}
    assert third == {"a": 1, "every": 3}
    assert original == {"a": 1}


def test_postback_fields_wait_for_rerender():
    driver = MockFormDriver()
    context = HookContext(job_id="job-1", driver=driver, ladder=_ladder(), step=StepDefinition(1, "one", (), "#next"))

    settle_after_postback(context, FieldMapping(key="a", type=FieldType.TEXT, target="#a"), "x")
    assert driver.waits == []

    settle_after_postback(context, FieldMapping(key="b", type=FieldType.RADIO, target="#b", postback=True), "Y")
    assert driver.waits == ["networkidle"]
