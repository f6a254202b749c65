from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from formpilot.automation.driver import RemoteFormDriver
from formpilot.automation.readiness import ReadinessLadder
from formpilot.automation.steps import FieldMapping, StepDefinition, resolve_value

ANY_STEP = 0

PreStepHook = Callable[[StepDefinition, Mapping], Mapping | None]
PostFieldHook = Callable[["HookContext", FieldMapping, str], None]
ValidateHook = Callable[["HookContext", StepDefinition], list[str]]


@dataclass
class HookContext:
    job_id: str
    driver: RemoteFormDriver
    ladder: ReadinessLadder
    step: StepDefinition


class StepHooks:
    """Narrow per-step overrides around the generic step loop.

    ``pre_step`` hooks may return an overlay that is merged over the field map
    for that step only; ``post_field`` runs after each applied field;
    ``custom_validate`` returns extra error messages read from the page.
    Hooks registered for step 0 run on every step.
    """

    def __init__(self) -> None:
        self._pre_step: dict[int, list[PreStepHook]] = defaultdict(list)
        self._post_field: dict[int, list[PostFieldHook]] = defaultdict(list)
        self._validate: dict[int, list[ValidateHook]] = defaultdict(list)

    def pre_step(self, step: int, hook: PreStepHook) -> None:
        self._pre_step[step].append(hook)

    def post_field(self, step: int, hook: PostFieldHook) -> None:
        self._post_field[step].append(hook)

    def custom_validate(self, step: int, hook: ValidateHook) -> None:
        self._validate[step].append(hook)

    def _for(self, table: dict, step: int) -> list:
        return [*table.get(ANY_STEP, ()), *table.get(step, ())]

    def run_pre_step(self, step: StepDefinition, field_map: Mapping) -> Mapping:
        merged = dict(field_map)
        for hook in self._for(self._pre_step, step.number):
            overlay = hook(step, merged)
            if overlay:
                merged.update(overlay)
        return merged

    def run_post_field(self, context: HookContext, mapping: FieldMapping, value: str) -> None:
        for hook in self._for(self._post_field, context.step.number):
            hook(context, mapping, value)

    def run_validate(self, context: HookContext) -> list[str]:
        errors: list[str] = []
        for hook in self._for(self._validate, context.step.number):
            errors.extend(hook(context, context.step))
        return errors


def split_ssn(step: StepDefinition, field_map: Mapping) -> dict | None:
    """The form takes the social security number as three separate boxes."""
    ssn = resolve_value(field_map, "personal_info.us_social_security_number")
    if ssn is None:
        return None
    digits = "".join(ch for ch in str(ssn) if ch.isdigit())
    if len(digits) != 9:
        return None
    return {
        "personal_info.ssn_1": digits[:3],
        "personal_info.ssn_2": digits[3:5],
        "personal_info.ssn_3": digits[5:],
    }


def settle_after_postback(context: HookContext, mapping: FieldMapping, value: str) -> None:
    """Fields that trigger a server round trip re-render the page; wait it out."""
    if mapping.postback:
        context.ladder.wait(context.driver, phase="postback", step=context.step.number)


def default_hooks() -> StepHooks:
    hooks = StepHooks()
    hooks.pre_step(2, split_ssn)
    hooks.post_field(ANY_STEP, settle_after_postback)
    return hooks
