from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path

import yaml

from formpilot.automation.reference import load_reference, lookup_code
from formpilot.core.config import get_settings
from formpilot.core.enums import FieldType
from formpilot.core.errors import LocalValidationWarning

RADIO_VALUE = "value"
RADIO_INDEXED = "indexed"
RADIO_OPTIONS = ("Y", "N")
YES_NO = {"YES": "Y", "NO": "N", "TRUE": "Y", "FALSE": "N", "Y": "Y", "N": "N"}
TRUTHY = {"true", "yes", "y", "on", "1", "checked", "n/a", "na"}
MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")
DATE_FORMATS = ("%Y-%m-%d", "%d-%b-%Y", "%d %b %Y", "%d/%m/%Y")


@dataclass(frozen=True)
class ConditionalTrigger:
    when: str
    fields: tuple["FieldMapping", ...] = ()
    otherwise: tuple["FieldMapping", ...] = ()

    def branch(self, value: str) -> tuple["FieldMapping", ...]:
        return self.fields if value == self.when else self.otherwise


@dataclass(frozen=True)
class FieldMapping:
    key: str
    type: FieldType
    target: str | None = None
    value_map: dict[str, str] = field(default_factory=dict)
    lookup: str | None = None
    radio_style: str = RADIO_VALUE
    date_targets: dict[str, str] = field(default_factory=dict)
    required: bool = False
    postback: bool = False
    conditional: ConditionalTrigger | None = None

    def radio_target(self, value: str) -> str:
        if self.radio_style == RADIO_INDEXED and value in RADIO_OPTIONS:
            return f"{self.target}_{RADIO_OPTIONS.index(value)}"
        return f"{self.target} input[type='radio'][value='{value}']"


@dataclass(frozen=True)
class StepDefinition:
    number: int
    name: str
    fields: tuple[FieldMapping, ...]
    next_target: str

    def walk(self) -> Iterator[FieldMapping]:
        """Every mapping on the page, conditional sub-fields included."""
        pending = list(self.fields)
        while pending:
            mapping = pending.pop(0)
            yield mapping
            if mapping.conditional is not None:
                pending.extend(mapping.conditional.fields)
                pending.extend(mapping.conditional.otherwise)


@dataclass(frozen=True)
class StepPlan:
    form_version: str
    steps: tuple[StepDefinition, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, number: int) -> StepDefinition:
        for definition in self.steps:
            if definition.number == number:
                return definition
        raise KeyError(number)


def _qualify(prefix: str, target: str | None) -> str | None:
    if not target or target.startswith(("#", ".", "[")):
        return target
    return f"{prefix}{target}"


def _parse_field(raw: dict, prefix: str) -> FieldMapping:
    conditional = None
    if raw.get("conditional"):
        trigger = raw["conditional"]
        conditional = ConditionalTrigger(
            when=str(trigger["when"]),
            fields=tuple(_parse_field(item, prefix) for item in trigger.get("fields") or ()),
            otherwise=tuple(_parse_field(item, prefix) for item in trigger.get("otherwise") or ()),
        )
    return FieldMapping(
        key=raw["key"],
        type=FieldType(raw["type"]),
        target=_qualify(prefix, raw.get("target")),
        value_map={str(k).strip().upper(): str(v) for k, v in (raw.get("value_map") or {}).items()},
        lookup=raw.get("lookup"),
        radio_style=raw.get("radio_style", RADIO_VALUE),
        date_targets={part: _qualify(prefix, target) for part, target in (raw.get("date_targets") or {}).items()},
        required=bool(raw.get("required", False)),
        postback=bool(raw.get("postback", False)),
        conditional=conditional,
    )


def _security_fields(section: dict, prefix: str) -> tuple[FieldMapping, ...]:
    """Expand a Yes/No question list into radio mappings with explanation boxes."""
    group = section["prefix"]
    fields = []
    for key, control in section["questions"].items():
        explain = FieldMapping(
            key=f"{group}.{key}_explain",
            type=FieldType.TEXTAREA,
            target=f"{prefix}tbx{control}",
        )
        fields.append(
            FieldMapping(
                key=f"{group}.{key}",
                type=FieldType.RADIO,
                target=f"{prefix}rbl{control}",
                radio_style=RADIO_INDEXED,
                required=True,
                postback=True,
                conditional=ConditionalTrigger(when="Y", fields=(explain,)),
            )
        )
    return tuple(fields)


def parse_step_plan(document: dict) -> StepPlan:
    prefix = document.get("target_prefix", "")
    default_next = document.get("next_target", "")
    steps = []
    for raw in document.get("steps") or ():
        fields = tuple(_parse_field(item, prefix) for item in raw.get("fields") or ())
        if raw.get("security_questions"):
            fields += _security_fields(raw["security_questions"], prefix)
        steps.append(
            StepDefinition(
                number=int(raw["number"]),
                name=raw["name"],
                fields=fields,
                next_target=raw.get("next_target", default_next),
            )
        )
    steps.sort(key=lambda item: item.number)
    return StepPlan(form_version=document.get("form_version", "ds160"), steps=tuple(steps))


@lru_cache
def load_step_plan(path: str | None = None) -> StepPlan:
    source = Path(path) if path else get_settings().step_definitions_path
    with Path(source).open("r", encoding="utf-8") as handle:
        return parse_step_plan(yaml.safe_load(handle) or {})


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return not value
    return False


def resolve_value(field_map: Mapping, key: str):
    """Look a dotted key up in a flat or nested field map. Empty values resolve to None."""
    if key in field_map:
        value = field_map[key]
        return None if is_empty(value) else value
    current = field_map
    for part in key.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return None if is_empty(current) else current


def translate_value(mapping: FieldMapping, value) -> str:
    if isinstance(value, bool):
        text = "Y" if value else "N"
    else:
        text = str(value).strip()
    if mapping.value_map:
        return mapping.value_map.get(text.upper(), text)
    if mapping.lookup:
        return lookup_code(load_reference(mapping.lookup), text)
    if mapping.type == FieldType.RADIO:
        return YES_NO.get(text.upper(), text)
    return text


def is_checked(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def split_date(value) -> tuple[str, str, str]:
    """Day (zero padded), upper-case month abbreviation, four digit year."""
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        text = str(value).strip()
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt).date()
                break
            except ValueError:
                continue
        else:
            try:
                parsed = datetime.fromisoformat(text).date()
            except ValueError as exc:
                raise ValueError(f"Unrecognised date: {value!r}") from exc
    return f"{parsed.day:02d}", MONTHS[parsed.month - 1], str(parsed.year)


def validate_completeness(step: StepDefinition, field_map: Mapping) -> list[LocalValidationWarning]:
    """Pre-submission check. Findings are advisory; the remote form has the final word."""
    warnings = []
    for mapping in step.fields:
        value = resolve_value(field_map, mapping.key)
        if value is None:
            if mapping.required:
                warnings.append(LocalValidationWarning(step.number, mapping.key, f"{mapping.key} is required"))
            continue
        if mapping.type == FieldType.SPLIT_DATE:
            try:
                split_date(value)
            except ValueError:
                warnings.append(LocalValidationWarning(step.number, mapping.key, f"{mapping.key} is not a valid date"))
        if mapping.conditional is None:
            continue
        for sub in mapping.conditional.branch(translate_value(mapping, value)):
            if sub.type == FieldType.TEXTAREA and resolve_value(field_map, sub.key) is None:
                warnings.append(
                    LocalValidationWarning(step.number, sub.key, f"{sub.key} is expected when {mapping.key} is set")
                )
    return warnings


def validate_plan(plan: StepPlan, field_map: Mapping) -> list[LocalValidationWarning]:
    warnings = []
    for step in plan.steps:
        warnings.extend(validate_completeness(step, field_map))
    return warnings
