"""Custom flow definitions: a closed set of step kinds parsed from stored JSON."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from minibot_hub.log import get_logger

logger = get_logger(__name__)

OPERATORS = ("equals", "not_equals", "contains")


@dataclass(frozen=True)
class TriggerStep:
    trigger: str
    auto_start: bool = False


@dataclass(frozen=True)
class SendMessageStep:
    message: str


@dataclass(frozen=True)
class AskQuestionStep:
    question: str
    variable: str


@dataclass(frozen=True)
class ChoiceOption:
    text: str
    value: str


@dataclass(frozen=True)
class MultipleChoiceStep:
    question: str
    variable: str
    options: tuple[ChoiceOption, ...]

    def match(self, text: str) -> Optional[ChoiceOption]:
        for option in self.options:
            if text == option.text or text == option.value:
                return option
        return None


@dataclass(frozen=True)
class Condition:
    variable: str
    operator: str
    value: str


@dataclass(frozen=True)
class ConditionalStep:
    condition: Condition
    if_true: int
    if_false: int


@dataclass(frozen=True)
class UnknownStep:
    """A step this runtime does not understand; executed as a no-op."""

    type: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


Step = Union[TriggerStep, SendMessageStep, AskQuestionStep, MultipleChoiceStep, ConditionalStep, UnknownStep]

INPUT_STEPS = (AskQuestionStep, MultipleChoiceStep)


@dataclass(frozen=True)
class FlowDefinition:
    name: str
    steps: tuple[Step, ...]
    welcome_message: Optional[str] = None
    completion_message: Optional[str] = None

    def triggers(self) -> list[TriggerStep]:
        return [s for s in self.steps if isinstance(s, TriggerStep)]

    def find_trigger(self, text: str) -> Optional[TriggerStep]:
        for trigger in self.triggers():
            if trigger.trigger == text:
                return trigger
        return None

    def auto_start_trigger(self) -> Optional[TriggerStep]:
        for trigger in self.triggers():
            if trigger.auto_start:
                return trigger
        return None


def _pick(raw: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw:
            return raw[name]
    raise KeyError(names[0])


def parse_step(raw: dict[str, Any]) -> Step:
    """Build one step from its stored form. Malformed or unknown steps become UnknownStep."""
    kind = str(raw.get("type", ""))
    try:
        match kind:
            case "trigger":
                return TriggerStep(trigger=str(raw["trigger"]), auto_start=bool(raw.get("auto_start", False)))
            case "send_message":
                return SendMessageStep(message=str(raw["message"]))
            case "ask_question":
                return AskQuestionStep(question=str(raw["question"]), variable=str(raw["variable"]))
            case "multiple_choice":
                options = tuple(
                    ChoiceOption(text=str(opt["text"]), value=str(opt.get("value", opt["text"])))
                    for opt in raw["options"]
                )
                if not options:
                    raise ValueError("multiple_choice needs at least one option")
                return MultipleChoiceStep(question=str(raw["question"]), variable=str(raw["variable"]), options=options)
            case "conditional":
                cond = raw["condition"]
                operator = str(cond["operator"])
                if operator not in OPERATORS:
                    raise ValueError(f"unsupported operator {operator!r}")
                return ConditionalStep(
                    condition=Condition(variable=str(cond["variable"]), operator=operator, value=str(cond["value"])),
                    if_true=int(_pick(raw, "if_true", "ifTrue")),
                    if_false=int(_pick(raw, "if_false", "ifFalse")),
                )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("flow_step_invalid", step_type=kind, error=str(e))
    return UnknownStep(type=kind, raw=dict(raw))


def parse_flow(raw: Any) -> Optional[FlowDefinition]:
    """Parse a stored flow definition; None when there is nothing usable."""
    if not isinstance(raw, dict):
        return None
    steps_raw = raw.get("steps") or []
    if not isinstance(steps_raw, list):
        logger.warning("flow_steps_invalid", flow=raw.get("name"))
        return None
    steps = tuple(parse_step(s) if isinstance(s, dict) else UnknownStep(type=type(s).__name__) for s in steps_raw)
    return FlowDefinition(
        name=str(raw.get("name") or "Custom Flow"),
        steps=steps,
        welcome_message=raw.get("welcome_message"),
        completion_message=raw.get("completion_message"),
    )
