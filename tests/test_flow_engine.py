"""Custom flow interpreter: triggers, questions, choices, conditionals."""

import pytest

from conftest import VALID_TOKEN, FakeConnection, callback_event, make_ctx, text_event
from minibot_hub.core.session import SessionRegistry
from minibot_hub.core.types import BotType
from minibot_hub.flows.engine import (
    AWAITING_INPUT,
    FlowEngine,
    choice_callback,
    evaluate_condition,
    parse_choice_callback,
    substitute,
)
from minibot_hub.flows.steps import (
    AskQuestionStep,
    Condition,
    ConditionalStep,
    MultipleChoiceStep,
    UnknownStep,
    parse_flow,
)
from minibot_hub.storage.models import BotRecord

USER = 500


class RecordingNotifier:
    def __init__(self) -> None:
        self.completed: list[tuple[str, dict[str, str]]] = []

    async def notify_flow_completed(self, connection, bot, sender, flow_name, user_data):
        self.completed.append((flow_name, dict(user_data)))
        return 1


def _bot(flow: dict, bot_type: BotType = BotType.CUSTOM) -> BotRecord:
    return BotRecord(
        id=1,
        owner_id=10,
        bot_name="Survey Bot",
        bot_username="survey_bot",
        token_encrypted="",
        bot_type=bot_type,
        custom_flow=flow,
    )


SURVEY = {
    "name": "Survey",
    "steps": [
        {"type": "trigger", "trigger": "/survey"},
        {"type": "ask_question", "question": "What's your name?", "variable": "name"},
        {"type": "send_message", "message": "Hi {name}!"},
    ],
}

COLOR = {
    "name": "Colors",
    "completion_message": "Thanks {name}, noted {color}.",
    "steps": [
        {"type": "trigger", "trigger": "color"},
        {
            "type": "multiple_choice",
            "question": "Pick a color",
            "variable": "color",
            "options": [{"text": "Red", "value": "red"}, {"text": "Blue", "value": "blue"}],
        },
        {
            "type": "conditional",
            "condition": {"variable": "color", "operator": "equals", "value": "red"},
            "ifTrue": 3,
            "ifFalse": 4,
        },
        {"type": "send_message", "message": "Warm choice."},
        {"type": "send_message", "message": "Cool choice."},
    ],
}


class Harness:
    def __init__(self, flow: dict, bot_type: BotType = BotType.CUSTOM):
        self.bot = _bot(flow, bot_type)
        self.conn = FakeConnection(self.bot, VALID_TOKEN)
        self.sessions = SessionRegistry()
        self.notifier = RecordingNotifier()
        self.engine = FlowEngine(self.sessions, self.notifier)

    async def say(self, text: str) -> bool:
        ctx = make_ctx(self.conn, self.bot, text_event(self.bot.id, USER, text))
        return await self.engine.handle_text(ctx, text)

    async def press(self, data: str) -> bool:
        ctx = make_ctx(self.conn, self.bot, callback_event(self.bot.id, USER, data))
        return await self.engine.handle_choice(ctx, data)

    @property
    def session(self):
        return self.sessions.flows.get((self.bot.id, USER))

    def last_text(self) -> str:
        return self.conn.sent[-1].text


# ── Running flows ─────────────────────────────────────


class TestQuestionFlow:
    async def test_survey_scenario(self):
        h = Harness(SURVEY)
        assert await h.say("/survey")
        assert h.last_text() == "What's your name?"
        assert h.session.step == AWAITING_INPUT
        assert h.session.current_step_index == 1

        assert await h.say("Ada")
        assert h.last_text() == "Hi Ada!"
        assert h.session is None
        assert h.notifier.completed == [("Survey", {"name": "Ada"})]

    async def test_text_without_trigger_is_not_handled(self):
        h = Harness(SURVEY)
        assert await h.say("hello") is False
        assert h.conn.sent == []

    async def test_quick_bot_has_no_flow(self):
        h = Harness(SURVEY, bot_type=BotType.QUICK)
        assert await h.say("/survey") is False

    async def test_cancel_ends_session(self):
        h = Harness(SURVEY)
        await h.say("/survey")
        assert await h.say("/cancel")
        assert h.last_text() == "Cancelled."
        assert h.session is None
        assert h.notifier.completed == []


class TestChoiceFlow:
    async def test_invalid_choice_reprompts(self):
        h = Harness(COLOR)
        await h.say("color")
        assert await h.say("Green")
        assert h.last_text() == "Please select one of the options."
        assert h.conn.sent[-1].buttons
        assert h.session.current_step_index == 1

    async def test_choice_by_text_and_true_branch(self):
        h = Harness(COLOR)
        await h.say("color")
        await h.say("Red")
        texts = h.conn.texts()
        assert "Warm choice." in texts
        assert "Cool choice." in texts  # a true branch falls through to later steps
        assert texts[-1] == "Thanks {name}, noted red."
        assert h.notifier.completed == [("Colors", {"color": "red"})]

    async def test_choice_by_button_takes_false_branch(self):
        h = Harness(COLOR)
        await h.say("color")
        assert h.conn.callback_data() == [choice_callback(1, 0), choice_callback(1, 1)]

        assert await h.press(choice_callback(1, 1))
        texts = h.conn.texts()
        assert "Warm choice." not in texts
        assert "Cool choice." in texts
        assert h.session is None

    async def test_stale_button_is_rejected(self):
        h = Harness(COLOR)
        await h.say("color")
        await h.press(choice_callback(0, 1))
        assert h.last_text() == "This choice is no longer available."
        assert h.session.current_step_index == 1

    async def test_button_without_session(self):
        h = Harness(COLOR)
        await h.press(choice_callback(1, 0))
        assert h.last_text() == "This choice is no longer available."


class TestEdgeCases:
    async def test_unknown_step_is_skipped(self):
        flow = {
            "steps": [
                {"type": "trigger", "trigger": "go"},
                {"type": "teleport", "where": "moon"},
                {"type": "send_message", "message": "done"},
            ]
        }
        h = Harness(flow)
        await h.say("go")
        assert h.conn.texts() == ["done"]
        assert h.notifier.completed[0][0] == "Custom Flow"

    async def test_looping_flow_is_capped(self):
        flow = {
            "steps": [
                {"type": "trigger", "trigger": "loop"},
                {
                    "type": "conditional",
                    "condition": {"variable": "x", "operator": "equals", "value": "y"},
                    "if_true": 1,
                    "if_false": 1,
                },
            ]
        }
        h = Harness(flow)
        await h.say("loop")
        assert h.last_text() == "Sorry, this flow could not be completed."
        assert h.session is None
        assert h.notifier.completed == []

    async def test_out_of_range_target_ends_flow(self):
        flow = {
            "steps": [
                {"type": "trigger", "trigger": "go"},
                {
                    "type": "conditional",
                    "condition": {"variable": "x", "operator": "not_equals", "value": "y"},
                    "if_true": 99,
                    "if_false": 2,
                },
                {"type": "send_message", "message": "unreachable"},
            ]
        }
        h = Harness(flow)
        await h.say("go")
        assert "unreachable" not in h.conn.texts()
        assert len(h.notifier.completed) == 1

    async def test_auto_start(self):
        flow = {
            "steps": [
                {"type": "trigger", "trigger": "/survey", "auto_start": True},
                {"type": "ask_question", "question": "Name?", "variable": "name"},
            ]
        }
        h = Harness(flow)
        ctx = make_ctx(h.conn, h.bot, text_event(h.bot.id, USER, "/start"))
        assert await h.engine.auto_start(ctx)
        assert h.last_text() == "Name?"

    async def test_no_auto_start_without_flag(self):
        h = Harness(SURVEY)
        ctx = make_ctx(h.conn, h.bot, text_event(h.bot.id, USER, "/start"))
        assert await h.engine.auto_start(ctx) is False


# ── Helpers and parsing ───────────────────────────────


class TestHelpers:
    def test_substitute_keeps_unknown_placeholders(self):
        assert substitute("Hi {name}, {missing}", {"name": "Ada"}) == "Hi Ada, {missing}"

    @pytest.mark.parametrize(
        "operator, value, expected",
        [("equals", "red", True), ("not_equals", "red", False), ("contains", "e", True), ("contains", "z", False)],
    )
    def test_evaluate_condition(self, operator, value, expected):
        assert evaluate_condition(Condition("color", operator, value), {"color": "red"}) is expected

    def test_missing_variable(self):
        assert evaluate_condition(Condition("color", "contains", "r"), {}) is False
        assert evaluate_condition(Condition("color", "not_equals", "r"), {}) is True

    def test_parse_choice_callback(self):
        assert parse_choice_callback(choice_callback(3, 1)) == (3, 1)
        assert parse_choice_callback("flow:x:1") is None
        assert parse_choice_callback("flow:1") is None


class TestParseFlow:
    def test_parses_step_kinds(self):
        flow = parse_flow(COLOR)
        assert flow.name == "Colors"
        assert isinstance(flow.steps[1], MultipleChoiceStep)
        assert flow.steps[1].match("Blue").value == "blue"
        assert flow.steps[1].match("blue").text == "Blue"
        cond = flow.steps[2]
        assert isinstance(cond, ConditionalStep)
        assert (cond.if_true, cond.if_false) == (3, 4)

    def test_option_value_defaults_to_text(self):
        flow = parse_flow(
            {"steps": [{"type": "multiple_choice", "question": "?", "variable": "v", "options": [{"text": "Yes"}]}]}
        )
        assert flow.steps[0].options[0].value == "Yes"

    def test_malformed_steps_become_unknown(self):
        flow = parse_flow(
            {
                "steps": [
                    {"type": "ask_question", "question": "missing variable"},
                    {"type": "conditional", "condition": {"variable": "v", "operator": "gt", "value": 1}, "if_true": 0, "if_false": 0},
                    "not a dict",
                    {"type": "ask_question", "question": "ok", "variable": "v"},
                ]
            }
        )
        assert [type(s) for s in flow.steps] == [UnknownStep, UnknownStep, UnknownStep, AskQuestionStep]

    def test_nothing_usable(self):
        assert parse_flow(None) is None
        assert parse_flow({"steps": "nope"}) is None
