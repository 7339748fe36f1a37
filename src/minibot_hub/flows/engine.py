"""Interpreter for custom command flows."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

from minibot_hub.core.session import FlowSession, SessionRegistry
from minibot_hub.flows.steps import (
    AskQuestionStep,
    Condition,
    ConditionalStep,
    FlowDefinition,
    MultipleChoiceStep,
    SendMessageStep,
    TriggerStep,
    UnknownStep,
    parse_flow,
)
from minibot_hub.log import get_logger
from minibot_hub.messenger.models import Button, ParseMode

if TYPE_CHECKING:
    from minibot_hub.core.context import RequestContext
    from minibot_hub.handlers.notifier import NotificationFanout

logger = get_logger(__name__)

CALLBACK_PREFIX = "flow:"
RUNNING = "running"
AWAITING_INPUT = "awaiting_input"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def substitute(text: str, user_data: dict[str, str]) -> str:
    """Replace ``{key}`` placeholders with collected values; unknown keys are left as-is."""
    return _PLACEHOLDER.sub(lambda m: user_data.get(m.group(1), m.group(0)), text)


def evaluate_condition(condition: Condition, user_data: dict[str, str]) -> bool:
    value = user_data.get(condition.variable)
    match condition.operator:
        case "equals":
            return value == condition.value
        case "not_equals":
            return value != condition.value
        case "contains":
            return value is not None and condition.value in value
        case _:
            return False


def choice_callback(step_index: int, option_index: int) -> str:
    return f"{CALLBACK_PREFIX}{step_index}:{option_index}"


def parse_choice_callback(data: str) -> Optional[tuple[int, int]]:
    try:
        _, step, option = data.split(":")
        return int(step), int(option)
    except ValueError:
        return None


class FlowEngine:
    """Runs a bot's flow for one user at a time, keyed by (bot_id, user_id)."""

    def __init__(self, sessions: SessionRegistry, notifier: NotificationFanout, max_steps: int = 100):
        self._sessions = sessions
        self._notifier = notifier
        self._max_steps = max_steps

    @staticmethod
    def flow_for(ctx: RequestContext) -> Optional[FlowDefinition]:
        if not ctx.bot.is_custom:
            return None
        return parse_flow(ctx.bot.custom_flow)

    async def handle_text(self, ctx: RequestContext, text: str) -> bool:
        """Continue the user's flow or start one on a trigger. False means not handled."""
        key = (ctx.bot_id, ctx.user_id)
        session = self._sessions.flows.get(key)
        if session is not None:
            if ctx.event.command == "cancel":
                cancelled = self._sessions.cancel_all(ctx.user_id, ctx.bot_id)
                logger.info("flow_cancelled", bot_id=ctx.bot_id, user_id=ctx.user_id, sessions=cancelled)
                await ctx.reply("Cancelled.")
                return True
            await self._continue_with_text(ctx, session, text)
            return True

        flow = self.flow_for(ctx)
        if flow is None:
            return False
        if flow.find_trigger(text) is None:
            return False
        logger.info("flow_triggered", bot_id=ctx.bot_id, user_id=ctx.user_id, trigger=text)
        await self.start(ctx, flow)
        return True

    async def handle_choice(self, ctx: RequestContext, data: str) -> bool:
        """Apply a ``flow:<step>:<option>`` button press."""
        parsed = parse_choice_callback(data)
        key = (ctx.bot_id, ctx.user_id)
        session = self._sessions.flows.get(key)
        if parsed is None or session is None or session.step != AWAITING_INPUT:
            await ctx.reply("This choice is no longer available.")
            return True

        step_index, option_index = parsed
        steps = session.flow.steps
        step = steps[step_index] if 0 <= step_index < len(steps) else None
        if (
            step_index != session.current_step_index
            or not isinstance(step, MultipleChoiceStep)
            or not 0 <= option_index < len(step.options)
        ):
            logger.info("flow_choice_stale", bot_id=ctx.bot_id, user_id=ctx.user_id, data=data)
            await ctx.reply("This choice is no longer available.")
            return True

        option = step.options[option_index]
        session.user_data[step.variable] = option.value
        session.current_step_index += 1
        session.step = RUNNING
        self._sessions.flows.touch(key)
        await self._run(ctx, session)
        return True

    async def start(self, ctx: RequestContext, flow: FlowDefinition) -> None:
        session = FlowSession(bot_id=ctx.bot_id, user_id=ctx.user_id, flow=flow, step=RUNNING)
        self._sessions.flows.start((ctx.bot_id, ctx.user_id), session)
        await self._run(ctx, session)

    async def auto_start(self, ctx: RequestContext) -> bool:
        flow = self.flow_for(ctx)
        if flow is None or flow.auto_start_trigger() is None:
            return False
        await self.start(ctx, flow)
        return True

    async def _continue_with_text(self, ctx: RequestContext, session: FlowSession, text: str) -> None:
        if session.step != AWAITING_INPUT:
            # An earlier event of this user is still executing steps
            logger.info("flow_input_ignored_busy", bot_id=ctx.bot_id, user_id=ctx.user_id)
            return

        key = (ctx.bot_id, ctx.user_id)
        steps = session.flow.steps
        index = session.current_step_index
        step = steps[index] if 0 <= index < len(steps) else None

        match step:
            case AskQuestionStep(variable=variable):
                session.user_data[variable] = text
            case MultipleChoiceStep() as choice:
                option = choice.match(text)
                if option is None:
                    self._sessions.flows.touch(key)
                    await ctx.reply(
                        "Please select one of the options.",
                        buttons=self._choice_buttons(index, choice),
                    )
                    return
                session.user_data[choice.variable] = option.value
            case _:
                pass

        session.current_step_index += 1
        session.step = RUNNING
        self._sessions.flows.touch(key)
        await self._run(ctx, session)

    async def _run(self, ctx: RequestContext, session: FlowSession) -> None:
        """Execute steps from the cursor until an input step or the end of the flow."""
        key = (ctx.bot_id, ctx.user_id)
        steps = session.flow.steps
        executed = 0

        while session.current_step_index < len(steps):
            if self._sessions.flows.get(key) is not session:
                logger.info("flow_superseded", bot_id=ctx.bot_id, user_id=ctx.user_id)
                return
            if executed >= self._max_steps:
                logger.warning("flow_step_limit_reached", bot_id=ctx.bot_id, flow=session.flow.name)
                self._sessions.flows.discard(key)
                await ctx.reply("Sorry, this flow could not be completed.")
                return
            executed += 1

            index = session.current_step_index
            match steps[index]:
                case TriggerStep():
                    session.current_step_index += 1
                case SendMessageStep(message=message):
                    session.current_step_index += 1
                    await ctx.reply(substitute(message, session.user_data), parse_mode=ParseMode.MARKDOWN)
                case AskQuestionStep(question=question):
                    session.step = AWAITING_INPUT
                    self._sessions.flows.touch(key)
                    await ctx.reply(substitute(question, session.user_data), parse_mode=ParseMode.MARKDOWN)
                    return
                case MultipleChoiceStep() as choice:
                    session.step = AWAITING_INPUT
                    self._sessions.flows.touch(key)
                    await ctx.reply(
                        substitute(choice.question, session.user_data),
                        buttons=self._choice_buttons(index, choice),
                        parse_mode=ParseMode.MARKDOWN,
                    )
                    return
                case ConditionalStep(condition=condition, if_true=if_true, if_false=if_false):
                    target = if_true if evaluate_condition(condition, session.user_data) else if_false
                    # An out-of-range target ends the flow
                    session.current_step_index = target if 0 <= target < len(steps) else len(steps)
                case UnknownStep(type=kind):
                    logger.warning("flow_unknown_step", bot_id=ctx.bot_id, step_type=kind, index=index)
                    session.current_step_index += 1

        if self._sessions.flows.get(key) is session:
            await self._complete(ctx, session)

    async def _complete(self, ctx: RequestContext, session: FlowSession) -> None:
        self._sessions.flows.discard((ctx.bot_id, ctx.user_id))
        flow = session.flow
        if flow.completion_message:
            await ctx.reply(substitute(flow.completion_message, session.user_data), parse_mode=ParseMode.MARKDOWN)
        logger.info(
            "flow_completed",
            bot_id=ctx.bot_id,
            user_id=ctx.user_id,
            flow=flow.name,
            fields=len(session.user_data),
        )
        await self._notifier.notify_flow_completed(ctx.connection, ctx.bot, ctx.sender, flow.name, session.user_data)

    @staticmethod
    def _choice_buttons(step_index: int, step: MultipleChoiceStep) -> list[list[Button]]:
        return [
            [Button(text=option.text, callback_data=choice_callback(step_index, i))]
            for i, option in enumerate(step.options)
        ]
