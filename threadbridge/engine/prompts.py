"""Interactive prompts awaiting a user reaction.

Three flows share one slot on the session (``session.pending_prompt``):

* plan approval: a single approve/deny decision, sticky once approved;
* question sets: questions asked one at a time, answers returned to the
  agent together once the last one is answered;
* message approval: a message from someone outside the session, held
  until the owner allows it once, invites the sender, or denies it.

A trigger for a flow that is already pending is ignored, never queued.
Every prompt post is indexed with the registry so a reaction resolves
straight back to its session.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import emoji
from .error_handler import try_operation
from .models import (
    MessageApproval,
    PlanApproval,
    Question,
    QuestionOption,
    QuestionSet,
    SessionState,
)

if TYPE_CHECKING:
    from .capabilities import SessionActions, SessionContext
    from .models import Session
    from .streaming import StreamingEngine

logger = logging.getLogger(__name__)

MAX_OPTIONS = 4

PLAN_APPROVAL_MESSAGE = (
    "✅ **Plan ready for approval**\n\n"
    "👍 Approve and start building\n"
    "👎 Request changes\n\n"
    "*React to respond*"
)
PLAN_APPROVED_REPLY = "Plan approved! Please proceed with the implementation."
PLAN_REVISE_REPLY = "Please revise the plan. I would like some changes."


class InteractivePrompts:
    """Opens prompts and applies the reactions that answer them."""

    def __init__(
        self,
        ctx: SessionContext,
        streaming: StreamingEngine,
        actions: SessionActions,
    ) -> None:
        self._ctx = ctx
        self._streaming = streaming
        self._actions = actions

    async def _enter_awaiting(self, session: Session) -> None:
        if session.state is SessionState.ACTIVE:
            await self._actions.transition(session, SessionState.AWAITING_INPUT)

    async def _leave_awaiting(self, session: Session) -> None:
        # A first message held for the workspace prompt keeps the session waiting.
        if session.state is SessionState.AWAITING_INPUT and session.queued_prompt is None:
            await self._actions.transition(session, SessionState.ACTIVE)

    # ── Plan approval ────────────────────────────────────────────

    async def request_plan_approval(self, session: Session, tool_use_id: str) -> bool:
        """Post an approve/deny prompt for the agent's plan.

        Returns False when nothing was posted: the plan was already
        approved earlier in this conversation, or a prompt is pending.
        """
        if session.plan_approved:
            logger.debug("Plan already approved for %s", session.short_id)
            return False
        if session.pending_prompt is not None:
            logger.debug("Prompt already pending for %s; ignoring plan", session.short_id)
            return False

        await self._streaming.close_current_post(session)
        post = await session.platform.create_interactive_post(
            PLAN_APPROVAL_MESSAGE,
            [emoji.APPROVAL_EMOJIS[0], emoji.DENIAL_EMOJIS[0]],
            session.thread_id,
        )
        session.pending_prompt = PlanApproval(post_id=post.id, tool_use_id=tool_use_id)
        self._ctx.index.index_post(post.id, session)
        await self._enter_awaiting(session)
        self._streaming.stop_typing(session)
        return True

    async def handle_approval_reaction(
        self, session: Session, emoji_name: str, username: str,
    ) -> bool:
        pending = session.pending_prompt
        if not isinstance(pending, PlanApproval):
            return False
        approved = emoji.is_approval(emoji_name)
        if not approved and not emoji.is_denial(emoji_name):
            return False

        logger.info(
            "Plan %s (%s) by @%s",
            "approved" if approved else "rejected", session.short_id, username,
        )
        status = (
            f"✅ **Plan approved** by @{username} - starting implementation..."
            if approved else f"❌ **Changes requested** by @{username}"
        )
        session.pending_prompt = None
        if approved:
            session.plan_approved = True
        await self._leave_awaiting(session)
        await try_operation(
            lambda: session.platform.update_post(pending.post_id, status),
            "Update approval post", session=session,
        )
        await self._actions.send_to_agent(
            session, PLAN_APPROVED_REPLY if approved else PLAN_REVISE_REPLY,
        )
        return True

    # ── Sequential questions ─────────────────────────────────────

    async def start_question_set(
        self, session: Session, tool_use_id: str, raw_questions: list[dict[str, Any]],
    ) -> bool:
        """Begin asking the agent's questions, one post per question."""
        if session.pending_prompt is not None:
            logger.debug("Prompt already pending for %s; ignoring questions", session.short_id)
            return False
        if not raw_questions:
            return False

        questions = [
            Question(
                header=str(q.get("header", "")),
                question=str(q.get("question", "")),
                options=[
                    QuestionOption(
                        label=str(opt.get("label", "")),
                        description=str(opt.get("description", "") or ""),
                    )
                    for opt in (q.get("options") or [])[:MAX_OPTIONS]
                ],
            )
            for q in raw_questions
        ]
        # Claim the slot before any await so a duplicate trigger is ignored.
        session.pending_prompt = QuestionSet(tool_use_id=tool_use_id, questions=questions)
        await self._streaming.close_current_post(session)
        await self.post_current_question(session)
        await self._enter_awaiting(session)
        self._streaming.stop_typing(session)
        return True

    async def post_current_question(self, session: Session) -> None:
        pending = session.pending_prompt
        if not isinstance(pending, QuestionSet) or pending.current is None:
            return
        question = pending.current
        total = len(pending.questions)
        lines = [
            f"❓ **Question** *({pending.current_index + 1}/{total})*",
            f"**{question.header}:** {question.question}",
            "",
        ]
        for glyph, option in zip(emoji.NUMBER_GLYPHS, question.options):
            line = f"{glyph} **{option.label}**"
            if option.description:
                line += f" - {option.description}"
            lines.append(line)

        post = await session.platform.create_interactive_post(
            "\n".join(lines) + "\n",
            list(emoji.NUMBER_EMOJIS[:len(question.options)]),
            session.thread_id,
        )
        pending.current_post_id = post.id
        self._ctx.index.index_post(post.id, session)

    async def handle_question_reaction(
        self, session: Session, post_id: str, emoji_name: str, username: str,
    ) -> bool:
        pending = session.pending_prompt
        if not isinstance(pending, QuestionSet) or pending.current_post_id != post_id:
            return False
        question = pending.current
        if question is None:
            return False
        index = emoji.number_index(emoji_name)
        if index < 0 or index >= len(question.options):
            return False

        question.answer = question.options[index].label
        logger.debug("@%s answered %r: %s", username, question.header, question.answer)
        pending.current_index += 1
        await try_operation(
            lambda: session.platform.update_post(
                post_id, f"✅ **{question.header}**: {question.answer}",
            ),
            "Update answered question", session=session,
        )

        if pending.current is not None:
            await self.post_current_question(session)
            return True

        answers = "Here are my answers:\n" + "".join(
            f"- **{q.header}**: {q.answer}\n" for q in pending.questions
        )
        session.pending_prompt = None
        await self._leave_awaiting(session)
        await self._actions.send_to_agent(session, answers)
        return True

    # ── Message approval ─────────────────────────────────────────

    async def request_message_approval(
        self, session: Session, username: str, message: str,
    ) -> bool:
        """Hold a message from a non-collaborator until someone decides."""
        if session.pending_prompt is not None:
            logger.debug("Prompt already pending for %s; dropping message", session.short_id)
            return False
        text = (
            f"🔒 **Message from @{username}** needs approval:\n\n"
            f"> {message[:200]}{'...' if len(message) > 200 else ''}\n\n"
            "React: 👍 Allow once | ✅ Invite to session | 👎 Deny"
        )
        post = await session.platform.create_interactive_post(
            text,
            [emoji.APPROVAL_EMOJIS[0], emoji.ALLOW_ALL_EMOJIS[0], emoji.DENIAL_EMOJIS[0]],
            session.thread_id,
        )
        session.pending_prompt = MessageApproval(
            post_id=post.id, original_message=message, from_user=username,
        )
        self._ctx.index.index_post(post.id, session)
        return True

    async def handle_message_approval_reaction(
        self, session: Session, emoji_name: str, approver: str,
    ) -> bool:
        pending = session.pending_prompt
        if not isinstance(pending, MessageApproval):
            return False
        if approver != session.started_by and not session.platform.is_user_allowed(approver):
            return False

        allow_once = emoji.is_approval(emoji_name)
        invite = emoji.is_allow_all(emoji_name)
        deny = emoji.is_denial(emoji_name)
        if not (allow_once or invite or deny):
            return False

        session.pending_prompt = None
        platform = session.platform
        if deny:
            await try_operation(
                lambda: platform.update_post(
                    pending.post_id,
                    f"❌ Message from @{pending.from_user} denied by @{approver}",
                ),
                "Update message approval", session=session,
            )
            logger.info("Message from @%s denied by @%s", pending.from_user, approver)
            return True

        if invite:
            session.allowed_users.add(pending.from_user)
            status = f"✅ @{pending.from_user} invited to session by @{approver}"
        else:
            status = f"✅ Message from @{pending.from_user} approved by @{approver}"
        await try_operation(
            lambda: platform.update_post(pending.post_id, status),
            "Update message approval", session=session,
        )
        if invite:
            await self._actions.update_header(session)
            self._actions.persist(session)
        await self._actions.send_to_agent(session, pending.original_message)
        logger.info(
            "Message from @%s %s by @%s",
            pending.from_user, "invited" if invite else "approved", approver,
        )
        return True

    async def handle_reaction(
        self, session: Session, post_id: str, emoji_name: str, username: str,
    ) -> bool:
        """Route a reaction to whichever prompt owns ``post_id``."""
        pending = session.pending_prompt
        if pending is None:
            return False
        if isinstance(pending, QuestionSet):
            return await self.handle_question_reaction(session, post_id, emoji_name, username)
        if pending.post_id != post_id:
            return False
        if isinstance(pending, PlanApproval):
            return await self.handle_approval_reaction(session, emoji_name, username)
        return await self.handle_message_approval_reaction(session, emoji_name, username)
