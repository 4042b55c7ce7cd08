"""
Per-turn context assembly.

build_turn_context is the single call an assistant turn makes before
generation: the rendered instruction block, the recent message window and
the unknown people worth asking about. A failing component degrades to its
empty value; the turn itself never fails on personalization faults.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Callable, Optional, TypeVar

import core.config as config
from core.context import Deadline, require_owner_id
from core.services import conversations, instructions, unknown_people
from core.services.shared import logger
from core.services.unknown_people import QuestionBuilder

T = TypeVar("T")


@dataclass
class TurnContextOptions:
    day_window: int = config.CONTEXT_DAY_WINDOW
    max_conversations: int = config.CONTEXT_MAX_CONVERSATIONS
    max_messages: int = config.CONTEXT_MAX_MESSAGES
    max_candidates: int = config.ASK_MAX_CANDIDATES
    cooldown_hours: Optional[float] = None
    timeout_seconds: Optional[float] = config.TURN_CONTEXT_TIMEOUT_SECONDS
    track_applied: bool = True
    question_builder: Optional[QuestionBuilder] = None


@dataclass
class ContextPayload:
    instructions_block: str = ""
    recent_messages: list = field(default_factory=list)
    people_to_ask: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _degrade(owner_id: str, component: str, call: Callable[[], T], fallback: T) -> T:
    try:
        return call()
    except Exception as exc:
        logger.warning(
            "turn_context_component_failed",
            extra={"owner_id": owner_id, "component": component, "error": str(exc)},
            exc_info=True,
        )
        return fallback


def build_turn_context(owner_id: str, options: Optional[TurnContextOptions] = None) -> ContextPayload:
    """
    Compose instructions, recent messages and ask-candidates for one turn.

    An invalid owner id is the only error raised; every component failure is
    logged and replaced by an empty result. Instruction usage tracking is
    scheduled in the background after a successful render.
    """
    owner_id = require_owner_id(owner_id)
    options = options or TurnContextOptions()
    deadline = Deadline.after(options.timeout_seconds)

    block, instruction_ids = _degrade(
        owner_id,
        "instructions",
        lambda: instructions.render_context(owner_id, deadline=deadline),
        ("", []),
    )
    if options.track_applied and instruction_ids:
        _degrade(
            owner_id,
            "applied_tracking",
            lambda: instructions.schedule_applied_tracking(instruction_ids),
            None,
        )

    recent_messages = _degrade(
        owner_id,
        "recent_messages",
        lambda: conversations.windowed_context(
            owner_id,
            day_window=options.day_window,
            max_conversations=options.max_conversations,
            max_messages=options.max_messages,
            deadline=deadline,
        ),
        [],
    )

    people_to_ask = _degrade(
        owner_id,
        "people_to_ask",
        lambda: unknown_people.candidates_to_ask(
            owner_id,
            max_candidates=options.max_candidates,
            cooldown_hours=options.cooldown_hours,
            question_builder=options.question_builder,
            deadline=deadline,
        ),
        [],
    )

    return ContextPayload(
        instructions_block=block,
        recent_messages=recent_messages,
        people_to_ask=people_to_ask,
    )
