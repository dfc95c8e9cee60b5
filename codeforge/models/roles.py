"""
Role normalization for backends that require strict user/assistant alternation.
"""
from __future__ import annotations

import logging

from codeforge.models.base import ContentBlock, Message

logger = logging.getLogger(__name__)

MINIMAL_USER_TURN = "Please assist me."
TURN_SEPARATOR = "\n\n"


def normalize_alternation(messages: list[Message]) -> tuple[str, list[Message]]:
    """
    Split out system text and rewrite the rest into strictly alternating turns.

    - system messages are joined (blank-line separated) and returned apart
    - tool messages become assistant turns
    - consecutive same-role turns are merged with a blank line between them
    - leading non-user turns are dropped
    - an empty result becomes a single minimal user turn
    """
    system_parts: list[str] = []
    turns: list[Message] = []

    for msg in messages:
        if msg.role == "system":
            text = msg.text_content()
            if text:
                system_parts.append(text)
            continue

        role = "assistant" if msg.role == "tool" else msg.role
        if not turns and role != "user":
            logger.debug("Dropping leading %s turn", msg.role)
            continue

        if turns and turns[-1].role == role:
            turns[-1] = _merge(turns[-1], msg)
        else:
            turns.append(Message(role=role, content=msg.content))

    if not turns:
        turns.append(Message(role="user", content=MINIMAL_USER_TURN))

    return TURN_SEPARATOR.join(system_parts), turns


def _merge(first: Message, second: Message) -> Message:
    if isinstance(first.content, str) and isinstance(second.content, str):
        if not first.content or not second.content:
            return first.model_copy(update={"content": first.content or second.content})
        return first.model_copy(update={"content": first.content + TURN_SEPARATOR + second.content})

    head = first.blocks()
    tail = second.blocks()
    if head and tail and head[-1].type == "text" and tail[0].type == "text":
        joined = ContentBlock(type="text", text=head[-1].text + TURN_SEPARATOR + tail[0].text)
        merged = head[:-1] + [joined] + tail[1:]
    else:
        merged = head + tail
    return first.model_copy(update={"content": merged})
