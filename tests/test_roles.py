"""Tests for strict user/assistant alternation."""

from codeforge.models.base import ContentBlock, ImageSource, Message
from codeforge.models.roles import MINIMAL_USER_TURN, normalize_alternation


def _roles(turns):
    return [t.role for t in turns]


class TestNormalizeAlternation:
    def test_system_user_tool_user(self):
        """[system, user, tool, user] → system out of band; user, assistant, user."""
        messages = [
            Message(role="system", content="You are helpful."),
            Message(role="user", content="hi"),
            Message(role="tool", content="result"),
            Message(role="user", content="thanks"),
        ]
        system, turns = normalize_alternation(messages)
        assert system == "You are helpful."
        assert _roles(turns) == ["user", "assistant", "user"]
        assert turns[1].content == "result"

    def test_multiple_system_messages_joined(self):
        messages = [
            Message(role="system", content="one"),
            Message(role="user", content="hi"),
            Message(role="system", content="two"),
        ]
        system, _ = normalize_alternation(messages)
        assert system == "one\n\ntwo"

    def test_consecutive_same_role_merged(self):
        messages = [
            Message(role="user", content="first"),
            Message(role="user", content="second"),
            Message(role="assistant", content="ok"),
        ]
        _, turns = normalize_alternation(messages)
        assert _roles(turns) == ["user", "assistant"]
        assert turns[0].content == "first\n\nsecond"

    def test_leading_assistant_dropped(self):
        messages = [
            Message(role="assistant", content="stale"),
            Message(role="tool", content="stale too"),
            Message(role="user", content="hi"),
        ]
        _, turns = normalize_alternation(messages)
        assert _roles(turns) == ["user"]
        assert turns[0].content == "hi"

    def test_empty_becomes_minimal_user_turn(self):
        system, turns = normalize_alternation([Message(role="system", content="sys")])
        assert system == "sys"
        assert len(turns) == 1
        assert turns[0].role == "user"
        assert turns[0].content == MINIMAL_USER_TURN

    def test_never_repeats_a_role_and_starts_with_user(self):
        roles = ["assistant", "user", "user", "tool", "assistant", "tool", "user", "system", "user", "assistant"]
        messages = [Message(role=r, content=f"m{i}") for i, r in enumerate(roles)]
        _, turns = normalize_alternation(messages)
        assert turns[0].role == "user"
        for prev, cur in zip(turns, turns[1:]):
            assert prev.role != cur.role

    def test_merge_keeps_non_text_blocks(self):
        image = ContentBlock(type="image", source=ImageSource(media_type="image/png", data="AAAA"))
        messages = [
            Message(role="user", content="look at this"),
            Message(role="user", content=[image, ContentBlock(type="text", text="what is it?")]),
        ]
        _, turns = normalize_alternation(messages)
        assert len(turns) == 1
        blocks = turns[0].content
        assert [b.type for b in blocks] == ["text", "image", "text"]
        assert blocks[0].text == "look at this"
        assert blocks[1].source.data == "AAAA"

    def test_adjacent_text_blocks_joined_with_blank_line(self):
        use = ContentBlock(type="tool_use", id="t1", name="read_file", input={"file_path": "a.py"})
        messages = [
            Message(role="user", content="go"),
            Message(role="assistant", content=[ContentBlock(type="text", text="reading"), use]),
            Message(role="tool", content="contents"),
        ]
        _, turns = normalize_alternation(messages)
        assert _roles(turns) == ["user", "assistant"]
        assert [b.type for b in turns[1].content] == ["text", "tool_use", "text"]
        assert turns[1].content[2].text == "contents"

    def test_input_not_mutated(self):
        messages = [Message(role="user", content="a"), Message(role="user", content="b")]
        normalize_alternation(messages)
        assert messages[0].content == "a"
