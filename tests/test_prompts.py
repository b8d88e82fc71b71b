"""Tests for fragment selection and prompt assembly."""

from __future__ import annotations

import pytest

from lumo.guard import ResponseGuard
from lumo.prompts import (
    ALWAYS_ON,
    CLOSING,
    FRAGMENTS,
    TAG_FRAGMENTS,
    TAG_PRIORITY,
    assemble_prompt,
    fragment_ids,
)


class TestCatalog:
    def test_every_referenced_fragment_exists(self):
        referenced = set(ALWAYS_ON) | {CLOSING}
        for ids in TAG_FRAGMENTS.values():
            referenced.update(ids)
        assert referenced <= set(FRAGMENTS)

    def test_priority_covers_every_tag(self):
        assert set(TAG_PRIORITY) == set(TAG_FRAGMENTS)

    def test_catalog_is_read_only(self):
        with pytest.raises(TypeError):
            FRAGMENTS["identity"] = "something else"

    @pytest.mark.parametrize(
        "fragment_id",
        sorted({fid for ids in TAG_FRAGMENTS.values() for fid in ids}),
    )
    def test_topic_fragments_pass_the_leak_guard(self, fragment_id):
        # the model repeats these facts to visitors verbatim
        assert ResponseGuard().scan(FRAGMENTS[fragment_id]).matched == ()


class TestFragmentSelection:
    def test_always_on_first_and_closing_last(self):
        ids = fragment_ids(["project"])
        assert ids[: len(ALWAYS_ON)] == list(ALWAYS_ON)
        assert ids[-1] == CLOSING

    def test_empty_tags_behave_like_general(self):
        assert fragment_ids([]) == fragment_ids(["general"])

    def test_tags_follow_priority_not_input_order(self):
        ids = fragment_ids(["skills", "personal"])
        assert ids.index("background") < ids.index("skills")

    def test_unknown_tag_contributes_nothing(self):
        assert fragment_ids(["security_alert"]) == list(ALWAYS_ON) + [CLOSING]

    def test_appointment_fragments(self):
        ids = fragment_ids(["appointment"])
        assert ids.index("appointment_booking") < ids.index("appointment_cancel")


class TestAssemblePrompt:
    def test_joins_fragments_with_blank_lines(self):
        prompt = assemble_prompt(["contact"])
        expected = "\n\n".join(FRAGMENTS[fid] for fid in fragment_ids(["contact"]))
        assert prompt == expected

    def test_assembly_is_deterministic(self):
        assert assemble_prompt(("greeting",)) == assemble_prompt(["greeting"])

    def test_different_tags_give_different_prompts(self):
        assert assemble_prompt(["project"]) != assemble_prompt(["contact"])
