"""Tests for parsing observer / reflector output into sections."""

from obsmem.memory.sections import parse_om_sections, strip_single_code_fence


def test_tagged_blocks() -> None:
    raw = (
        "<observations>\nDate: 2026-02-12\n- 🔴 10:00 User wants sqlite storage\n</observations>\n"
        "<current-task>Wire up the store</current-task>\n"
        "<suggested-response>Ask which path to use</suggested-response>"
    )
    sections = parse_om_sections(raw)
    assert sections.ok
    assert sections.observations == "Date: 2026-02-12\n- 🔴 10:00 User wants sqlite storage"
    assert sections.current_task == "Wire up the store"
    assert sections.suggested_response == "Ask which path to use"


def test_tags_are_case_insensitive() -> None:
    sections = parse_om_sections("<OBSERVATIONS>- fact</OBSERVATIONS>")
    assert sections.observations == "- fact"


def test_markdown_heading_fallback() -> None:
    raw = (
        "## Observations\n- 🔴 decided on typer\n- 🟡 tests pending\n\n"
        "## Current Task\nWrite the CLI\n\n"
        "## Suggested Response\nRun the tests"
    )
    sections = parse_om_sections(raw)
    assert sections.observations == "- 🔴 decided on typer\n- 🟡 tests pending"
    assert sections.current_task == "Write the CLI"
    assert sections.suggested_response == "Run the tests"


def test_tag_wins_over_heading() -> None:
    raw = "<observations>- tagged</observations>\n# Observations\n- heading"
    assert parse_om_sections(raw).observations == "- tagged"


def test_whole_output_in_code_fence_is_unwrapped() -> None:
    raw = "```xml\n<observations>\n- fenced fact\n</observations>\n```"
    assert parse_om_sections(raw).observations == "- fenced fact"


def test_strip_single_code_fence_leaves_partial_fences() -> None:
    text = "intro\n```\ncode\n```"
    assert strip_single_code_fence(text) == text


def test_missing_observations_is_not_ok() -> None:
    sections = parse_om_sections("<current-task>something</current-task>")
    assert not sections.ok
    assert sections.current_task == "something"


def test_empty_and_none_output() -> None:
    assert not parse_om_sections("").ok
    assert not parse_om_sections(None).ok
    empty_tags = parse_om_sections("<observations>   </observations>")
    assert not empty_tags.ok
    assert empty_tags.current_task is None
