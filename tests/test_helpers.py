from pathlib import Path

from obsmem.utils.helpers import atomic_append_text, atomic_write_text, random_id, trim_preview, truncate_text


def test_atomic_write_text_creates_and_overwrites_file(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "sample.json"
    atomic_write_text(path, "v1\n", encoding="utf-8")
    assert path.read_text(encoding="utf-8") == "v1\n"

    atomic_write_text(path, "v2\n", encoding="utf-8")
    assert path.read_text(encoding="utf-8") == "v2\n"
    assert [p.name for p in path.parent.iterdir()] == ["sample.json"]


def test_atomic_append_text_appends_content(tmp_path: Path) -> None:
    path = tmp_path / "append.jsonl"
    atomic_append_text(path, "line1\n", encoding="utf-8")
    atomic_append_text(path, "line2\n", encoding="utf-8")
    assert path.read_text(encoding="utf-8") == "line1\nline2\n"


def test_random_id_prefix_and_uniqueness() -> None:
    ids = {random_id("seg") for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("seg_") for i in ids)


def test_trim_preview_collapses_and_clips() -> None:
    assert trim_preview("a  b\n\nc") == "a b c"
    assert trim_preview("x" * 10, 4) == "xxxx…"


def test_truncate_text_marks_cut() -> None:
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefgh", 3, "[cut]") == "abc[cut]"
