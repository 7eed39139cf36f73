# tests/test_paths.py

import pytest

from mediagate.errors import InvalidPath
from mediagate.paths import AssetPath


@pytest.mark.parametrize("raw", [
    "../etc/passwd",
    "movies/../../etc/passwd",
    "movies/..",
    "/etc/passwd",
    "\\windows\\system32",
    "C:/Windows",
    "movies/<script>.mp4",
    "movies/a|b.mp4",
    "movies/what?.mp4",
    "movies/bad\x00name.mp4",
])
def test_parse_rejects_unsafe_paths(raw):
    with pytest.raises(InvalidPath) as ei:
        AssetPath.parse(raw)
    assert ei.value.status_code == 403


def test_parse_normalizes_empty_and_dot_segments():
    p = AssetPath.parse("movies//./2024/clip.mp4")
    assert p.segments == ("movies", "2024", "clip.mp4")
    assert p.value == "movies/2024/clip.mp4"
    assert p.name == "clip.mp4"
    assert p.suffix == ".mp4"
    assert p.stem == "clip"


def test_backslashes_are_separators():
    assert AssetPath.parse("movies\\2024\\clip.mp4").value == "movies/2024/clip.mp4"


def test_root_and_empty():
    assert AssetPath.parse("").is_root
    assert AssetPath.parse(None) == AssetPath.root()
    assert AssetPath.root().prefixes() == [""]


def test_prefixes_run_root_to_self():
    assert AssetPath.parse("a/b/c").prefixes() == ["", "a", "a/b", "a/b/c"]


def test_is_within_respects_segment_boundaries():
    assert AssetPath.parse("a/b/c").is_within("a/b")
    assert AssetPath.parse("a/b").is_within("a/b")
    assert AssetPath.parse("a/b").is_within("")
    assert not AssetPath.parse("a/bc").is_within("a/b")
    assert not AssetPath.parse("a").is_within("a/b")


def test_parent_and_child():
    p = AssetPath.parse("a/b/c.mp4")
    assert p.parent.value == "a/b"
    assert p.parent.child("d.mp4").value == "a/b/d.mp4"
    with pytest.raises(InvalidPath):
        p.parent.child("..")
