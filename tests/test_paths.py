import os
from pathlib import Path

from bridge_agent import paths


def test_resolve_relative_against_base(tmp_path: Path) -> None:
    assert paths.resolve(str(tmp_path), "a/b.txt") == str(tmp_path / "a" / "b.txt")


def test_resolve_absolute_ignores_base(tmp_path: Path) -> None:
    other = tmp_path / "other"
    assert paths.resolve("/somewhere/else", str(other)) == str(other)


def test_resolve_normalises_dotdot(tmp_path: Path) -> None:
    assert paths.resolve(str(tmp_path / "x"), "../y") == str(tmp_path / "y")


def test_resolve_expands_home() -> None:
    assert paths.resolve("/", "~") == os.path.expanduser("~")


def test_change_directory_to_existing_dir(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    assert paths.change_directory(str(tmp_path), "sub") == str(tmp_path / "sub")


def test_change_directory_rejects_missing_and_files(tmp_path: Path) -> None:
    (tmp_path / "f.txt").write_text("x")
    assert paths.change_directory(str(tmp_path), "missing") is None
    assert paths.change_directory(str(tmp_path), "f.txt") is None
