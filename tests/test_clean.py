import pytest

from devrig.build.clean import clean_dir
from devrig.utils.diagnostics import AssetCleanError


def test_clean_dir_removes_everything_but_git(tmp_path):
    output = tmp_path / "build"
    (output / ".git").mkdir(parents=True)
    (output / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (output / "server").mkdir()
    (output / "server" / "server.py").write_text("x = 1\n")
    (output / "assets.json").write_text("{}")
    (output / ".cache").write_text("dotfiles are removed too")

    removed = clean_dir(output)

    assert sorted(path.name for path in removed) == [".cache", "assets.json", "server"]
    assert [path.name for path in output.iterdir()] == [".git"]
    assert (output / ".git" / "HEAD").exists()


def test_clean_dir_missing_directory_is_noop(tmp_path):
    assert clean_dir(tmp_path / "nope") == []


def test_clean_dir_honours_custom_ignore(tmp_path):
    (tmp_path / "keep.txt").write_text("k")
    (tmp_path / "drop.txt").write_text("d")

    clean_dir(tmp_path, ignore=("keep.*",))

    assert [path.name for path in tmp_path.iterdir()] == ["keep.txt"]


def test_clean_dir_rejects_file_path(tmp_path):
    target = tmp_path / "build"
    target.write_text("not a directory")

    with pytest.raises(AssetCleanError):
        clean_dir(target)


def test_clean_dir_wraps_os_errors(tmp_path, monkeypatch):
    (tmp_path / "locked.txt").write_text("x")

    def refuse(self, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(type(tmp_path), "unlink", refuse)

    with pytest.raises(AssetCleanError, match="denied"):
        clean_dir(tmp_path)
