from __future__ import annotations

import os
from pathlib import Path

from devbox_provisioner import probe as probe_mod
from devbox_provisioner.lib.textblock import inject
from devbox_provisioner.plan import load_plan
from devbox_provisioner.probe import Prober

from conftest import FakePackages


def _item(raw, home: Path):
    return load_plan([raw], variables={"HOME": str(home)}).items[0]


def test_package_installed_is_satisfied():
    prober = Prober(FakePackages({"git"}))
    r = prober.probe(_item({"kind": "package", "names": "git"}, Path("/")))
    assert r.currently_satisfied
    assert r.pending == ()


def test_package_reports_only_missing_names():
    prober = Prober(FakePackages({"git"}))
    r = prober.probe(_item({"kind": "package", "names": ["git", "curl", "jq"]}, Path("/")))
    assert not r.currently_satisfied
    assert r.pending == ("curl", "jq")
    assert "curl jq" in r.detail


def test_package_without_manager_is_not_satisfied():
    r = Prober(None).probe(_item({"kind": "package", "names": ["git"]}, Path("/")))
    assert not r.currently_satisfied
    assert r.pending == ("git",)
    assert r.error is None


def test_symlink_states(home: Path):
    src = home / "dotfiles" / "nvim"
    src.mkdir(parents=True)
    dst = home / "nvim"
    item = _item({"kind": "symlink", "src": str(src), "dst": str(dst)}, home)
    prober = Prober()

    assert not prober.probe(item).currently_satisfied
    assert "does not exist" in prober.probe(item).detail

    dst.symlink_to(src)
    assert prober.probe(item).currently_satisfied

    dst.unlink()
    dst.symlink_to(home)
    r = prober.probe(item)
    assert not r.currently_satisfied
    assert "links to" in r.detail

    dst.unlink()
    dst.write_text("regular file")
    assert not prober.probe(item).currently_satisfied


def test_symlink_through_real_path_is_satisfied(home: Path):
    src = home / "dotfiles" / "vimrc"
    src.parent.mkdir()
    src.write_text("set nu\n")
    alias = home / "df"
    alias.symlink_to(home / "dotfiles")
    dst = home / ".vimrc"
    dst.symlink_to(alias / "vimrc")

    item = _item({"kind": "symlink", "src": str(src), "dst": str(dst)}, home)
    assert Prober().probe(item).currently_satisfied


def test_textblock_missing_file_is_not_satisfied_and_not_created(home: Path):
    rc = home / ".bashrc"
    item = _item({"kind": "textblock", "file": str(rc), "start": "# >>>", "end": "# <<<", "content": "x"}, home)

    r = Prober().probe(item)

    assert not r.currently_satisfied
    assert r.error is None
    assert not rc.exists()


def test_textblock_requires_identical_body(home: Path):
    rc = home / ".bashrc"
    raw = {"kind": "textblock", "file": str(rc), "start": "# >>>", "end": "# <<<", "content": "export X=1"}
    inject(rc, "# >>>", "# <<<", "export X=1")

    assert Prober().probe(_item(raw, home)).currently_satisfied
    assert not Prober().probe(_item({**raw, "content": "export X=2"}, home)).currently_satisfied


def test_unreadable_file_is_a_probe_error_not_a_crash(home: Path, monkeypatch):
    rc = home / ".bashrc"
    rc.write_text("x\n")

    def denied(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(probe_mod, "read_lines", denied)
    r = Prober().probe(
        _item({"kind": "textblock", "file": str(rc), "start": "# >>>", "end": "# <<<", "content": "x"}, home)
    )

    assert not r.currently_satisfied
    assert "Permission denied" in (r.error or "")


def test_textblock_in_non_utf8_file_is_probed(home: Path):
    rc = home / ".bashrc"
    rc.write_bytes(b"alias x='\xff'\n")
    raw = {"kind": "textblock", "file": str(rc), "start": "# >>>", "end": "# <<<", "content": "x"}

    r = Prober().probe(_item(raw, home))

    assert not r.currently_satisfied
    assert r.error is None

    inject(rc, "# >>>", "# <<<", "x")
    assert Prober().probe(_item(raw, home)).currently_satisfied


def test_decode_error_is_a_probe_error_not_a_crash(home: Path, monkeypatch):
    rc = home / ".bashrc"
    rc.write_text("x\n")

    def undecodable(path):
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    monkeypatch.setattr(probe_mod, "read_lines", undecodable)
    r = Prober().probe(
        _item({"kind": "textblock", "file": str(rc), "start": "# >>>", "end": "# <<<", "content": "x"}, home)
    )

    assert not r.currently_satisfied
    assert "invalid start byte" in (r.error or "")


def test_directory_and_mode(home: Path):
    d = home / ".ssh"
    item = _item({"kind": "directory", "path": str(d), "mode": "0700"}, home)
    prober = Prober()

    assert not prober.probe(item).currently_satisfied
    d.mkdir()
    os.chmod(d, 0o755)
    assert "mode" in prober.probe(item).detail
    os.chmod(d, 0o700)
    assert prober.probe(item).currently_satisfied


def test_copy_compares_content_and_mode(home: Path):
    src = home / "src"
    dst = home / "dst"
    src.write_text("key")
    item = _item({"kind": "copy", "src": str(src), "dst": str(dst), "mode": "0600"}, home)
    prober = Prober()

    assert not prober.probe(item).currently_satisfied
    dst.write_text("other")
    assert "differs" in prober.probe(item).detail
    dst.write_text("key")
    os.chmod(dst, 0o644)
    assert not prober.probe(item).currently_satisfied
    os.chmod(dst, 0o600)
    assert prober.probe(item).currently_satisfied


def test_command_creates_guard(home: Path, runner):
    marker = home / ".nvm" / "nvm.sh"
    item = _item({"kind": "command", "run": "install-nvm", "creates": str(marker)}, home)
    prober = Prober(runner=runner)

    assert not prober.probe(item).currently_satisfied
    marker.parent.mkdir()
    marker.write_text("")
    assert prober.probe(item).currently_satisfied
    assert runner.calls == []


def test_command_unless_guard_runs_without_check(home: Path, runner):
    item = _item({"kind": "command", "run": "enable", "unless": "systemctl is-active x", "env": {"A": "1"}}, home)
    runner.on(["systemctl"], returncode=3)

    r = Prober(runner=runner).probe(item)

    assert not r.currently_satisfied
    assert runner.calls[0].argv == ["systemctl", "is-active", "x"]
    assert runner.calls[0].check is False
    assert runner.calls[0].env == {"A": "1"}


def test_command_without_guard_always_runs(home: Path):
    item = _item({"kind": "command", "run": "echo hi"}, home)
    assert not Prober().probe(item).currently_satisfied


def test_probe_plan_keys_by_identifier(home: Path):
    plan = load_plan(
        [
            {"kind": "package", "id": "git", "names": "git"},
            {"kind": "directory", "id": "d", "path": str(home)},
        ]
    )
    results = Prober(FakePackages({"git"})).probe_plan(plan)
    assert list(results) == ["git", "d"]
    assert all(r.currently_satisfied for r in results.values())
