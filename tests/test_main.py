from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml

from devbox_provisioner.executor import ActionTaken, Outcome, Report
from devbox_provisioner.logging_utils import configure_logging
from devbox_provisioner.main import build_components, main, run
from devbox_provisioner.manifests import load_plan_document
from devbox_provisioner.report_store import load_report, save_report


@pytest.fixture
def plan_file(tmp_path: Path, home: Path) -> Path:
    (home / "dotfiles" / "nvim").mkdir(parents=True)
    p = tmp_path / "plan.yaml"
    p.write_text(
        yaml.safe_dump(
            {
                "variables": {"DOTFILES": "${HOME}/dotfiles"},
                "items": [
                    {"kind": "directory", "id": "config-dir", "path": "~/.config"},
                    {"kind": "symlink", "id": "nvim", "src": "${DOTFILES}/nvim", "dst": "~/.config/nvim"},
                    {
                        "kind": "textblock",
                        "id": "bashrc",
                        "file": "~/.bashrc",
                        "start": "# >>> devbox >>>",
                        "end": "# <<< devbox <<<",
                        "content": 'export PATH="$HOME/.local/bin:$PATH"\n',
                    },
                ],
            }
        )
    )
    return p


@pytest.fixture(autouse=True)
def fake_home(home: Path, monkeypatch):
    monkeypatch.setenv("HOME", str(home))
    return home


def test_main_applies_then_skips(plan_file: Path, home: Path, tmp_path: Path):
    log = tmp_path / "logs" / "provision.log"
    report_path = tmp_path / "report.json"
    args = ["--plan", str(plan_file), "--log", str(log), "--report", str(report_path)]

    assert main(args) == 0
    assert (home / ".config" / "nvim").is_symlink()
    assert "# >>> devbox >>>" in (home / ".bashrc").read_text()
    first = json.loads(report_path.read_text())
    assert first["summary"]["applied"] == 3

    assert main(args) == 0
    second = json.loads(report_path.read_text())
    assert second["summary"]["skipped"] == 3
    assert (home / ".bashrc").read_text().count("# >>> devbox >>>") == 1

    text = log.read_text()
    assert "Apply symlink nvim" in text
    assert "Skip textblock bashrc" in text


def test_dry_run_leaves_home_alone(plan_file: Path, home: Path, tmp_path: Path):
    report_path = tmp_path / "report.yaml"

    assert main(["--plan", str(plan_file), "--log", str(tmp_path / "p.log"), "--report", str(report_path), "--dry-run"]) == 0

    assert not (home / ".bashrc").exists()
    data = yaml.safe_load(report_path.read_text())
    assert data["dry_run"] is True
    assert data["summary"]["pending"] == 3


def test_window_flags(plan_file: Path, home: Path, tmp_path: Path):
    report = run(plan_path=str(plan_file), log_path=str(tmp_path / "p.log"), start_at="nvim", stop_after="nvim")
    assert [o.item_id for o in report.outcomes] == ["nvim"]
    # config-dir was not run, so the link has no parent to live in.
    assert report.outcome_for("nvim").action_taken == ActionTaken.FAILED


def test_var_override(plan_file: Path, home: Path, tmp_path: Path):
    other = tmp_path / "elsewhere"
    (other / "nvim").mkdir(parents=True)

    assert main(["--plan", str(plan_file), "--log", str(tmp_path / "p.log"), "--var", f"DOTFILES={other}"]) == 0
    assert (home / ".config" / "nvim").resolve() == (other / "nvim").resolve()


def test_failed_item_exit_code(tmp_path: Path):
    p = tmp_path / "plan.yaml"
    p.write_text(yaml.safe_dump({"items": [{"kind": "copy", "src": str(tmp_path / "nope"), "dst": str(tmp_path / "x")}]}))
    assert main(["--plan", str(p), "--log", str(tmp_path / "p.log")]) == 1


def test_malformed_plan_exit_code(tmp_path: Path):
    p = tmp_path / "plan.yaml"
    p.write_text(yaml.safe_dump({"items": [{"kind": "symlink", "src": "/a"}]}))
    assert main(["--plan", str(p), "--log", str(tmp_path / "p.log")]) == 2


def test_missing_plan_exit_code(tmp_path: Path):
    assert main(["--plan", str(tmp_path / "nope.yaml"), "--log", str(tmp_path / "p.log")]) == 2


def test_unknown_start_at_exit_code(plan_file: Path, tmp_path: Path):
    assert main(["--plan", str(plan_file), "--log", str(tmp_path / "p.log"), "--start-at", "zzz"]) == 2


def test_list_profiles(capsys):
    assert main(["--list-profiles"]) == 0
    out = capsys.readouterr().out.split()
    assert "nvim" in out and "shell" in out


@pytest.mark.parametrize("argv", [[], ["--plan", "a.yaml", "--profile", "nvim"], ["--plan", "a.yaml", "--var", "NOEQUALS"]])
def test_usage_errors(argv):
    with pytest.raises(SystemExit) as ei:
        main(argv)
    assert ei.value.code == 2


def _doc(items, settings=None):
    return load_plan_document({"settings": settings or {}, "items": items}, home="/home/dev")


def test_package_manager_only_detected_for_package_items(runner):
    seen = []

    def which(binary):
        seen.append(binary)
        return False

    prober, executor = build_components(_doc([{"kind": "directory", "path": "/tmp"}]), runner=runner, which=which)
    assert seen == []
    assert prober.packages is None and executor.packages is None


def test_missing_requested_manager_becomes_item_failure_reason(runner):
    loaded = _doc([{"kind": "package", "names": "git"}], settings={"package_manager": "pacman"})

    _, executor = build_components(loaded, runner=runner, which=lambda b: False)

    assert executor.packages is None
    assert "pacman" in executor.no_packages_reason


def test_detected_manager_uses_plan_settings(runner):
    loaded = _doc([{"kind": "package", "names": "git"}], settings={"sudo": "never", "refresh_index": False})

    prober, executor = build_components(loaded, runner=runner, which=lambda b: b in {"apt-get", "dpkg"})

    assert executor.packages is prober.packages
    assert executor.packages.name == "apt"
    assert executor.packages.sudo == "never"
    assert executor.packages.refresh_index is False


def test_report_round_trip(tmp_path: Path):
    report = Report(outcomes=[Outcome("a", ActionTaken.APPLIED, detail="done"), Outcome("b", ActionTaken.FAILED, error="x")])

    save_report(tmp_path / "r.yml", report)
    save_report(tmp_path / "r.json", report)

    for name in ("r.yml", "r.json"):
        data = load_report(tmp_path / name)
        assert data["ok"] is False
        assert data["outcomes"][1] == {"item": "b", "action": "failed", "error": "x"}
    assert load_report(tmp_path / "missing.json") == {}


def test_configure_logging_is_idempotent(tmp_path: Path):
    root = logging.getLogger()
    path = configure_logging(str(tmp_path / "a.log"), also_console=False)
    count = len(root.handlers)

    again = configure_logging(str(tmp_path / "b.log"), also_console=False)

    assert again == path == str(tmp_path / "a.log")
    assert len(root.handlers) == count


def test_configure_logging_falls_back_to_cwd(tmp_path: Path, monkeypatch):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    monkeypatch.chdir(tmp_path)

    path = configure_logging(str(blocker / "provision.log"), also_console=False)

    assert path == str(tmp_path / "devbox-provisioner.log")


def test_second_configure_only_moves_console_level(tmp_path: Path):
    configure_logging(str(tmp_path / "a.log"))
    configure_logging(str(tmp_path / "a.log"), level=logging.DEBUG)

    consoles = [h for h in logging.getLogger().handlers if getattr(h, "_devbox_console", False)]
    assert [h.level for h in consoles] == [logging.DEBUG]
