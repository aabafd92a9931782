import json
import os
from pathlib import Path
import subprocess
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["OUTPUT_DIR"] = str(tmp_path / "outputs")
    env["DIRECTORY_BACKEND"] = "memory"
    env["TARGET_CONTAINER"] = "ou=users,dc=example,dc=com"
    env["UPN_DOMAIN"] = "example.com"
    env["CREDENTIAL_MODE"] = "generated"
    env["GROUP_MODE"] = "none"
    return env


def _write_roster(path: Path) -> Path:
    path.write_text(
        "First Name,Last Name,Department\nÉlodie,Dupont,Finance\nJean,Dupont,Sales\n",
        encoding="utf-8",
    )
    return path


def _run(args: list[str], env: dict[str, str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "provisioner.main", *args],
        cwd=PROJECT_ROOT,
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_provisions_roster(tmp_path: Path) -> None:
    roster = _write_roster(tmp_path / "roster.csv")

    proc = _run(["provision", "--input", str(roster), "--run-key", "cli-batch"], _base_env(tmp_path))

    assert proc.returncode == 0, proc.stderr
    assert "status=succeeded" in proc.stdout
    assert "created=2" in proc.stdout

    report = json.loads((tmp_path / "outputs" / "reports" / "cli-batch.json").read_text(encoding="utf-8"))
    assert [entry["login"] for entry in report["entries"]] == ["edupont", "jdupont"]


def test_cli_dry_run_uses_separate_run_key(tmp_path: Path) -> None:
    roster = _write_roster(tmp_path / "roster.csv")

    proc = _run(["provision", "--input", str(roster), "--dry-run"], _base_env(tmp_path))

    assert proc.returncode == 0, proc.stderr
    assert "run_key=dryrun-roster-" in proc.stdout
    assert "dry_run=True" in proc.stdout


def test_cli_rejects_unusable_credential_configuration(tmp_path: Path) -> None:
    roster = _write_roster(tmp_path / "roster.csv")
    env = _base_env(tmp_path)
    env["CREDENTIAL_MODE"] = "sourced"
    env["CREDENTIAL_SOURCE_COLUMN"] = "Password"

    proc = _run(["provision", "--input", str(roster)], env)

    assert proc.returncode == 2
    assert "Password" in proc.stderr


def test_cli_missing_input_is_a_configuration_error(tmp_path: Path) -> None:
    proc = _run(["provision", "--input", str(tmp_path / "absent.csv")], _base_env(tmp_path))

    assert proc.returncode == 2


def test_cli_check_mapping_lists_suggestions(tmp_path: Path) -> None:
    roster = _write_roster(tmp_path / "roster.csv")

    proc = _run(["check-mapping", "--input", str(roster)], _base_env(tmp_path))

    assert proc.returncode == 0
    assert "GivenName <- First Name" in proc.stdout
    assert "Surname <- Last Name" in proc.stdout
    assert "SamAccountName is not mapped" in proc.stdout
