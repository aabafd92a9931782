import json
import os
from pathlib import Path

from provisioner.schemas import ProvisioningResult


def build_report_payload(result: ProvisioningResult, *, source_name: str, dry_run: bool) -> dict[str, object]:
    summary = result.summary
    return {
        "run_key": result.run_key,
        "source": source_name,
        "status": result.status,
        "dry_run": dry_run,
        "aborted": result.aborted,
        "summary": {
            "created": summary.created,
            "skipped": summary.skipped,
            "errors": summary.errors,
            "total": summary.total,
        },
        "entries": [
            {
                "record_index": entry.record_index,
                "status": entry.status.value,
                "login": entry.login,
                "message": entry.message,
                "credential_echo": entry.credential_echo,
            }
            for entry in result.entries
        ],
    }


def write_report(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Generated credentials are echoed here; owner-only access.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, ensure_ascii=False)
        outfile.write("\n")
    os.chmod(path, 0o600)
