from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from provisioner.db_models import ProvisioningRun, RecordOutcome, utc_now
from provisioner.schemas import OutcomeEntry, OutcomeStatus, RunSummary


def get_run_by_key(db: Session, run_key: str) -> ProvisioningRun | None:
    stmt = select(ProvisioningRun).where(ProvisioningRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(
    db: Session,
    *,
    run_key: str,
    source_name: str,
    dry_run: bool,
) -> tuple[ProvisioningRun, bool]:
    run = ProvisioningRun(run_key=run_key, source_name=source_name, dry_run=dry_run, status="queued")
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key makes a provisioning batch run at most once.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def reset_failed_run_state(db: Session, run: ProvisioningRun, *, source_name: str, dry_run: bool) -> None:
    db.execute(delete(RecordOutcome).where(RecordOutcome.run_id == run.id))

    run.status = "queued"
    run.source_name = source_name
    run.dry_run = dry_run
    run.error = None
    run.completed_at = None
    run.report_path = None
    _apply_summary(run, RunSummary(created=0, skipped=0, errors=0, total=0))
    db.commit()


def mark_run_running(db: Session, run: ProvisioningRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def mark_run_finished(
    db: Session,
    run: ProvisioningRun,
    *,
    summary: RunSummary,
    aborted: bool,
    report_path: str | None,
) -> None:
    run.status = "aborted" if aborted else "succeeded"
    run.report_path = report_path
    run.completed_at = utc_now()
    run.error = None
    _apply_summary(run, summary)
    db.commit()


def mark_run_failed(
    db: Session,
    run: ProvisioningRun,
    *,
    error: str,
    summary: RunSummary | None = None,
) -> None:
    run.status = "failed"
    run.error = error
    run.completed_at = utc_now()
    _apply_summary(run, summary or RunSummary(created=0, skipped=0, errors=0, total=0))
    db.commit()


def _apply_summary(run: ProvisioningRun, summary: RunSummary) -> None:
    run.total_records = summary.total
    run.created_records = summary.created
    run.skipped_records = summary.skipped
    run.error_records = summary.errors


def store_outcomes(db: Session, *, run_id: int, entries: Sequence[OutcomeEntry]) -> None:
    # Credential echoes stay in the handoff report only.
    for entry in entries:
        db.add(
            RecordOutcome(
                run_id=run_id,
                record_index=entry.record_index,
                status=entry.status.value,
                login=entry.login,
                message=entry.message,
            )
        )
    db.commit()


def load_outcomes(db: Session, *, run_id: int) -> list[OutcomeEntry]:
    stmt = select(RecordOutcome).where(RecordOutcome.run_id == run_id).order_by(RecordOutcome.record_index)
    return [
        OutcomeEntry(
            record_index=row.record_index,
            status=OutcomeStatus(row.status),
            login=row.login,
            message=row.message,
        )
        for row in db.execute(stmt).scalars().all()
    ]
