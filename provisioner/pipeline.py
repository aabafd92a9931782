from collections.abc import Iterable, Mapping, MutableMapping, Sequence
import logging
from pathlib import Path
import threading

from sqlalchemy.orm import Session, sessionmaker

from provisioner.config import Settings
from provisioner.credentials import issue, validate_credential_policy
from provisioner.db_models import ProvisioningRun
from provisioner.directory import DirectoryService, DryRunDirectory
from provisioner.errors import (
    ConfigurationError,
    DirectoryOperationFailure,
    MissingLogin,
    RecordValidationError,
)
from provisioner.login import synthesize_login, validate_login_policy
from provisioner.mapping import (
    ATTRIBUTES_BY_NAME,
    COMMON_NAME,
    DISPLAY_NAME,
    EMAIL,
    FULL_NAME,
    GIVEN_NAME,
    LOGIN,
    PRINCIPAL_NAME,
    SURNAME,
    apply_mapping,
    check_run_viability,
    directory_attributes,
    resolve,
)
from provisioner.report import build_report_payload, write_report
from provisioner.run_store import (
    create_or_get_run,
    load_outcomes,
    mark_run_failed,
    mark_run_finished,
    mark_run_running,
    reset_failed_run_state,
    store_outcomes,
)
from provisioner.schemas import (
    GroupMode,
    GroupPolicy,
    OutcomeEntry,
    OutcomeStatus,
    ProvisioningConfig,
    ProvisioningResult,
    RunSummary,
)


logger = logging.getLogger(__name__)


def fill_derived_defaults(resolved: MutableMapping[str, str], login: str, upn_domain: str | None) -> None:
    resolved[LOGIN] = login

    domain = (upn_domain or "").lstrip("@")
    if not resolved.get(PRINCIPAL_NAME) and domain:
        resolved[PRINCIPAL_NAME] = f"{login}@{domain}"

    if not resolved.get(EMAIL) and resolved.get(PRINCIPAL_NAME):
        resolved[EMAIL] = resolved[PRINCIPAL_NAME]

    if not resolved.get(DISPLAY_NAME):
        given = resolved.get(GIVEN_NAME, "")
        surname = resolved.get(SURNAME, "")
        if given and surname:
            resolved[DISPLAY_NAME] = f"{given} {surname}"
        elif resolved.get(FULL_NAME):
            resolved[DISPLAY_NAME] = resolved[FULL_NAME]
        else:
            resolved[DISPLAY_NAME] = login

    if not resolved.get(COMMON_NAME):
        resolved[COMMON_NAME] = resolved[DISPLAY_NAME]


def validate_config(config: ProvisioningConfig, input_columns: Iterable[str] | None = None) -> list[str]:
    columns = set(input_columns) if input_columns is not None else None

    for attribute in config.column_mapping.columns:
        if attribute not in ATTRIBUTES_BY_NAME:
            raise ConfigurationError(f"unknown canonical attribute: {attribute}")

    if columns is not None:
        for attribute, column in config.column_mapping.columns.items():
            if column not in columns:
                raise ConfigurationError(f"column '{column}' mapped to {attribute} is not in the input")

    validate_login_policy(config.login_policy)
    validate_credential_policy(config.credential_policy, columns)

    group_policy = config.group_policy
    if group_policy.mode is GroupMode.FIXED and not group_policy.group_name:
        raise ConfigurationError("group assignment needs a group name")
    if group_policy.mode is GroupMode.COLUMN:
        if not group_policy.source_column:
            raise ConfigurationError("per-record group assignment needs a source column")
        if columns is not None and group_policy.source_column not in columns:
            raise ConfigurationError(f"group column '{group_policy.source_column}' is not in the input")

    return check_run_viability(resolve(config.column_mapping))


class ProvisioningRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        directory: DirectoryService,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.directory = directory

    def run(
        self,
        records: Sequence[Mapping[str, str]],
        *,
        config: ProvisioningConfig,
        run_key: str,
        source_name: str = "",
        input_columns: Iterable[str] | None = None,
        abort_event: threading.Event | None = None,
    ) -> ProvisioningResult:
        with self.session_factory() as db:
            run, created = create_or_get_run(db, run_key=run_key, source_name=source_name, dry_run=config.dry_run)
            if not created:
                if run.status in ("failed", "running"):
                    # A run left "running" was interrupted before it finished.
                    logger.info("retrying unfinished run", extra={"run_key": run_key, "status": run.status})
                    reset_failed_run_state(db, run, source_name=source_name, dry_run=config.dry_run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    entries = tuple(load_outcomes(db, run_id=run.id))
                    return self._result_from_run(run, entries, reused_existing_run=True)

            mark_run_running(db, run)

            try:
                for warning in validate_config(config, input_columns):
                    logger.warning(warning, extra={"run_key": run_key})
            except ConfigurationError as exc:
                mark_run_failed(db, run, error=str(exc))
                logger.error("provisioning configuration rejected", extra={"run_key": run_key, "error": str(exc)})
                return self._result_from_run(run, (), reused_existing_run=False)

            directory: DirectoryService = DryRunDirectory(self.directory) if config.dry_run else self.directory
            entries: list[OutcomeEntry] = []
            aborted = False
            for index, record in enumerate(records):
                if abort_event is not None and abort_event.is_set():
                    aborted = True
                    logger.warning("provisioning aborted", extra={"run_key": run_key, "processed": index})
                    break
                entry = self._process_record(index, record, config, directory)
                logger.info(
                    "record processed",
                    extra={"run_key": run_key, "record_index": index, "login": entry.login, "status": entry.status.value},
                )
                entries.append(entry)

            summary = RunSummary.from_entries(entries)
            report_path = self._report_path(run_key)
            try:
                store_outcomes(db, run_id=run.id, entries=entries)
                partial = ProvisioningResult(
                    run_id=run.id,
                    run_key=run_key,
                    status="aborted" if aborted else "succeeded",
                    entries=tuple(entries),
                    report_path=str(report_path),
                    reused_existing_run=False,
                    aborted=aborted,
                )
                write_report(report_path, build_report_payload(partial, source_name=source_name, dry_run=config.dry_run))
                mark_run_finished(db, run, summary=summary, aborted=aborted, report_path=str(report_path))
            except Exception as exc:
                db.rollback()
                mark_run_failed(db, run, error=str(exc), summary=summary)
                logger.exception("provisioning report failed", extra={"run_key": run_key})

            return self._result_from_run(run, tuple(entries), reused_existing_run=False)

    def _process_record(
        self,
        index: int,
        record: Mapping[str, str],
        config: ProvisioningConfig,
        directory: DirectoryService,
    ) -> OutcomeEntry:
        login = ""
        try:
            resolved = apply_mapping(record, config.column_mapping)

            login = resolved.get(LOGIN, "")
            if not login:
                login = synthesize_login(
                    resolved.get(GIVEN_NAME, ""),
                    resolved.get(SURNAME, ""),
                    config.login_policy,
                    directory,
                )
            if not login:
                raise MissingLogin()

            if directory.find_by_unique_id(login) is not None:
                return OutcomeEntry(index, OutcomeStatus.SKIPPED, login, "already exists")

            credential = issue(config.credential_policy, record)
            fill_derived_defaults(resolved, login, config.upn_domain)
            directory.create_entry(
                directory_attributes(resolved),
                login,
                credential.secret,
                config.enabled,
                config.must_change_at_logon,
            )
        except RecordValidationError as exc:
            return OutcomeEntry(index, OutcomeStatus.ERROR, login, str(exc))
        except DirectoryOperationFailure as exc:
            logger.warning("directory operation failed", extra={"record_index": index, "login": login, "error": str(exc)})
            return OutcomeEntry(index, OutcomeStatus.ERROR, login, str(exc))
        except Exception as exc:
            logger.exception("unexpected failure while provisioning record", extra={"record_index": index})
            return OutcomeEntry(index, OutcomeStatus.ERROR, login, f"unexpected error: {exc}")

        notes = ["created (dry run)" if config.dry_run else "created"]
        if credential.warning:
            notes.append(credential.warning)
        group_note = self._assign_group(record, login, config.group_policy, directory)
        if group_note:
            notes.append(group_note)
        return OutcomeEntry(index, OutcomeStatus.CREATED, login, "; ".join(notes), credential.display_echo)

    def _assign_group(
        self,
        record: Mapping[str, str],
        login: str,
        policy: GroupPolicy,
        directory: DirectoryService,
    ) -> str | None:
        if policy.mode is GroupMode.NONE:
            return None
        if policy.mode is GroupMode.FIXED:
            group_name = (policy.group_name or "").strip()
        else:
            group_name = str(record.get(policy.source_column or "") or "").strip()
        if not group_name:
            return None

        # The entry exists at this point; group problems only qualify the outcome.
        try:
            group = directory.find_group_by_name(group_name)
            if group is None:
                if not policy.create_missing:
                    return f"group '{group_name}' not found"
                group = directory.create_group(group_name)
                logger.info("group created", extra={"group": group_name})
            directory.add_member(group, login)
        except Exception as exc:
            logger.warning("group assignment failed", extra={"group": group_name, "login": login, "error": str(exc)})
            return f"group '{group_name}' assignment failed: {exc}"
        return f"added to group '{group_name}'"

    def _report_path(self, run_key: str) -> Path:
        return Path(self.settings.output_dir) / "reports" / f"{run_key}.json"

    def _result_from_run(
        self,
        run: ProvisioningRun,
        entries: tuple[OutcomeEntry, ...],
        reused_existing_run: bool,
    ) -> ProvisioningResult:
        return ProvisioningResult(
            run_id=run.id,
            run_key=run.run_key,
            status=run.status,
            entries=entries,
            report_path=run.report_path,
            reused_existing_run=reused_existing_run,
            aborted=run.status == "aborted",
            error=run.error,
        )
