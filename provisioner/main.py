import argparse
from contextlib import nullcontext
import hashlib
import logging
from pathlib import Path
import sys

from provisioner.config import Settings, build_provisioning_config, get_settings
from provisioner.database import build_session_factory
from provisioner.directory import InMemoryDirectory, LdapDirectory
from provisioner.errors import ConfigurationError, DirectoryOperationFailure
from provisioner.ingest import read_input_records
from provisioner.mapping import build_column_mapping, check_run_viability, resolve
from provisioner.pipeline import ProvisioningRunner, validate_config
from provisioner.schemas import CredentialMode, LoginFormat


logger = logging.getLogger(__name__)


def _add_input_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--input", required=True, type=Path, help="CSV file with one account per row")
    parser.add_argument("--delimiter", default=",", help="CSV delimiter (default: ',')")
    parser.add_argument("--encoding", default="utf-8-sig", help="CSV encoding (default: utf-8-sig)")
    parser.add_argument(
        "--map",
        dest="mappings",
        action="append",
        default=[],
        metavar="ATTRIBUTE=COLUMN",
        help="map a canonical attribute to an input column, overriding suggestions",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Provision directory accounts from a CSV file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision_parser = subparsers.add_parser("provision", help="create accounts for every input row")
    _add_input_args(provision_parser)
    provision_parser.add_argument("--run-key", required=False, help="Idempotency key for this batch")
    provision_parser.add_argument("--login-format", choices=[item.value for item in LoginFormat])
    provision_parser.add_argument("--credential-mode", choices=[item.value for item in CredentialMode])
    provision_parser.add_argument("--group", help="add every created account to this group")
    provision_parser.add_argument("--dry-run", action="store_true", help="resolve everything, write nothing")

    check_parser = subparsers.add_parser("check-mapping", help="show how input columns map to attributes")
    _add_input_args(check_parser)

    return parser.parse_args(argv)


def parse_mapping_overrides(values: list[str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for value in values:
        attribute, sep, column = value.partition("=")
        if not sep or not attribute.strip() or not column.strip():
            raise ConfigurationError(f"invalid mapping '{value}', expected ATTRIBUTE=COLUMN")
        overrides[attribute.strip()] = column.strip()
    return overrides


def default_run_key(input_path: Path, dry_run: bool) -> str:
    digest = hashlib.sha256(input_path.read_bytes()).hexdigest()[:12]
    prefix = "dryrun-" if dry_run else ""
    return f"{prefix}{input_path.stem}-{digest}"


def open_directory(settings: Settings, container: str):
    if settings.directory_backend == "memory":
        return nullcontext(InMemoryDirectory(container=container or "ou=users,dc=example,dc=com"))
    if settings.directory_backend != "ldap":
        raise ConfigurationError(f"unknown directory backend: {settings.directory_backend}")
    return LdapDirectory.connect(
        server=settings.ldap_server,
        port=settings.ldap_port,
        use_ssl=settings.ldap_use_ssl,
        bind_dn=settings.ldap_bind_dn,
        password=settings.ldap_bind_password,
        base_dn=settings.ldap_base_dn,
        container=container,
    )


def check_mapping(args: argparse.Namespace) -> int:
    table = read_input_records(args.input, delimiter=args.delimiter, encoding=args.encoding)
    mapping = build_column_mapping(table.headers, parse_mapping_overrides(args.mappings))

    for attribute, column in sorted(mapping.columns.items()):
        print(f"{attribute} <- {column}")
    unmapped = [header for header in table.headers if header not in set(mapping.columns.values())]
    if unmapped:
        print("unmapped columns: " + ", ".join(unmapped))
    for warning in check_run_viability(resolve(mapping)):
        print(f"warning: {warning}")
    return 0


def provision(args: argparse.Namespace, settings: Settings) -> int:
    table = read_input_records(args.input, delimiter=args.delimiter, encoding=args.encoding)
    mapping = build_column_mapping(table.headers, parse_mapping_overrides(args.mappings))
    config = build_provisioning_config(
        settings,
        mapping,
        login_format=args.login_format,
        credential_mode=args.credential_mode,
        group_name=args.group,
        dry_run=args.dry_run,
    )
    validate_config(config, table.headers)
    run_key = args.run_key or default_run_key(args.input, args.dry_run)

    session_factory = build_session_factory(settings.database_url)
    with open_directory(settings, config.target_container) as directory:
        runner = ProvisioningRunner(settings, session_factory, directory)
        result = runner.run(
            table.records,
            config=config,
            run_key=run_key,
            source_name=args.input.name,
            input_columns=table.headers,
        )

    summary = result.summary
    print(
        "run_id={run_id} run_key={run_key} status={status} total={total} created={created} skipped={skipped} errors={errors} dry_run={dry_run} reused={reused} report={report}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            status=result.status,
            total=summary.total,
            created=summary.created,
            skipped=summary.skipped,
            errors=summary.errors,
            dry_run=args.dry_run,
            reused=result.reused_existing_run,
            report=result.report_path,
        )
    )
    if result.status == "failed":
        if result.error:
            print(f"error: {result.error}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        if args.command == "check-mapping":
            code = check_mapping(args)
        else:
            code = provision(args, settings)
    except (ConfigurationError, FileNotFoundError) as exc:
        logger.error("configuration error: %s", exc)
        print(f"configuration error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    except DirectoryOperationFailure as exc:
        logger.error("directory unavailable: %s", exc)
        print(f"directory error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
