from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .bq_client import verify_target_tables
from .dispatcher import DbtOptions, DispatchSummary, run_tables
from .exceptions import ConfigError, DataLoadError, TargetVerificationError
from .report import summary_to_dataframe, write_report
from .table_config import DEFAULT_CONFIG_DIR, Environment, config_path, load_table_configs, select_tables

EXIT_CONFIG_ERROR = 2
EXIT_VERIFICATION_ERROR = 3


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=("Run `dbt run` once per table configured for an environment, " "stopping at the first failure.")
    )

    parser.add_argument(
        "environment",
        choices=[e.value for e in Environment],
        help="Environment whose table configuration is used: prod, preprod, dev.",
    )

    parser.add_argument(
        "--config-dir",
        default=os.getenv("DBT_RUNNER_CONFIG_DIR", DEFAULT_CONFIG_DIR),
        help="Directory holding tables_<environment>.yml files (default: config).",
    )

    parser.add_argument(
        "--project-dir",
        default=os.getenv("DBT_PROJECT_DIR"),
        help="dbt project directory, passed as --project-dir (default: $DBT_PROJECT_DIR).",
    )

    parser.add_argument(
        "--profiles-dir",
        default=os.getenv("DBT_PROFILES_DIR"),
        help="dbt profiles directory, passed as --profiles-dir (default: $DBT_PROFILES_DIR).",
    )

    parser.add_argument(
        "--dbt-executable",
        default="dbt",
        help="dbt executable to call (default: dbt).",
    )

    parser.add_argument(
        "--target",
        help="dbt target to use (default: the environment name).",
    )

    parser.add_argument(
        "--select",
        dest="tables",
        action="append",
        help="Only run this table. Can be specified multiple times (default: all configured tables).",
    )

    parser.add_argument(
        "--full-refresh",
        action="store_true",
        help="Pass --full-refresh to every dbt run.",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the dbt commands without running them.",
    )

    parser.add_argument(
        "--verify",
        action="store_true",
        help="Check in BigQuery that every target table exists once all runs succeed.",
    )

    parser.add_argument(
        "--target-project",
        default=os.getenv("DBT_TARGET_PROJECT"),
        help=(
            "GCP project holding the target datasets. Exported to dbt as DBT_TARGET_PROJECT "
            "and used by --verify (default: $DBT_TARGET_PROJECT)."
        ),
    )

    parser.add_argument(
        "--report-dir",
        help="Write a run report to this directory.",
    )

    parser.add_argument(
        "--report-format",
        choices=["csv", "parquet"],
        default="csv",
        help="Run report file format (default: csv).",
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )

    return parser.parse_args(argv)


def _check_credentials_env() -> None:
    """
    Ensure GOOGLE_APPLICATION_CREDENTIALS points to a valid service account file.
    """
    creds_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if not creds_path:
        msg = (
            "Environment variable GOOGLE_APPLICATION_CREDENTIALS is not set. "
            "It must point to the service account JSON file used for BigQuery."
        )
        raise SystemExit(msg)

    if not Path(creds_path).is_file():
        msg = "Credentials file specified by GOOGLE_APPLICATION_CREDENTIALS " f"does not exist: {creds_path}"
        raise SystemExit(msg)


def _write_run_report(args: argparse.Namespace, summary: DispatchSummary) -> None:
    report_path = write_report(
        summary_to_dataframe(summary, args.environment),
        Path(args.report_dir),
        args.environment,
        args.report_format,
    )
    print(f"Run report written to: {report_path}")


def main(argv: Optional[list[str]] = None) -> None:
    # Load .env file if present
    load_dotenv()

    args = parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    logger = logging.getLogger(__name__)

    if args.verify and not args.dry_run:
        if not args.target_project:
            raise SystemExit("--verify requires --target-project or DBT_TARGET_PROJECT.")
        _check_credentials_env()

    options = DbtOptions(
        executable=args.dbt_executable,
        project_dir=_optional_path(args.project_dir),
        profiles_dir=_optional_path(args.profiles_dir),
        target=args.target or args.environment,
        full_refresh=args.full_refresh,
    )

    # dbt reads the target project from the environment (profiles.yml)
    dbt_env = dict(os.environ)
    if args.target_project:
        dbt_env["DBT_TARGET_PROJECT"] = args.target_project

    try:
        path = config_path(args.environment, args.config_dir)
        tables = select_tables(load_table_configs(path), args.tables)
        summary = run_tables(tables, options, base_env=dbt_env, dry_run=args.dry_run)

        if args.report_dir:
            _write_run_report(args, summary)

        if summary.failed is not None:
            print(
                f"[ERROR] dbt run failed for model {summary.failed.table.name} "
                f"(exit code {summary.failed.returncode}).",
                file=sys.stderr,
            )
            sys.exit(summary.exit_code)

        if args.verify and not args.dry_run:
            for status in verify_target_tables(args.target_project, summary.tables):
                print(f"{status.full_table_id}: {status.num_rows} rows")
    except ConfigError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    except TargetVerificationError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(EXIT_VERIFICATION_ERROR)
    except DataLoadError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        partial = getattr(exc, "summary", None)
        if args.report_dir and partial is not None:
            _write_run_report(args, partial)
        sys.exit(1)
    except Exception:  # pragma: no cover - generic catch-all
        print("[ERROR] Unexpected error while running dbt.", file=sys.stderr)
        logger.exception("Unexpected error")
        sys.exit(99)

    print(f"Ran {len(summary.results)} table(s) for environment {args.environment}.")


if __name__ == "__main__":
    main()
