from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .exceptions import DbtInvocationError
from .table_config import TableConfig

logger = logging.getLogger(__name__)


@dataclass
class DbtOptions:
    """How to call dbt for every table of a run."""

    executable: str = "dbt"
    project_dir: Optional[Path] = None
    profiles_dir: Optional[Path] = None
    target: Optional[str] = None
    full_refresh: bool = False
    extra_args: Sequence[str] = ()


@dataclass(frozen=True)
class DbtInvocation:
    table: TableConfig
    args: list[str]
    env: dict[str, str]

    @property
    def command(self) -> str:
        return shlex.join(self.args)


@dataclass(frozen=True)
class TableRunResult:
    table: TableConfig
    returncode: int
    duration_seconds: float
    command: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class DispatchSummary:
    """Results of one run, in dispatch order."""

    tables: list[TableConfig]
    results: list[TableRunResult] = field(default_factory=list)

    @property
    def failed(self) -> Optional[TableRunResult]:
        for result in self.results:
            if not result.ok:
                return result
        return None

    @property
    def succeeded(self) -> bool:
        return self.failed is None and len(self.results) == len(self.tables)

    @property
    def exit_code(self) -> int:
        """Process exit status, with signal deaths reported as 128 + signal number."""
        failed = self.failed
        if failed is None:
            return 0
        if failed.returncode < 0:
            return 128 - failed.returncode
        return failed.returncode


def table_env(table: TableConfig) -> dict[str, str]:
    """Environment variables read by the dbt models through env_var()."""
    return {
        "SOURCE_PROJECT": table.source_project,
        "SOURCE_DATASET": table.source_dataset,
        "SOURCE_TABLE": table.source_table,
        "TARGET_DATASET": table.target_dataset,
        "TARGET_TABLE": table.target_table,
    }


def build_invocation(
    table: TableConfig,
    options: DbtOptions,
    base_env: Optional[Mapping[str, str]] = None,
) -> DbtInvocation:
    """Build the `dbt run` command line and environment for one table."""
    args = [options.executable, "run", "--select", table.name]
    if options.project_dir is not None:
        args += ["--project-dir", str(options.project_dir)]
    if options.profiles_dir is not None:
        args += ["--profiles-dir", str(options.profiles_dir)]
    if options.target:
        args += ["--target", options.target]
    if options.full_refresh:
        args.append("--full-refresh")
    args.extend(options.extra_args)

    env = dict(os.environ if base_env is None else base_env)
    env.update(table_env(table))

    return DbtInvocation(table=table, args=args, env=env)


def run_invocation(invocation: DbtInvocation) -> TableRunResult:
    """Run one dbt command and wait for it to finish."""
    logger.info("Running model %s: %s", invocation.table.name, invocation.command)
    logger.debug(
        "Model %s reads %s and writes %s",
        invocation.table.name,
        invocation.table.source_ref,
        invocation.table.target_ref,
    )

    started = time.monotonic()
    try:
        completed = subprocess.run(invocation.args, env=invocation.env, check=False)
    except OSError as exc:
        msg = f"Could not start dbt for model {invocation.table.name}: {invocation.args[0]}"
        logger.error(msg, exc_info=True)
        raise DbtInvocationError(msg) from exc
    duration = time.monotonic() - started

    return TableRunResult(
        table=invocation.table,
        returncode=completed.returncode,
        duration_seconds=duration,
        command=invocation.command,
    )


def run_tables(
    tables: Sequence[TableConfig],
    options: DbtOptions,
    base_env: Optional[Mapping[str, str]] = None,
    dry_run: bool = False,
) -> DispatchSummary:
    """
    Run dbt once per table, sequentially and in configuration order.

    The first table whose dbt run exits non-zero ends the loop: later tables
    are not dispatched. With `dry_run`, commands are only logged.
    """
    summary = DispatchSummary(tables=list(tables))

    if not summary.tables:
        logger.warning("No tables to run.")
        return summary

    for index, table in enumerate(summary.tables, start=1):
        invocation = build_invocation(table, options, base_env)
        logger.info("[%d/%d] %s -> %s", index, len(summary.tables), table.source_ref, table.target_ref)

        if dry_run:
            logger.info("Dry run, not executing: %s", invocation.command)
            summary.results.append(
                TableRunResult(table=table, returncode=0, duration_seconds=0.0, command=invocation.command)
            )
            continue

        try:
            result = run_invocation(invocation)
        except DbtInvocationError as exc:
            exc.summary = summary
            raise
        summary.results.append(result)

        if not result.ok:
            remaining = len(summary.tables) - index
            logger.error(
                "dbt run for model %s failed with exit code %d after %.1fs. Stopping, %d table(s) not run.",
                table.name,
                result.returncode,
                result.duration_seconds,
                remaining,
            )
            break

        logger.info("Model %s finished in %.1fs", table.name, result.duration_seconds)

    return summary
