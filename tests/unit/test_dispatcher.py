import subprocess
from pathlib import Path

import pytest

from dbt_table_runner.dispatcher import DbtOptions, build_invocation, run_tables
from dbt_table_runner.exceptions import DbtInvocationError
from dbt_table_runner.table_config import TableConfig


def _table(name: str) -> TableConfig:
    return TableConfig(
        name=name,
        source_project="raw-prj",
        source_dataset="src_ds",
        source_table=f"{name}_raw",
        target_dataset="staging",
        target_table=f"stg_{name}",
    )


class FakeRun:
    """Stands in for subprocess.run and records every call."""

    def __init__(self, returncodes=None):
        self.returncodes = returncodes or {}
        self.calls = []

    def __call__(self, args, env=None, check=False):
        self.calls.append((list(args), dict(env)))
        model = args[args.index("--select") + 1]
        return subprocess.CompletedProcess(args, self.returncodes.get(model, 0))


def test_build_invocation_substitutes_fields():
    base_env = {"PATH": "/usr/bin", "SOURCE_TABLE": "stale"}
    options = DbtOptions(
        project_dir=Path("dbt"),
        profiles_dir=Path("profiles"),
        target="prod",
        full_refresh=True,
    )

    invocation = build_invocation(_table("orders"), options, base_env)

    assert invocation.args == [
        "dbt",
        "run",
        "--select",
        "orders",
        "--project-dir",
        "dbt",
        "--profiles-dir",
        "profiles",
        "--target",
        "prod",
        "--full-refresh",
    ]
    assert invocation.env == {
        "PATH": "/usr/bin",
        "SOURCE_PROJECT": "raw-prj",
        "SOURCE_DATASET": "src_ds",
        "SOURCE_TABLE": "orders_raw",
        "TARGET_DATASET": "staging",
        "TARGET_TABLE": "stg_orders",
    }
    # caller's environment untouched
    assert base_env["SOURCE_TABLE"] == "stale"
    assert invocation.command == (
        "dbt run --select orders --project-dir dbt --profiles-dir profiles --target prod --full-refresh"
    )


def test_run_tables_one_invocation_per_table_in_order(monkeypatch):
    fake_run = FakeRun()
    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)
    tables = [_table("customers"), _table("orders"), _table("products")]

    summary = run_tables(tables, DbtOptions(), base_env={})

    assert [args[3] for args, _ in fake_run.calls] == ["customers", "orders", "products"]
    assert [env["TARGET_TABLE"] for _, env in fake_run.calls] == ["stg_customers", "stg_orders", "stg_products"]
    assert summary.succeeded
    assert summary.exit_code == 0
    assert [r.table.name for r in summary.results] == ["customers", "orders", "products"]


def test_run_tables_stops_at_first_failure(monkeypatch):
    fake_run = FakeRun(returncodes={"orders": 2})
    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)
    tables = [_table("customers"), _table("orders"), _table("products")]

    summary = run_tables(tables, DbtOptions(), base_env={})

    assert [args[3] for args, _ in fake_run.calls] == ["customers", "orders"]
    assert not summary.succeeded
    assert summary.failed.table.name == "orders"
    assert summary.exit_code == 2


def test_run_tables_dry_run_executes_nothing(monkeypatch):
    fake_run = FakeRun()
    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)

    summary = run_tables([_table("customers"), _table("orders")], DbtOptions(), base_env={}, dry_run=True)

    assert fake_run.calls == []
    assert summary.succeeded
    assert summary.results[1].command == "dbt run --select orders"


def test_run_tables_empty():
    summary = run_tables([], DbtOptions())

    assert summary.results == []
    assert summary.exit_code == 0


def test_missing_executable(monkeypatch):
    def fake_run(args, env=None, check=False):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)

    with pytest.raises(DbtInvocationError, match="Could not start dbt for model customers"):
        run_tables([_table("customers")], DbtOptions(executable="missing-dbt"), base_env={})


def test_missing_executable_keeps_partial_results(monkeypatch):
    calls = []

    def fake_run(args, env=None, check=False):
        calls.append(args[3])
        if args[3] == "orders":
            raise FileNotFoundError(args[0])
        return subprocess.CompletedProcess(args, 0)

    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)

    with pytest.raises(DbtInvocationError) as excinfo:
        run_tables([_table("customers"), _table("orders"), _table("products")], DbtOptions(), base_env={})

    assert calls == ["customers", "orders"]
    summary = excinfo.value.summary
    assert [r.table.name for r in summary.results] == ["customers"]
    assert len(summary.tables) == 3


def test_exit_code_for_signal_death(monkeypatch):
    fake_run = FakeRun(returncodes={"customers": -15})
    monkeypatch.setattr("dbt_table_runner.dispatcher.subprocess.run", fake_run)

    summary = run_tables([_table("customers"), _table("orders")], DbtOptions(), base_env={})

    assert summary.failed.returncode == -15
    assert summary.exit_code == 143
    assert len(fake_run.calls) == 1
