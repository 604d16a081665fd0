from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from .dispatcher import DispatchSummary

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "environment",
    "table",
    "target",
    "returncode",
    "status",
    "duration_seconds",
    "command",
]


def summary_to_dataframe(summary: DispatchSummary, environment: str) -> pd.DataFrame:
    """
    One row per configured table.

    Tables the run never reached (after a failure) are reported as
    `skipped` with a null return code.
    """
    results = {r.table.name: r for r in summary.results}
    rows = []
    for table in summary.tables:
        result = results.get(table.name)
        if result is None:
            status, returncode, duration, command = "skipped", None, None, None
        else:
            status = "success" if result.ok else "failed"
            returncode, duration, command = result.returncode, result.duration_seconds, result.command

        rows.append(
            {
                "environment": environment,
                "table": table.name,
                "target": table.target_ref,
                "returncode": returncode,
                "status": status,
                "duration_seconds": duration,
                "command": command,
            }
        )

    df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    df["returncode"] = df["returncode"].astype("Int64")
    df["duration_seconds"] = df["duration_seconds"].astype("float64")
    return df


def write_report(
    df: pd.DataFrame,
    output_dir: Path,
    environment: str,
    output_format: str = "csv",
    now: Optional[datetime] = None,
) -> Path:
    """Write the run report as run_report_<environment>_<timestamp>.<format>."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S")
    output_path = Path(output_dir) / f"run_report_{environment}_{stamp}.{output_format}"

    if output_format not in ("csv", "parquet"):
        msg = f"Unsupported report format: {output_format}"
        logger.error(msg)
        raise ValueError(msg)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Writing run report to %s", output_path)

    if output_format == "parquet":
        df.to_parquet(output_path, index=False)
    else:
        df.to_csv(output_path, index=False)

    return output_path
