from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from google.api_core.exceptions import GoogleAPIError
from google.cloud import bigquery
from google.cloud.exceptions import NotFound

from .exceptions import DataLoadError, TargetVerificationError
from .table_config import TableConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableStatus:
    table: TableConfig
    full_table_id: str
    num_rows: Optional[int]
    modified: Optional[datetime]


def verify_target_tables(project_id: str, tables: Sequence[TableConfig]) -> list[TableStatus]:
    """
    Check that every target table exists in BigQuery after a run.

    Returns the row count and last modification time of each target, in
    configuration order. A missing target raises TargetVerificationError.
    """
    client = bigquery.Client(project=project_id)
    statuses: list[TableStatus] = []

    for table in tables:
        full_table_id = f"{project_id}.{table.target_dataset}.{table.target_table}"
        logger.info("Verifying target table %s", full_table_id)

        try:
            bq_table = client.get_table(full_table_id)
        except NotFound as exc:
            msg = f"Target table {full_table_id} for model {table.name} does not exist"
            logger.error(msg)
            raise TargetVerificationError(msg) from exc
        except GoogleAPIError as exc:
            msg = f"Failed to fetch metadata for BigQuery table {full_table_id}"
            logger.error(msg, exc_info=True)
            raise DataLoadError(msg) from exc

        if not bq_table.num_rows:
            logger.warning("Target table %s is empty.", full_table_id)

        statuses.append(
            TableStatus(
                table=table,
                full_table_id=full_table_id,
                num_rows=bq_table.num_rows,
                modified=bq_table.modified,
            )
        )

    logger.info("Verified %d target table(s) in project %s", len(statuses), project_id)
    return statuses
