from __future__ import annotations

"""
dbt_table_runner

Run `dbt run` once per table listed in an environment's table configuration,
injecting each table's source and target as environment variables.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
