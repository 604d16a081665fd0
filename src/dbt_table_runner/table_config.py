from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final, Iterable, Optional

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR: Final[str] = "config"

REQUIRED_FIELDS: Final[tuple[str, ...]] = (
    "source_project",
    "source_dataset",
    "source_table",
    "target_dataset",
    "target_table",
)


class Environment(str, Enum):
    """Deployment environments with their own table configuration."""

    PROD = "prod"
    PREPROD = "preprod"
    DEV = "dev"


@dataclass(frozen=True)
class TableConfig:
    """One table to build: the dbt model name plus its source and target."""

    name: str
    source_project: str
    source_dataset: str
    source_table: str
    target_dataset: str
    target_table: str

    @property
    def source_ref(self) -> str:
        return f"{self.source_project}.{self.source_dataset}.{self.source_table}"

    @property
    def target_ref(self) -> str:
        return f"{self.target_dataset}.{self.target_table}"


def config_path(environment: str, config_dir: Path | str = DEFAULT_CONFIG_DIR) -> Path:
    """Return the table configuration file for an environment."""
    try:
        env = Environment(environment)
    except ValueError as exc:
        allowed = ", ".join(e.value for e in Environment)
        raise ConfigError(f"Unknown environment '{environment}', expected one of: {allowed}") from exc

    return Path(config_dir) / f"tables_{env.value}.yml"


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _parse_record(name: str, raw: object, path: Path) -> TableConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Table '{name}' in {path} must be a mapping of fields, got {type(raw).__name__}")

    nested = [field for field in REQUIRED_FIELDS if isinstance(raw.get(field), (dict, list))]
    if nested:
        raise ConfigError(f"Table '{name}' in {path} has non-scalar values for fields: {', '.join(nested)}")

    missing = [field for field in REQUIRED_FIELDS if raw.get(field) is None or not str(raw[field]).strip()]
    if missing:
        raise ConfigError(f"Table '{name}' in {path} is missing required fields: {', '.join(missing)}")

    extra = sorted(set(raw) - set(REQUIRED_FIELDS))
    if extra:
        logger.warning("Ignoring unknown fields for table '%s' in %s: %s", name, path, ", ".join(map(str, extra)))

    return TableConfig(name=name, **{field: str(raw[field]).strip() for field in REQUIRED_FIELDS})


def load_table_configs(path: Path | str) -> list[TableConfig]:
    """
    Load the table records of a configuration file, in file order.

    Expected layout:

        customers:
          source_project: raw-project
          source_dataset: crm
          source_table: customers
          target_dataset: staging
          target_table: stg_customers

    Each top-level key is the dbt model to run for that table.
    """
    path = Path(path)
    logger.info("Loading table configuration from %s", path)

    try:
        with path.open("r", encoding="utf-8") as fh:
            document = yaml.load(fh, Loader=_UniqueKeyLoader)
    except FileNotFoundError as exc:
        raise ConfigError(f"Table configuration file does not exist: {path}") from exc
    except yaml.YAMLError as exc:
        msg = f"Failed to parse table configuration {path}: {exc}"
        logger.error(msg, exc_info=True)
        raise ConfigError(msg) from exc

    if document is None:
        logger.warning("Table configuration %s is empty, nothing to run.", path)
        return []

    if not isinstance(document, dict):
        raise ConfigError(f"Table configuration {path} must be a mapping of table name to fields")

    tables = [_parse_record(str(name), raw, path) for name, raw in document.items()]
    logger.info("Loaded %d table(s) from %s", len(tables), path)
    return tables


def select_tables(tables: list[TableConfig], names: Optional[Iterable[str]] = None) -> list[TableConfig]:
    """Keep only the named tables, preserving configuration order."""
    if not names:
        return list(tables)

    wanted = set(names)
    unknown = wanted - {t.name for t in tables}
    if unknown:
        raise ConfigError(f"Unknown table(s) requested: {', '.join(sorted(unknown))}")

    return [t for t in tables if t.name in wanted]
