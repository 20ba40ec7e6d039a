"""Row source: documents awaiting publication, read from MySQL."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .config import DatabaseConfig
from .errors import RowSourceError, RowValidationError
from .models import DocumentRow

log = logging.getLogger(__name__)

DEFAULT_MYSQL_PORT = 3306


def build_database_url(params: Mapping[str, Any]):
    """Build a ``mysql+pymysql`` SQLAlchemy URL from connection parameters."""
    from sqlalchemy.engine import URL

    missing = [k for k in ("database", "host", "user") if not params.get(k)]
    if missing:
        raise RowSourceError(f"Missing database connection parameter(s): {', '.join(missing)}")
    return URL.create(
        "mysql+pymysql",
        username=params["user"],
        password=params.get("password"),
        host=params["host"],
        port=int(params.get("port") or DEFAULT_MYSQL_PORT),
        database=params["database"],
    )


def rows_from_mappings(
    mappings: list[Mapping[str, Any]],
    config: DatabaseConfig,
) -> list[DocumentRow]:
    """Validate raw result rows once, at load time."""
    rows = []
    for raw in mappings:
        rows.append(
            DocumentRow.from_mapping(
                raw,
                id_column=config.id_column,
                payload_column=config.payload_column,
                verification_column=config.verification_column,
            )
        )
    seen: set[str] = set()
    for row in rows:
        if row.key in seen:
            raise RowValidationError(f"duplicate row id {row.key!r}")
        seen.add(row.key)
    return rows


def fetch_rows(config: DatabaseConfig) -> list[DocumentRow]:
    """Run the configured query and return validated rows.

    Any failure, including an empty result, is fatal for the run.
    """
    from sqlalchemy import create_engine, text
    from sqlalchemy.exc import SQLAlchemyError

    url = config.url or build_database_url(config.connection_parameters)
    try:
        engine = create_engine(url, pool_pre_ping=True)
    except (SQLAlchemyError, ImportError) as exc:
        raise RowSourceError(f"MySQL: could not create engine: {exc}") from exc

    target = engine.url.render_as_string(hide_password=True)
    try:
        with engine.connect() as conn:
            log.info('MySQL: Connected to "%s"', target)
            result = conn.execute(text(config.query))
            mappings = [dict(m) for m in result.mappings()]
    except SQLAlchemyError as exc:
        raise RowSourceError(f"MySQL: query failed: {exc}") from exc
    finally:
        engine.dispose()
        log.info('MySQL: Disconnected from "%s"', target)

    log.info("MySQL: Collected %s items from the database!", len(mappings))
    if not mappings:
        raise RowSourceError("There is no data to work on!")
    return rows_from_mappings(mappings, config)
