"""
MIMIC-III data source access.

The DuckDB connection returned by ``connect_mimic`` is the only handle to the
database; it is passed explicitly to every extraction step and closed by the
caller once the cohort is built.
"""
import duckdb
import pandas as pd

from .config import DUCKDB_PATH
from .errors import SourceUnavailableError
from .logging_utils import logger

IN_MEMORY = ":memory:"


def connect_mimic(db_path: str = None, read_only: bool = True) -> duckdb.DuckDBPyConnection:
    """
    Open a connection to the MIMIC-III DuckDB database.

    Args:
        db_path (str): Database file, defaults to ``DUCKDB_PATH``
        read_only (bool): Open the file read-only (ignored for ``:memory:``)

    Returns:
        duckdb.DuckDBPyConnection: Open connection

    Raises:
        SourceUnavailableError: If the database cannot be opened
    """
    db_path = db_path or DUCKDB_PATH
    logger.log_info(f"Connecting to MIMIC-III database at {db_path}")
    try:
        if db_path == IN_MEMORY:
            return duckdb.connect(database=IN_MEMORY)
        return duckdb.connect(db_path, read_only=read_only)
    except duckdb.Error as e:
        raise SourceUnavailableError(f"Could not open database {db_path}: {e}") from e


def run_query(con: duckdb.DuckDBPyConnection, sql: str, **tables: pd.DataFrame) -> pd.DataFrame:
    """
    Register temporary tables and run a read query.

    Args:
        con: Open DuckDB connection
        sql (str): Query text, may reference the registered tables by name
        **tables: DataFrames registered under their keyword name
            (e.g. ``tmp_subject_ids=pd.DataFrame({"subject_id": ids})``)

    Returns:
        pd.DataFrame: Query result

    Raises:
        SourceUnavailableError: If DuckDB rejects the query
    """
    try:
        for name, df in tables.items():
            con.register(name, df)
        return con.execute(sql).fetchdf()
    except duckdb.Error as e:
        raise SourceUnavailableError(f"Query failed: {e}") from e
