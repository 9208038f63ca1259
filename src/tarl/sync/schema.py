"""
Schema comparison between the primary and secondary databases.

Works on rows from information_schema.columns, so the diff itself is pure
and can be tested without a database.
"""
from typing import Any, Dict, Iterable, List

from tarl.models.sync import SchemaComparison, SchemaDifference

SCHEMA_QUERY = """
    SELECT table_name, column_name, data_type, is_nullable
    FROM information_schema.columns
    WHERE table_schema = 'public' AND table_name LIKE 'tbl_tarl_%'
    ORDER BY table_name, ordinal_position
"""

_COLUMN_KEYS = ("column_name", "data_type", "is_nullable")


def group_columns_by_table(rows: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group column rows by table_name, keeping column order."""
    tables: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        column = {key: row.get(key) for key in _COLUMN_KEYS}
        tables.setdefault(row["table_name"], []).append(column)
    return tables


def diff_schemas(
    primary_rows: Iterable[Dict[str, Any]],
    secondary_rows: Iterable[Dict[str, Any]],
) -> SchemaComparison:
    """
    Classify every primary table as matching, missing on the secondary, or
    differing. Columns must agree on name, type, nullability and order to
    count as matching. Tables that only exist on the secondary are ignored.
    """
    primary_tables = group_columns_by_table(primary_rows)
    secondary_tables = group_columns_by_table(secondary_rows)

    result = SchemaComparison()
    for table_name, primary_cols in primary_tables.items():
        secondary_cols = secondary_tables.get(table_name)
        if secondary_cols is None:
            result.missing_in_secondary.append(table_name)
        elif primary_cols == secondary_cols:
            result.matching.append(table_name)
        else:
            result.differences.append(
                SchemaDifference(
                    table=table_name,
                    primary=primary_cols,
                    secondary=secondary_cols,
                )
            )
    return result
