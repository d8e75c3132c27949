"""
Read-only access to the EDC platform's form tables.

Tables read (owned by the platform, never written here):
- form (form_id, name, owner_id, study_id)
- form_version (form_version_id, form_id, is_active)
- form_item (item_id, form_version_id, name, oid, required, regexp, ...)
- form_instance (form_instance_id, form_id, form_version_id, study_id, subject_id)
- item_data (data_point_id, form_instance_id, item_id, value, deleted)
"""

from typing import Any

import psycopg

from ..core.ports import DataPoint, FormInstance, FormItem, FormStore, FormSummary
from ..core.rules.field_resolver import last_segment
from ..observability.logger import get_logger
from .connection import DatabaseConnectionPool

logger = get_logger(__name__)


class PostgresFormStore(FormStore):
    """FormStore over the platform schema."""

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def _fetch(self, sql: str, params: dict[str, Any], conn: psycopg.Connection | None = None) -> list[dict]:
        if conn is not None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall()
        return self.pool.execute_query(sql, params)

    def get_active_version_items(self, form_id: int) -> list[FormItem]:
        query = """
            SELECT fi.item_id, fi.name, fi.oid, fi.required, fi.regexp, fi.regexp_error_message
            FROM form_item fi
            JOIN form_version fv ON fv.form_version_id = fi.form_version_id
            WHERE fv.form_id = %(form_id)s
              AND fv.is_active
            ORDER BY fi.ordinal, fi.item_id
        """
        rows = self._fetch(query, {"form_id": form_id})
        return [FormItem(**row) for row in rows]

    def data_points_for_instance(self, form_instance_id: int) -> list[DataPoint]:
        query = """
            SELECT d.data_point_id, d.item_id, fi.name, fi.oid, d.value
            FROM item_data d
            JOIN form_item fi ON fi.item_id = d.item_id
            WHERE d.form_instance_id = %(form_instance_id)s
              AND NOT d.deleted
            ORDER BY d.data_point_id
        """
        rows = self._fetch(query, {"form_instance_id": form_instance_id})
        return [DataPoint(**row) for row in rows]

    def get_submitted_values(self, form_instance_id: int) -> dict[str, Any]:
        return {
            point.name: point.value
            for point in self.data_points_for_instance(form_instance_id)
        }

    def find_data_point_id(
        self,
        form_instance_id: int,
        *,
        item_id: int | None = None,
        field_path: str | None = None,
        conn: Any = None,
    ) -> int | None:
        """
        Locate a data point by item id, then by field name or OID.

        Name and OID matching is case-insensitive and tries the full path
        before its last dotted segment.
        """
        if item_id is not None:
            query = """
                SELECT data_point_id
                FROM item_data
                WHERE form_instance_id = %(form_instance_id)s
                  AND item_id = %(item_id)s
                  AND NOT deleted
                ORDER BY data_point_id
                LIMIT 1
            """
            rows = self._fetch(query, {"form_instance_id": form_instance_id, "item_id": item_id}, conn)
            if rows:
                return rows[0]["data_point_id"]

        if not field_path:
            return None

        query = """
            SELECT d.data_point_id
            FROM item_data d
            JOIN form_item fi ON fi.item_id = d.item_id
            WHERE d.form_instance_id = %(form_instance_id)s
              AND NOT d.deleted
              AND (LOWER(fi.name) = LOWER(%(name)s) OR LOWER(fi.oid) = LOWER(%(name)s))
            ORDER BY d.data_point_id
            LIMIT 1
        """
        candidates = [field_path]
        segment = last_segment(field_path)
        if segment != field_path:
            candidates.append(segment)
        for name in candidates:
            rows = self._fetch(query, {"form_instance_id": form_instance_id, "name": name}, conn)
            if rows:
                return rows[0]["data_point_id"]

        logger.debug(
            "No data point found",
            extra={"form_instance_id": form_instance_id, "item_id": item_id, "field_path": field_path},
        )
        return None

    def get_form_instance(self, form_instance_id: int) -> FormInstance | None:
        query = """
            SELECT form_instance_id, form_id, form_version_id, study_id, subject_id
            FROM form_instance
            WHERE form_instance_id = %(form_instance_id)s
        """
        rows = self._fetch(query, {"form_instance_id": form_instance_id})
        return FormInstance(**rows[0]) if rows else None

    def form_owner_id(self, form_id: int) -> int | None:
        rows = self._fetch("SELECT owner_id FROM form WHERE form_id = %(form_id)s", {"form_id": form_id})
        return rows[0]["owner_id"] if rows else None

    def forms_for_study(self, study_id: int) -> list[FormSummary]:
        query = """
            SELECT form_id, name, owner_id
            FROM form
            WHERE study_id = %(study_id)s
            ORDER BY form_id
        """
        return [FormSummary(**row) for row in self._fetch(query, {"study_id": study_id})]
