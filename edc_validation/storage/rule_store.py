"""
Rule store: explicit rules in Postgres merged with metadata and legacy rules.

The ``validation_rule`` table is the primary source and its failures
propagate. Form item metadata and the legacy rules module are secondary: if
either is unavailable the lookup logs a warning and continues with what
remains.
"""

from datetime import datetime
from typing import Any

import psycopg

from ..core.models import Rule, RuleCreate, RuleUpdate
from ..core.ports import AuditWriter, CallerScope, FormStore, RuleProvider, StudyFormRules
from ..core.rules.rule_config import LegacyRuleModule
from ..core.rules.rule_sources import merge_rules, rules_from_metadata
from ..observability.logger import get_logger
from ..observability.metrics import record_degraded
from .connection import DatabaseConnectionPool
from .schema_mgmt import SchemaManager

logger = get_logger(__name__)

RULE_ENTITY = "validation_rule"

RULE_COLUMNS = """
    rule_id, form_id, form_version_id, item_id, name, description, rule_type,
    field_path, severity, error_message, warning_message, active, value_kind,
    min_value, max_value, min_date, max_date, pattern, format_type, operator,
    compare_field_path, custom_expression, owner_id, updated_by, created_at,
    updated_at
"""

# Columns a caller may write; identity, ownership and timestamps are managed here.
WRITABLE_FIELDS = (
    "form_version_id", "item_id", "name", "description", "rule_type",
    "field_path", "severity", "error_message", "warning_message", "active",
    "value_kind", "pattern", "format_type", "operator", "compare_field_path",
    "custom_expression",
)


def row_to_rule(row: dict[str, Any]) -> Rule:
    """Build a Rule from a ``validation_rule`` row; bounds come from the column pair matching value_kind."""
    data = {key: value for key, value in row.items() if key not in ("min_date", "max_date")}
    if row.get("value_kind") == "date":
        data["min_value"] = row.get("min_date")
        data["max_value"] = row.get("max_date")
    data["source"] = "explicit"
    return Rule(**data)


def bound_params(rule: Rule | RuleCreate) -> dict[str, Any]:
    """Split min/max into the numeric or date columns."""
    if rule.value_kind == "date":
        return {"min_value": None, "max_value": None, "min_date": rule.min_value, "max_date": rule.max_value}
    return {"min_value": rule.min_value, "max_value": rule.max_value, "min_date": None, "max_date": None}


class RuleStore(RuleProvider):
    """
    Rule lookup and CRUD.

    Example:
        store = RuleStore(pool, form_store=PostgresFormStore(pool),
                          legacy_module=LegacyRuleModule("legacy_rules.yaml"))
        scope = store.resolve_scope(user_id=7)
        rules = store.rules_for_form(12, scope)
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        form_store: FormStore | None = None,
        legacy_module: LegacyRuleModule | None = None,
        audit_writer: AuditWriter | None = None,
        schema_manager: SchemaManager | None = None,
    ):
        """
        Args:
            pool: Database connection pool
            form_store: Form metadata and ownership (optional)
            legacy_module: Legacy declarative rules (optional)
            audit_writer: Receives one entry per mutation (optional)
            schema_manager: Shared schema manager; one is created when omitted
        """
        self.pool = pool
        self.form_store = form_store
        self.legacy_module = legacy_module
        self.audit_writer = audit_writer
        self.schema_manager = schema_manager or SchemaManager(pool)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve_scope(self, user_id: int | None) -> CallerScope:
        """
        Visibility of a user: everyone sharing an organisation with them.

        A user without a user id is unscoped. A user outside every
        organisation only sees their own rules and forms.
        """
        if user_id is None:
            return CallerScope()
        query = """
            SELECT DISTINCT peer.user_id
            FROM organization_member me
            JOIN organization_member peer ON peer.organization_id = me.organization_id
            WHERE me.user_id = %(user_id)s
        """
        rows = self.pool.execute_query(query, {"user_id": user_id})
        members = {row["user_id"] for row in rows}
        members.add(user_id)
        return CallerScope(user_id=user_id, member_user_ids=frozenset(members))

    def rules_for_form(
        self,
        form_id: int,
        scope: CallerScope | None = None,
        form_version_id: int | None = None,
    ) -> list[Rule]:
        """
        Merged rules of a form, inactive ones included.

        Args:
            form_id: Form to load
            scope: Caller visibility; None is unscoped
            form_version_id: When set, version-specific explicit rules of other
                versions are excluded

        Returns:
            Explicit rules by name, then metadata rules, then legacy rules.
            Empty when the form is owned outside the caller's organisation.
        """
        scope = scope or CallerScope()
        if not scope.unscoped and self.form_store is not None:
            if not scope.can_see(self.form_store.form_owner_id(form_id)):
                logger.info("Form not visible to caller", extra={"form_id": form_id, "user_id": scope.user_id})
                return []

        explicit = self._explicit_rules(form_id, scope, form_version_id)
        metadata = self._metadata_rules(form_id, form_version_id)
        legacy = self._legacy_rules(form_id)
        return merge_rules(explicit, metadata, legacy)

    def rules_for_form_instance(self, form_instance_id: int, scope: CallerScope | None = None) -> list[Rule]:
        """Rules of the form (and version) a form instance was filled in on."""
        if self.form_store is None:
            raise RuntimeError("A form store is required to look up form instances")
        instance = self.form_store.get_form_instance(form_instance_id)
        if instance is None:
            return []
        return self.rules_for_form(instance.form_id, scope, instance.form_version_id)

    def rules_for_study(self, study_id: int, scope: CallerScope | None = None) -> list[StudyFormRules]:
        """
        Merged rules of every form in a study.

        Forms owned outside the caller's organisation are left out rather
        than listed with no rules.

        Returns:
            One entry per visible form, ordered by form id
        """
        if self.form_store is None:
            raise RuntimeError("A form store is required to list a study's forms")
        scope = scope or CallerScope()
        forms = self.form_store.forms_for_study(study_id)
        visible = [form for form in forms if scope.unscoped or scope.can_see(form.owner_id)]
        logger.info(
            "Loading rules for study",
            extra={"study_id": study_id, "form_count": len(visible), "user_id": scope.user_id},
        )
        return [
            StudyFormRules(form_id=form.form_id, form_name=form.name, rules=self.rules_for_form(form.form_id, scope))
            for form in visible
        ]

    def _explicit_rules(self, form_id: int, scope: CallerScope, form_version_id: int | None) -> list[Rule]:
        self.schema_manager.ensure_schema()
        query = f"""
            SELECT {RULE_COLUMNS}
            FROM validation_rule
            WHERE form_id = %(form_id)s
              AND (%(form_version_id)s::INTEGER IS NULL
                   OR form_version_id IS NULL
                   OR form_version_id = %(form_version_id)s)
              AND (%(members)s::INTEGER[] IS NULL
                   OR owner_id IS NULL
                   OR owner_id = ANY(%(members)s::INTEGER[]))
            ORDER BY name, rule_id
        """
        members = None if scope.unscoped else sorted(scope.member_user_ids)
        rows = self.pool.execute_query(
            query,
            {"form_id": form_id, "form_version_id": form_version_id, "members": members},
        )
        return [row_to_rule(row) for row in rows]

    def _metadata_rules(self, form_id: int, form_version_id: int | None) -> list[Rule]:
        if self.form_store is None:
            return []
        try:
            items = self.form_store.get_active_version_items(form_id)
        except Exception as e:
            logger.warning(
                "Form metadata unavailable, continuing without metadata rules",
                extra={"form_id": form_id, "error_message": str(e)},
            )
            record_degraded("form_metadata")
            return []
        return rules_from_metadata(form_id, items, form_version_id)

    def _legacy_rules(self, form_id: int) -> list[Rule]:
        if self.legacy_module is None:
            return []
        try:
            return self.legacy_module.rules_for_form(form_id)
        except Exception as e:
            logger.warning(
                "Legacy rules module unavailable, continuing without legacy rules",
                extra={"form_id": form_id, "error_message": str(e)},
            )
            record_degraded("legacy_rules")
            return []

    def get_rule(self, rule_id: int, scope: CallerScope | None = None) -> Rule | None:
        """Explicit rule by id, or None when missing or not visible."""
        self.schema_manager.ensure_schema()
        rows = self.pool.execute_query(
            f"SELECT {RULE_COLUMNS} FROM validation_rule WHERE rule_id = %(rule_id)s",
            {"rule_id": rule_id},
        )
        if not rows:
            return None
        rule = row_to_rule(rows[0])
        if scope is not None and not scope.can_see(rule.owner_id):
            return None
        return rule

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_rule(self, payload: RuleCreate, actor_id: int | None = None) -> Rule:
        """
        Insert an explicit rule owned by the actor.

        Not idempotent: every call inserts a new row.

        Raises:
            psycopg.DatabaseError: If the insert fails (nothing is written)
        """
        self.schema_manager.ensure_schema()
        insert_sql = f"""
            INSERT INTO validation_rule (
                form_id, form_version_id, item_id, name, description, rule_type,
                field_path, severity, error_message, warning_message, active,
                value_kind, min_value, max_value, min_date, max_date, pattern,
                format_type, operator, compare_field_path, custom_expression,
                owner_id, updated_by, created_at
            ) VALUES (
                %(form_id)s, %(form_version_id)s, %(item_id)s, %(name)s, %(description)s,
                %(rule_type)s, %(field_path)s, %(severity)s, %(error_message)s,
                %(warning_message)s, %(active)s, %(value_kind)s, %(min_value)s,
                %(max_value)s, %(min_date)s, %(max_date)s, %(pattern)s, %(format_type)s,
                %(operator)s, %(compare_field_path)s, %(custom_expression)s,
                %(owner_id)s, %(owner_id)s, %(created_at)s
            ) RETURNING {RULE_COLUMNS}
        """
        params = {field: getattr(payload, field) for field in WRITABLE_FIELDS}
        params.update(bound_params(payload))
        params.update(form_id=payload.form_id, owner_id=actor_id, created_at=datetime.utcnow())

        with self.pool.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(insert_sql, params)
                    rule = row_to_rule(cur.fetchone())
                self._audit(conn, rule, "rule_created", actor_id)
                conn.commit()
            except psycopg.DatabaseError as e:
                conn.rollback()
                logger.error(f"Failed to create rule: {e}", extra={"form_id": payload.form_id})
                raise

        logger.info("Rule created", extra={"rule_id": rule.rule_id, "form_id": rule.form_id, "rule_type": rule.rule_type})
        return rule

    def update_rule(
        self,
        rule_id: int,
        update: RuleUpdate,
        actor_id: int | None = None,
        scope: CallerScope | None = None,
    ) -> bool:
        """
        Apply a partial update.

        Only fields supplied in ``update`` change; an explicit None clears a
        nullable field. The merged rule is re-validated before it is written.

        Returns:
            False when the rule does not exist or is not visible

        Raises:
            ValueError: If the merged rule is invalid (pydantic ValidationError
                is a ValueError)
        """
        changes = update.changes()
        self.schema_manager.ensure_schema()

        with self.pool.get_connection() as conn:
            current = self._lock_rule(conn, rule_id, scope)
            if current is None:
                conn.rollback()
                return False
            if not changes:
                conn.rollback()
                return True

            merged = current.model_dump()
            merged.update(changes)
            # Bounds are re-coerced against the (possibly new) value kind.
            try:
                rule = Rule(**merged)
            except ValueError:
                conn.rollback()
                raise

            update_sql = """
                UPDATE validation_rule SET
                    form_version_id = %(form_version_id)s,
                    item_id = %(item_id)s,
                    name = %(name)s,
                    description = %(description)s,
                    rule_type = %(rule_type)s,
                    field_path = %(field_path)s,
                    severity = %(severity)s,
                    error_message = %(error_message)s,
                    warning_message = %(warning_message)s,
                    active = %(active)s,
                    value_kind = %(value_kind)s,
                    min_value = %(min_value)s,
                    max_value = %(max_value)s,
                    min_date = %(min_date)s,
                    max_date = %(max_date)s,
                    pattern = %(pattern)s,
                    format_type = %(format_type)s,
                    operator = %(operator)s,
                    compare_field_path = %(compare_field_path)s,
                    custom_expression = %(custom_expression)s,
                    updated_by = %(updated_by)s,
                    updated_at = %(updated_at)s
                WHERE rule_id = %(rule_id)s
            """
            params = {field: getattr(rule, field) for field in WRITABLE_FIELDS}
            params.update(bound_params(rule))
            params.update(rule_id=rule_id, updated_by=actor_id, updated_at=datetime.utcnow())
            try:
                with conn.cursor() as cur:
                    cur.execute(update_sql, params)
                self._audit(conn, rule, "rule_updated", actor_id, fields=sorted(changes))
                conn.commit()
            except psycopg.DatabaseError as e:
                conn.rollback()
                logger.error(f"Failed to update rule: {e}", extra={"rule_id": rule_id})
                raise

        logger.info("Rule updated", extra={"rule_id": rule_id, "fields": sorted(changes)})
        return True

    def set_active(
        self,
        rule_id: int,
        active: bool,
        actor_id: int | None = None,
        scope: CallerScope | None = None,
    ) -> bool:
        """
        Enable or disable a rule.

        Setting the state it already has succeeds without a change, so a
        retried call is harmless.

        Returns:
            False when the rule does not exist or is not visible
        """
        self.schema_manager.ensure_schema()
        with self.pool.get_connection() as conn:
            current = self._lock_rule(conn, rule_id, scope)
            if current is None:
                conn.rollback()
                return False
            if current.active == active:
                conn.rollback()
                return True
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE validation_rule
                        SET active = %(active)s, updated_by = %(actor_id)s, updated_at = %(now)s
                        WHERE rule_id = %(rule_id)s
                        """,
                        {"active": active, "actor_id": actor_id, "now": datetime.utcnow(), "rule_id": rule_id},
                    )
                self._audit(conn, current, "rule_activated" if active else "rule_deactivated", actor_id)
                conn.commit()
            except psycopg.DatabaseError as e:
                conn.rollback()
                logger.error(f"Failed to toggle rule: {e}", extra={"rule_id": rule_id})
                raise

        logger.info("Rule toggled", extra={"rule_id": rule_id, "active": active})
        return True

    def delete_rule(self, rule_id: int, actor_id: int | None = None, scope: CallerScope | None = None) -> bool:
        """
        Delete a rule.

        Returns:
            False when the rule does not exist (already deleted) or is not visible
        """
        self.schema_manager.ensure_schema()
        with self.pool.get_connection() as conn:
            current = self._lock_rule(conn, rule_id, scope)
            if current is None:
                conn.rollback()
                return False
            try:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM validation_rule WHERE rule_id = %(rule_id)s", {"rule_id": rule_id})
                self._audit(conn, current, "rule_deleted", actor_id)
                conn.commit()
            except psycopg.DatabaseError as e:
                conn.rollback()
                logger.error(f"Failed to delete rule: {e}", extra={"rule_id": rule_id})
                raise

        logger.info("Rule deleted", extra={"rule_id": rule_id})
        return True

    def _lock_rule(self, conn: psycopg.Connection, rule_id: int, scope: CallerScope | None) -> Rule | None:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {RULE_COLUMNS} FROM validation_rule WHERE rule_id = %(rule_id)s FOR UPDATE",
                {"rule_id": rule_id},
            )
            row = cur.fetchone()
        if row is None:
            return None
        rule = row_to_rule(row)
        if scope is not None and not scope.can_see(rule.owner_id):
            return None
        return rule

    def _audit(
        self,
        conn: psycopg.Connection,
        rule: Rule,
        action: str,
        actor_id: int | None,
        fields: list[str] | None = None,
    ) -> None:
        if self.audit_writer is None:
            return
        detail = f"Rule: {rule.name}, Field: {rule.field_path}"
        if fields:
            detail += f", Changed: {', '.join(fields)}"
        self.audit_writer.record(RULE_ENTITY, rule.rule_id, action, actor_id, detail, conn=conn)
