"""
Admin CLI for managing validation rules and running validations.

Usage:
    edc-validation-admin init-schema
    edc-validation-admin list-rules --form-id <id> [--user-id <id>] [--include-inactive]
    edc-validation-admin add-rule --rule-file <path> [--actor-id <id>]
    edc-validation-admin add-rule --form-id <id> --name <name> --type <type> --field-path <path> --message <msg> [options]
    edc-validation-admin update-rule --rule-id <id> --set field=value [--clear field] [--actor-id <id>]
    edc-validation-admin toggle-rule --rule-id <id> (--enable | --disable)
    edc-validation-admin delete-rule --rule-id <id>
    edc-validation-admin test-rule (--rule-id <id> | --rule-file <path>) --value <value> [--data <json>]
    edc-validation-admin validate-instance --form-instance-id <id> [--user-id <id>] [--create-queries]

Database settings default to the DB_* environment variables.
"""

import argparse
import json
import sys
from typing import Any

import yaml

from ..config import EngineSettings
from ..core.assignment import AssigneeResolver
from ..core.expressions import ExpressionSandbox
from ..core.models import Rule, RuleCreate, RuleUpdate
from ..core.rules.rule_config import LegacyRuleModule, RuleConfigLoader
from ..core.rules.rule_engine import ValidationEngine, ValidationOptions
from ..core.validators import RuleEvaluator
from ..observability.logger import get_logger, setup_logger
from ..storage.audit import PostgresAuditWriter
from ..storage.connection import DatabaseConnectionPool
from ..storage.form_store import PostgresFormStore
from ..storage.query_writer import QueryWriter
from ..storage.rule_store import RuleStore
from ..storage.schema_mgmt import SchemaManager
from ..storage.user_store import PostgresUserRoleStore, PostgresWorkflowRouting

logger = get_logger(__name__)


class Services:
    """Postgres-backed stores and the engine wired to one pool."""

    def __init__(self, pool: DatabaseConnectionPool, settings: EngineSettings):
        self.pool = pool
        self.schema_manager = SchemaManager(pool)
        self.form_store = PostgresFormStore(pool)
        self.audit_writer = PostgresAuditWriter(pool, self.schema_manager)
        legacy = LegacyRuleModule(settings.legacy_rules_path) if settings.legacy_rules_path else None
        self.rule_store = RuleStore(
            pool,
            form_store=self.form_store,
            legacy_module=legacy,
            audit_writer=self.audit_writer,
            schema_manager=self.schema_manager,
        )
        resolver = AssigneeResolver(
            PostgresUserRoleStore(pool),
            PostgresWorkflowRouting(pool, self.schema_manager),
        )
        self.query_writer = QueryWriter(
            pool,
            form_store=self.form_store,
            assignee_resolver=resolver,
            audit_writer=self.audit_writer,
            schema_manager=self.schema_manager,
        )
        self.engine = ValidationEngine(
            self.rule_store,
            evaluator=build_evaluator(settings),
            query_writer=self.query_writer,
            form_store=self.form_store,
        )


def build_evaluator(settings: EngineSettings) -> RuleEvaluator:
    return RuleEvaluator(
        ExpressionSandbox(
            max_length=settings.expression_max_length,
            max_steps=settings.expression_max_steps,
            timeout_ms=settings.expression_timeout_ms,
            match_timeout_ms=settings.regex_timeout_ms,
        )
    )


def open_pool(args) -> DatabaseConnectionPool:
    pool = DatabaseConnectionPool(
        host=args.db_host,
        port=args.db_port,
        database=args.db_name,
        user=args.db_user,
        password=args.db_password,
    )
    pool.open()
    return pool


def parse_assignment(text: str) -> tuple[str, Any]:
    """'min_value=18' -> ('min_value', 18). Values are parsed as YAML scalars."""
    if "=" not in text:
        raise ValueError(f"Expected FIELD=VALUE, got '{text}'")
    field, raw = text.split("=", 1)
    return field.strip(), yaml.safe_load(raw) if raw.strip() else ""


def print_rules(rules: list[Rule]) -> None:
    print(f"\n{'ID':<6} {'Source':<9} {'Active':<7} {'Type':<15} {'Severity':<9} {'Field':<30} {'Name'}")
    print(f"{'-' * 100}")
    for rule in rules:
        rule_id = str(rule.rule_id) if rule.rule_id is not None else "-"
        active = "yes" if rule.active else "no"
        print(
            f"{rule_id:<6} {rule.source:<9} {active:<7} {rule.rule_type:<15} "
            f"{rule.severity:<9} {rule.field_path:<30} {rule.name}"
        )
    print(f"\nTotal rules: {len(rules)}\n")


# =======================
# COMMANDS
# =======================

def init_schema_command(args, settings: EngineSettings):
    """Create the package-owned tables."""
    pool = open_pool(args)
    try:
        manager = SchemaManager(pool)
        manager.ensure_schema()
        print(f"\nSchema ready: {', '.join(manager.existing_tables())}\n")
    finally:
        pool.close()


def list_rules_command(args, settings: EngineSettings):
    """List the merged rules of a form."""
    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        scope = services.rule_store.resolve_scope(args.user_id) if args.user_id is not None else None
        rules = services.rule_store.rules_for_form(args.form_id, scope, args.form_version_id)
        if not args.include_inactive:
            rules = [rule for rule in rules if rule.active]

        if args.json:
            print(json.dumps([rule.model_dump(mode="json") for rule in rules], indent=2))
        else:
            print(f"\nRULES FOR FORM {args.form_id}")
            print_rules(rules)
    finally:
        pool.close()


def add_rule_command(args, settings: EngineSettings):
    """Add explicit rules from a YAML file or from command-line options."""
    if args.rule_file:
        payloads = RuleConfigLoader(args.rule_file).load_rules()
    else:
        missing = [
            flag for flag, value in (
                ("--form-id", args.form_id),
                ("--name", args.name),
                ("--type", args.rule_type),
                ("--field-path", args.field_path),
                ("--message", args.message),
            ) if value is None
        ]
        if missing:
            raise ValueError(f"Missing required options without --rule-file: {', '.join(missing)}")
        payloads = [
            RuleCreate(
                form_id=args.form_id,
                name=args.name,
                rule_type=args.rule_type,
                field_path=args.field_path,
                severity=args.severity,
                error_message=args.message,
                value_kind=args.value_kind,
                min_value=args.min_value,
                max_value=args.max_value,
                pattern=args.pattern,
                format_type=args.format_type,
                operator=args.operator,
                compare_field_path=args.compare_field,
                custom_expression=args.expression,
                item_id=args.item_id,
            )
        ]

    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        for payload in payloads:
            rule = services.rule_store.create_rule(payload, actor_id=args.actor_id)
            print(f"Rule added: {rule.rule_id} ({rule.rule_type} on {rule.field_path}, form {rule.form_id})")
    finally:
        pool.close()


def update_rule_command(args, settings: EngineSettings):
    """Apply a partial update to an explicit rule."""
    changes: dict[str, Any] = dict(parse_assignment(text) for text in args.set or [])
    for field in args.clear or []:
        changes[field] = None
    if not changes:
        raise ValueError("Nothing to update: pass --set FIELD=VALUE or --clear FIELD")
    update = RuleUpdate(**changes)

    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        if services.rule_store.update_rule(args.rule_id, update, actor_id=args.actor_id):
            print(f"\nRule {args.rule_id} updated: {', '.join(sorted(changes))}\n")
        else:
            print(f"\nRule {args.rule_id} not found\n")
            sys.exit(1)
    finally:
        pool.close()


def toggle_rule_command(args, settings: EngineSettings):
    """Enable or disable an explicit rule."""
    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        if services.rule_store.set_active(args.rule_id, args.enable, actor_id=args.actor_id):
            print(f"\nRule {args.rule_id} {'enabled' if args.enable else 'disabled'}\n")
        else:
            print(f"\nRule {args.rule_id} not found\n")
            sys.exit(1)
    finally:
        pool.close()


def delete_rule_command(args, settings: EngineSettings):
    """Delete an explicit rule."""
    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        if services.rule_store.delete_rule(args.rule_id, actor_id=args.actor_id):
            print(f"\nRule {args.rule_id} deleted\n")
        else:
            print(f"\nRule {args.rule_id} not found\n")
            sys.exit(1)
    finally:
        pool.close()


def test_rule_command(args, settings: EngineSettings):
    """Evaluate one rule against a value without touching stored data."""
    data = json.loads(args.data) if args.data else {}
    value = yaml.safe_load(args.value) if args.value is not None else None

    if args.rule_file:
        with open(args.rule_file) as f:
            rule = Rule(**(yaml.safe_load(f) or {}))
    else:
        pool = open_pool(args)
        try:
            rule = RuleStore(pool).get_rule(args.rule_id)
        finally:
            pool.close()
        if rule is None:
            print(f"\nRule {args.rule_id} not found\n")
            sys.exit(1)

    outcome = build_evaluator(settings).evaluate(rule, value, data)
    status = "SKIPPED" if outcome.skipped else ("PASS" if outcome.valid else "FAIL")
    print(f"\nRule:   {rule.name} ({rule.rule_type} on {rule.field_path})")
    print(f"Value:  {json.dumps(value, default=str)}")
    print(f"Result: {status}")
    if not outcome.valid:
        print(f"Message: {rule.message_for_severity()}")
    if outcome.detail:
        print(f"Detail: {outcome.detail}")
    print()


def validate_instance_command(args, settings: EngineSettings):
    """Validate the stored data of a form instance and print the report."""
    pool = open_pool(args)
    try:
        services = Services(pool, settings)
        scope = services.rule_store.resolve_scope(args.user_id) if args.user_id is not None else None
        options = ValidationOptions(
            create_queries=args.create_queries,
            user_id=args.user_id,
            query_on_warnings=args.query_on_warnings,
            scope=scope,
        )
        report = services.engine.validate_form_instance(args.form_instance_id, options)
        print(json.dumps(report.to_payload(), indent=2, default=str))
        if not report.valid:
            sys.exit(2)
    finally:
        pool.close()


COMMANDS = {
    "init-schema": init_schema_command,
    "list-rules": list_rules_command,
    "add-rule": add_rule_command,
    "update-rule": update_rule_command,
    "toggle-rule": toggle_rule_command,
    "delete-rule": delete_rule_command,
    "test-rule": test_rule_command,
    "validate-instance": validate_instance_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Admin CLI for the clinical validation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Global database connection options
    parser.add_argument("--db-host", default=None, help="Database host (default: $DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, default=None, help="Database port (default: $DB_PORT or 5432)")
    parser.add_argument("--db-name", default=None, help="Database name (default: $DB_NAME or edc)")
    parser.add_argument("--db-user", default=None, help="Database user (default: $DB_USER or edc)")
    parser.add_argument("--db-password", default=None, help="Database password (default: $DB_PASSWORD)")
    parser.add_argument("--env-file", default=None, help="Optional .env file with EDC_* and DB_* settings")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: $EDC_LOG_LEVEL or INFO); logs go to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-schema", help="Create the rule, query, anchor, audit and routing tables")

    list_parser = subparsers.add_parser("list-rules", help="List merged rules of a form")
    list_parser.add_argument("--form-id", type=int, required=True, help="Form ID")
    list_parser.add_argument("--form-version-id", type=int, default=None, help="Restrict to one form version")
    list_parser.add_argument("--user-id", type=int, default=None, help="List as this user (organisation scope)")
    list_parser.add_argument("--include-inactive", action="store_true", help="Include disabled rules")
    list_parser.add_argument("--json", action="store_true", help="Print rules as JSON")

    add_parser = subparsers.add_parser("add-rule", help="Add explicit rules")
    add_parser.add_argument("--rule-file", default=None, help="YAML file of rule definitions")
    add_parser.add_argument("--form-id", type=int, default=None, help="Form ID")
    add_parser.add_argument("--name", default=None, help="Rule name")
    add_parser.add_argument("--type", dest="rule_type", default=None, help="Rule type")
    add_parser.add_argument("--field-path", default=None, help="Target field path")
    add_parser.add_argument("--message", default=None, help="Error message")
    add_parser.add_argument("--severity", choices=["error", "warning"], default="error", help="Severity")
    add_parser.add_argument("--value-kind", choices=["numeric", "date"], default="numeric", help="Range coercion")
    add_parser.add_argument("--min", dest="min_value", default=None, help="Range lower bound")
    add_parser.add_argument("--max", dest="max_value", default=None, help="Range upper bound")
    add_parser.add_argument("--pattern", default=None, help="Regex or =FORMULA: pattern")
    add_parser.add_argument("--format-type", default=None, help="Named format archetype")
    add_parser.add_argument("--operator", default=None, help="Consistency operator")
    add_parser.add_argument("--compare-field", default=None, help="Consistency compare field path")
    add_parser.add_argument("--expression", default=None, help="Business logic expression")
    add_parser.add_argument("--item-id", type=int, default=None, help="Stored item ID")
    add_parser.add_argument("--actor-id", type=int, default=None, help="User recorded as owner and audit actor")

    update_parser = subparsers.add_parser("update-rule", help="Update fields of an explicit rule")
    update_parser.add_argument("--rule-id", type=int, required=True, help="Rule ID")
    update_parser.add_argument("--set", action="append", metavar="FIELD=VALUE", help="Field to change (repeatable)")
    update_parser.add_argument("--clear", action="append", metavar="FIELD", help="Nullable field to clear (repeatable)")
    update_parser.add_argument("--actor-id", type=int, default=None, help="User recorded in the audit log")

    toggle_parser = subparsers.add_parser("toggle-rule", help="Enable or disable a rule")
    toggle_parser.add_argument("--rule-id", type=int, required=True, help="Rule ID")
    state = toggle_parser.add_mutually_exclusive_group(required=True)
    state.add_argument("--enable", dest="enable", action="store_true", help="Enable the rule")
    state.add_argument("--disable", dest="enable", action="store_false", help="Disable the rule")
    toggle_parser.add_argument("--actor-id", type=int, default=None, help="User recorded in the audit log")

    delete_parser = subparsers.add_parser("delete-rule", help="Delete an explicit rule")
    delete_parser.add_argument("--rule-id", type=int, required=True, help="Rule ID")
    delete_parser.add_argument("--actor-id", type=int, default=None, help="User recorded in the audit log")

    test_parser = subparsers.add_parser("test-rule", help="Evaluate one rule against a value")
    source = test_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--rule-id", type=int, help="Stored rule ID")
    source.add_argument("--rule-file", help="YAML file with a single rule")
    test_parser.add_argument("--value", default=None, help="Value to test (parsed as YAML scalar)")
    test_parser.add_argument("--data", default=None, help="Other form data as JSON")

    validate_parser = subparsers.add_parser("validate-instance", help="Validate a stored form instance")
    validate_parser.add_argument("--form-instance-id", type=int, required=True, help="Form instance ID")
    validate_parser.add_argument("--user-id", type=int, default=None, help="Validating user")
    validate_parser.add_argument("--create-queries", action="store_true", help="Create discrepancy queries")
    validate_parser.add_argument("--query-on-warnings", action="store_true", help="Also create queries for warnings")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point for admin CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = EngineSettings.from_env(args.env_file)
    setup_logger(level=args.log_level, stream=sys.stderr)
    handler = COMMANDS[args.command]

    try:
        handler(args, settings)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except (ValueError, FileNotFoundError, LookupError) as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
