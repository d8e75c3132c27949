"""
Validation engine: orchestrates rule lookup, field resolution, evaluation and
query creation for a form submission or a single field.

The engine loads rules from the rule store, resolves each rule's value,
evaluates it and, for failures, optionally asks the query writer to create or
reuse a discrepancy query. Validation failures are data in the returned
ValidationReport; per-rule problems never abort the pass.
"""

import time
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field

from ...observability.logger import get_logger, log_operation
from ...observability.metrics import (
    increment_counter,
    observe_histogram,
    validation_duration_seconds,
    validation_issues_total,
)
from ..models import (
    FieldIssue,
    FieldValue,
    QueryRequest,
    Rule,
    RuleOutcome,
    RuleType,
    SubmissionState,
    ValidationReport,
)
from ..ports import CallerScope, FormSavedEvent, FormStore, QueryCreator, RuleProvider, WorkflowTrigger
from ..validators import RuleEvaluator
from .field_resolver import (
    build_data_point_map,
    lookup_data_point_id,
    matches_field,
    resolve_field_value,
    rule_data_point_id,
)

logger = get_logger(__name__)


class ValidationOptions(BaseModel):
    """
    Per-call options for a validation pass.

    Queries are only created when ``create_queries`` is set and both
    ``study_id`` and ``user_id`` are known.

    Attributes:
        create_queries: Persist discrepancy queries for failures
        study_id: Study of the submission
        subject_id: Subject of the submission
        form_instance_id: Form instance being saved
        form_version_id: Form version being saved (filters version-specific rules)
        user_id: Submitting user (query owner and audit actor)
        data_point_map: Identifier -> data point id for the form instance
        data_point_id: Data point of the field (single-field validation)
        item_id: Stored item of the field (single-field validation)
        assigned_user_id: Explicit assignee for created queries
        query_on_warnings: Also create (annotation) queries for warnings
        operation_type: create, update or delete (a delete validates as empty)
        scope: Caller visibility for rule lookup
    """

    create_queries: bool = False
    study_id: int | None = None
    subject_id: int | None = None
    form_instance_id: int | None = None
    form_version_id: int | None = None
    user_id: int | None = None
    data_point_map: dict[str, int] = Field(default_factory=dict)
    data_point_id: int | None = None
    item_id: int | None = None
    assigned_user_id: int | None = None
    query_on_warnings: bool = False
    operation_type: Literal["create", "update", "delete"] = "update"
    scope: CallerScope | None = None

    @property
    def persisting(self) -> bool:
        return self.create_queries and self.study_id is not None and self.user_id is not None


class ValidationEngine:
    """
    Validates submitted form data against a form's rules.

    Example:
        engine = ValidationEngine(rule_store, query_writer=writer, form_store=forms)
        report = engine.validate_form(12, {"age": 10}, ValidationOptions())
        report.valid  # False when an error-severity rule failed
    """

    def __init__(
        self,
        rule_store: RuleProvider,
        evaluator: RuleEvaluator | None = None,
        query_writer: QueryCreator | None = None,
        form_store: FormStore | None = None,
        trigger: WorkflowTrigger | None = None,
    ):
        """
        Initialize the engine.

        Args:
            rule_store: Source of merged rules per form
            evaluator: Rule evaluator (a default sandbox is used if None)
            query_writer: Creates or reuses discrepancy queries
            form_store: Loads data points and submitted values of form instances
            trigger: Notified after an accepted, persisted form submission
        """
        self.rule_store = rule_store
        self.evaluator = evaluator or RuleEvaluator()
        self.query_writer = query_writer
        self.form_store = form_store
        self.trigger = trigger

    # =======================
    # ENTRY POINTS
    # =======================

    def validate_form(
        self,
        form_id: int,
        data: Mapping[str, Any],
        options: ValidationOptions | None = None,
    ) -> ValidationReport:
        """
        Validate a whole form submission.

        Args:
            form_id: Form the data was entered in
            data: Submitted values keyed by field name
            options: Query creation and context options

        Returns:
            ValidationReport with errors and warnings in rule-list order
        """
        options = options or ValidationOptions()
        started = time.monotonic()
        self._log_state(SubmissionState.EVALUATING, form_id, options)

        with log_operation("Validating form", logger=logger, form_id=form_id,
                           form_instance_id=options.form_instance_id):
            rules = self._active_rules(form_id, options)
            data_point_map = self._data_point_map(options)
            report = ValidationReport(valid=True)

            for rule in rules:
                value = resolve_field_value(rule, data, data_point_map)
                if value is None:
                    if not self._known_but_unanswered(rule, data_point_map):
                        logger.debug(
                            "Field not in submission, rule not applicable",
                            extra={"rule_name": rule.name, "field_path": rule.field_path},
                        )
                        continue
                    value = FieldValue.from_raw("")

                outcome = self.evaluator.evaluate(rule, value, data)
                if outcome.valid:
                    continue

                data_point_id = rule_data_point_id(rule, data_point_map)
                self._record_failure(report, form_id, rule, value, data_point_id, options)

        return self._finish(report, form_id, options, started, mode="form")

    def validate_field(
        self,
        form_id: int,
        field_path: str,
        value: Any,
        all_form_data: Mapping[str, Any] | None = None,
        options: ValidationOptions | None = None,
    ) -> ValidationReport:
        """
        Validate one field change (live validation on blur or save).

        Only rules matching the field are applied. With
        ``create_queries=False`` the report content is identical to the
        persisting mode except that no query ids are attached.

        Args:
            form_id: Form the field belongs to
            field_path: Field being changed, as the caller names it
            value: New value (ignored for a delete, which validates as empty)
            all_form_data: The rest of the form, for cross-field rules
            options: Query creation and context options
        """
        options = options or ValidationOptions()
        started = time.monotonic()
        form_data = all_form_data or {}
        self._log_state(SubmissionState.EVALUATING, form_id, options, field_path=field_path)

        field_value = FieldValue.from_raw(None if options.operation_type == "delete" else value)
        data_point_map = self._data_point_map(options)
        rules = [
            rule
            for rule in self._active_rules(form_id, options)
            if matches_field(rule, field_path, options.item_id, data_point_map)
        ]
        logger.debug(
            "Found matching rules",
            extra={"field_path": field_path, "matching_rules": len(rules)},
        )

        report = ValidationReport(valid=True)
        for rule in rules:
            outcome = self.evaluator.evaluate(rule, field_value, form_data)
            if outcome.valid:
                continue
            data_point_id = options.data_point_id or lookup_data_point_id(field_path, data_point_map)
            self._record_failure(report, form_id, rule, field_value, data_point_id, options)

        return self._finish(report, form_id, options, started, mode="field", fire_trigger=False)

    def validate_form_instance(
        self,
        form_instance_id: int,
        options: ValidationOptions | None = None,
    ) -> ValidationReport:
        """
        Validate the stored data of a form instance.

        Submitted values, data points, study and subject are loaded from the
        form store.

        Raises:
            RuntimeError: If no form store is configured
            LookupError: If the form instance does not exist
        """
        if self.form_store is None:
            raise RuntimeError("validate_form_instance requires a form store")

        instance = self.form_store.get_form_instance(form_instance_id)
        if instance is None:
            raise LookupError(f"Form instance {form_instance_id} not found")

        options = options or ValidationOptions()
        data = self.form_store.get_submitted_values(form_instance_id)
        data_point_map = options.data_point_map or build_data_point_map(
            self.form_store.data_points_for_instance(form_instance_id)
        )
        options = options.model_copy(
            update={
                "study_id": options.study_id or instance.study_id,
                "subject_id": options.subject_id or instance.subject_id,
                "form_instance_id": form_instance_id,
                "form_version_id": options.form_version_id or instance.form_version_id,
                "data_point_map": data_point_map,
            }
        )
        return self.validate_form(instance.form_id, data, options)

    def test_rule(self, rule: Rule, value: Any, data: Mapping[str, Any] | None = None) -> RuleOutcome:
        """Evaluate a rule directly, without a stored form (rule authoring preview)."""
        return self.evaluator.evaluate(rule, value, data or {})

    def rule_summary(self, form_id: int, scope: CallerScope | None = None) -> dict[str, Any]:
        """
        Get summary of a form's rules.

        Returns:
            Dictionary with rule counts by type, severity and source
        """
        rules = self.rule_store.rules_for_form(form_id, scope)
        active = [rule for rule in rules if rule.active]
        return {
            "total_rules": len(rules),
            "active_rules": len(active),
            "rules_by_type": self._count_by(active, "rule_type"),
            "rules_by_severity": self._count_by(active, "severity"),
            "rules_by_source": self._count_by(active, "source"),
        }

    # =======================
    # INTERNALS
    # =======================

    def _active_rules(self, form_id: int, options: ValidationOptions) -> list[Rule]:
        rules = self.rule_store.rules_for_form(form_id, options.scope, options.form_version_id)
        return [rule for rule in rules if rule.active]

    def _data_point_map(self, options: ValidationOptions) -> dict[str, int]:
        if options.data_point_map or options.form_instance_id is None or self.form_store is None:
            return dict(options.data_point_map)
        try:
            return build_data_point_map(self.form_store.data_points_for_instance(options.form_instance_id))
        except Exception as e:
            logger.warning(
                "Could not build data point map, continuing without it",
                extra={"form_instance_id": options.form_instance_id, "error_message": str(e)},
            )
            return {}

    @staticmethod
    def _known_but_unanswered(rule: Rule, data_point_map: Mapping[str, int]) -> bool:
        """A required item that belongs to the instance but was not submitted counts as empty."""
        return (
            rule.rule_type == RuleType.REQUIRED.value
            and rule.item_id is not None
            and bool(data_point_map.get(f"item_{rule.item_id}"))
        )

    def _record_failure(
        self,
        report: ValidationReport,
        form_id: int,
        rule: Rule,
        value: FieldValue,
        data_point_id: int | None,
        options: ValidationOptions,
    ) -> None:
        issue = FieldIssue(
            field_path=rule.field_path,
            message=rule.message_for_severity(),
            severity=rule.severity,
            rule_name=rule.name,
            data_point_id=data_point_id,
        )

        if rule.severity == "error" or options.query_on_warnings:
            issue.query_id = self._create_query(form_id, rule, value, issue, options)
            if issue.query_id is not None:
                report.queries_created += 1

        if rule.severity == "error":
            report.errors.append(issue)
        else:
            report.warnings.append(issue)

    def _create_query(
        self,
        form_id: int,
        rule: Rule,
        value: FieldValue,
        issue: FieldIssue,
        options: ValidationOptions,
    ) -> int | None:
        if not options.persisting or self.query_writer is None:
            return None

        request = QueryRequest(
            study_id=options.study_id,
            subject_id=options.subject_id,
            form_instance_id=options.form_instance_id,
            data_point_id=issue.data_point_id,
            item_id=rule.item_id if rule.item_id is not None else options.item_id,
            field_path=rule.field_path,
            rule_name=rule.name,
            rule_id=rule.rule_id,
            message=issue.message,
            severity=rule.severity,
            value=value.to_python(),
            actor_id=options.user_id,
            assigned_user_id=options.assigned_user_id,
            form_id=form_id,
        )
        try:
            return self.query_writer.create_or_reuse_query(request)
        except Exception as e:
            logger.error(
                "Query writer raised, reporting failure without a query",
                extra={"rule_name": rule.name, "field_path": rule.field_path, "error_message": str(e)},
                exc_info=True,
            )
            return None

    def _finish(
        self,
        report: ValidationReport,
        form_id: int,
        options: ValidationOptions,
        started: float,
        mode: str,
        fire_trigger: bool = True,
    ) -> ValidationReport:
        report.valid = not report.errors
        report.state = SubmissionState.ACCEPTED if report.valid else SubmissionState.BLOCKED

        observe_histogram(validation_duration_seconds, time.monotonic() - started, mode=mode)
        if report.errors:
            increment_counter(validation_issues_total, len(report.errors), severity="error", mode=mode)
        if report.warnings:
            increment_counter(validation_issues_total, len(report.warnings), severity="warning", mode=mode)

        self._log_state(
            report.state,
            form_id,
            options,
            errors=len(report.errors),
            warnings=len(report.warnings),
            queries_created=report.queries_created,
        )

        if fire_trigger and report.valid:
            self._notify_saved(form_id, report, options)
        return report

    def _notify_saved(self, form_id: int, report: ValidationReport, options: ValidationOptions) -> None:
        if self.trigger is None or not options.persisting or options.form_instance_id is None:
            return
        event = FormSavedEvent(
            form_id=form_id,
            form_instance_id=options.form_instance_id,
            study_id=options.study_id,
            subject_id=options.subject_id,
            user_id=options.user_id,
            operation_type=options.operation_type,
            warnings=[issue.message for issue in report.warnings],
        )
        try:
            self.trigger.form_saved(event)
        except Exception as e:
            logger.error(
                "Workflow trigger raised, validation result unaffected",
                extra={"form_instance_id": options.form_instance_id, "error_message": str(e)},
            )

    @staticmethod
    def _log_state(state: SubmissionState, form_id: int, options: ValidationOptions, **extra: Any) -> None:
        logger.info(
            f"Submission {state.value}",
            extra={
                "state": state.value,
                "form_id": form_id,
                "form_instance_id": options.form_instance_id,
                "persisting": options.persisting,
                **extra,
            },
        )

    @staticmethod
    def _count_by(rules: list[Rule], attribute: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for rule in rules:
            key = getattr(rule, attribute)
            counts[key] = counts.get(key, 0) + 1
        return counts
