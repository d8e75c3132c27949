"""
Fire-and-forget workflow notification after an accepted submission.

The engine calls ``form_saved`` and returns immediately; the handler runs on
a small thread pool and its failures are logged, never reported back to the
validation caller.
"""

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from ..config import EngineSettings
from ..observability.logger import get_logger
from ..observability.metrics import record_degraded
from .ports import FormSavedEvent, WorkflowTrigger

logger = get_logger(__name__)


class NullWorkflowTrigger(WorkflowTrigger):
    """Trigger that does nothing (no workflow system configured)."""

    def form_saved(self, event: FormSavedEvent) -> None:
        logger.debug("No workflow trigger configured", extra={"form_instance_id": event.form_instance_id})


class BackgroundWorkflowTrigger(WorkflowTrigger):
    """
    Runs a workflow handler in the background.

    Example:
        trigger = BackgroundWorkflowTrigger(workflow_client.on_form_saved, max_workers=2)
        engine = ValidationEngine(..., trigger=trigger)
        ...
        trigger.shutdown()
    """

    def __init__(self, handler: Callable[[FormSavedEvent], None], max_workers: int = 2):
        """
        Args:
            handler: Called with each FormSavedEvent on a worker thread
            max_workers: Worker threads
        """
        self.handler = handler
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="edc-workflow")

    @classmethod
    def from_settings(
        cls, handler: Callable[[FormSavedEvent], None], settings: EngineSettings
    ) -> "BackgroundWorkflowTrigger":
        """Build a trigger sized by ``EngineSettings.workflow_workers``."""
        return cls(handler, max_workers=settings.workflow_workers)

    def form_saved(self, event: FormSavedEvent) -> None:
        try:
            future = self._executor.submit(self.handler, event)
        except RuntimeError as e:
            # Executor already shut down.
            logger.warning(
                "Workflow trigger unavailable",
                extra={"form_instance_id": event.form_instance_id, "error_message": str(e)},
            )
            record_degraded("workflow_trigger")
            return
        future.add_done_callback(lambda done: self._log_failure(done, event))

    @staticmethod
    def _log_failure(future: Future, event: FormSavedEvent) -> None:
        error = future.exception()
        if error is None:
            return
        logger.error(
            "Workflow trigger failed",
            extra={
                "form_id": event.form_id,
                "form_instance_id": event.form_instance_id,
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
        )
        record_degraded("workflow_trigger")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
