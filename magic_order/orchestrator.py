"""
Phase Orchestrator - drives one analysis run through the completion phases.

    Idle -> Phase1 (extract) -> Phase2 (structure) -> Validate
         -> [Phase3 (repair) -> Validate] -> Done | Failed | Cancelled

Rules:
- Phase 1 output is diagnostic only; phase 2 receives it as analysis text.
- Single-call mode skips phase 1 and sends the raw message to phase 2.
- A validation failure triggers the repair phase exactly once. A second
  failure ends the run with the parse error and every phase response attached.
- Cancellation is checked at every phase boundary. A response that arrives
  after cancellation is never validated.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from magic_order.completion_client import CompletionOptions, CompletionService
from magic_order.config import AnalysisConfig, PhaseParameters
from magic_order.error_handler import (
    AnalysisError,
    ErrorClassification,
    ErrorClassifier,
    MAX_REPAIR_ATTEMPTS,
    SchemaError,
)
from magic_order.models import CatalogSnapshot, MessageAnalysis
from magic_order.progress import PipelineRunState, ProgressController, RunStatus
from magic_order.prompts import build_clients_context, build_products_context, render
from magic_order.response_validator import extract_json_text, validate_response


logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    """Result of one orchestrator run"""
    run_id: str
    status: RunStatus
    results: List[MessageAnalysis] = field(default_factory=list)
    phase1_response: Optional[str] = None
    phase2_response: Optional[str] = None
    phase3_response: Optional[str] = None
    repair_attempts: int = 0
    error: Optional[ErrorClassification] = None
    exception: Optional[AnalysisError] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.DONE


class RunCancelled(Exception):
    """Internal signal: the cancellation token was observed at a phase boundary"""


class PhaseOrchestrator:
    """
    Runs the phase protocol for one message against one catalog snapshot.

    The configuration is fixed at construction, so runs never share mutable
    prompt or model state.
    """

    def __init__(self, completion: CompletionService, config: AnalysisConfig, catalog: CatalogSnapshot):
        self.completion = completion
        self.config = config
        self.catalog = catalog
        self._products_context = build_products_context(catalog)
        self._clients_context = build_clients_context(catalog)

    def run(
        self,
        message: str,
        controller: Optional[ProgressController] = None,
        on_results: Optional[Callable[[List[MessageAnalysis]], bool]] = None,
    ) -> AnalysisOutcome:
        """
        Execute the phases and return the outcome. Never raises taxonomy errors.

        `on_results` receives validated results before the run is marked Done;
        returning False means the run went stale and it ends as Cancelled.
        """
        controller = controller or ProgressController(PipelineRunState())
        state = controller.state
        controller.start()
        repair_attempts = 0

        logger.info(f"[RUN] {state.run_id}: analyzing {len(message)} chars ({self.config.mode})")

        try:
            if self.config.mode == "two_phase":
                self._checkpoint(controller)
                controller.set_stage(RunStatus.PHASE1)
                phase1_prompt = render(
                    self.config.phase1_template,
                    products_context=self._products_context,
                    clients_context=self._clients_context,
                    message_text=message,
                )
                state.phase1_response = self._call("PHASE 1", phase1_prompt, self.config.phase1)

                phase2_prompt = render(
                    self.config.phase2_template,
                    analysis_text=state.phase1_response,
                    products_context=self._products_context,
                    clients_context=self._clients_context,
                )
            else:
                phase2_prompt = render(
                    self.config.single_call_template,
                    products_context=self._products_context,
                    clients_context=self._clients_context,
                    message_text=message,
                )

            self._checkpoint(controller)
            controller.set_stage(RunStatus.PHASE2)
            state.phase2_response = self._call("PHASE 2", phase2_prompt, self.config.phase2)

            self._checkpoint(controller)
            controller.set_stage(RunStatus.VALIDATE)
            try:
                results = validate_response(state.phase2_response)
            except SchemaError as first_error:
                if repair_attempts >= MAX_REPAIR_ATTEMPTS:
                    raise
                repair_attempts += 1
                logger.warning(f"[PHASE 3] Repairing response: {first_error.message}")

                json_text = extract_json_text(state.phase2_response)
                self._checkpoint(controller)
                controller.set_stage(RunStatus.PHASE3)
                phase3_prompt = render(self.config.phase3_template, json_text=json_text)
                state.phase3_response = self._call("PHASE 3", phase3_prompt, self.config.phase3)

                self._checkpoint(controller)
                controller.set_stage(RunStatus.VALIDATE, "Validating repaired response...")
                try:
                    results = validate_response(state.phase3_response)
                except SchemaError as second_error:
                    second_error.attach(first_error=first_error.message)
                    raise

        except RunCancelled:
            controller.mark_cancelled()
            logger.info(f"[RUN] {state.run_id}: cancelled at phase boundary")
            return self._outcome(state, RunStatus.CANCELLED, repair_attempts=repair_attempts)

        except AnalysisError as e:
            if controller.is_cancelled:
                # A failure that lands after cancellation is not reported
                controller.mark_cancelled()
                return self._outcome(state, RunStatus.CANCELLED, repair_attempts=repair_attempts)

            e.attach(
                phase1_response=state.phase1_response,
                phase2_response=state.phase2_response,
                phase3_response=state.phase3_response,
            )
            classification = ErrorClassifier.classify(e)
            controller.fail(classification)
            logger.error(f"[RUN] {state.run_id}: failed: {classification.system_message}")
            return self._outcome(
                state, RunStatus.FAILED, repair_attempts=repair_attempts,
                error=classification, exception=e,
            )

        if controller.is_cancelled:
            controller.mark_cancelled()
            return self._outcome(state, RunStatus.CANCELLED, repair_attempts=repair_attempts)

        if on_results is not None and not on_results(results):
            logger.info(f"[RUN] {state.run_id}: superseded, results discarded")
            controller.mark_cancelled()
            return self._outcome(state, RunStatus.CANCELLED, repair_attempts=repair_attempts)

        controller.complete()
        return self._outcome(state, RunStatus.DONE, results=results, repair_attempts=repair_attempts)

    def _call(self, tag: str, prompt: str, params: PhaseParameters) -> str:
        logger.info(f"[{tag}] Sending prompt to {self.completion.name} ({self.config.model})")
        text = self.completion.complete(prompt, CompletionOptions.from_phase(params))
        logger.debug(f"[{tag}] Response: {text[:500]}")
        return text

    @staticmethod
    def _checkpoint(controller: ProgressController) -> None:
        if controller.is_cancelled:
            raise RunCancelled()

    @staticmethod
    def _outcome(state: PipelineRunState, status: RunStatus, **kwargs) -> AnalysisOutcome:
        return AnalysisOutcome(
            run_id=state.run_id,
            status=status,
            phase1_response=state.phase1_response,
            phase2_response=state.phase2_response,
            phase3_response=state.phase3_response,
            elapsed_seconds=state.elapsed_seconds(),
            **kwargs,
        )
