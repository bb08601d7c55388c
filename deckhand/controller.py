"""
DECKHAND Controller — The Execution Loop

It is NOT smart. It is deterministic.

Each iteration:
  1. ContextWindowManager builds the outgoing request
  2. Router calls the remote endpoint (cancellable)
  3. Extractor pulls ExecutableUnits out of the response
  4. Safety classifies them and adds prerequisites
  5. ToolExecutor runs them inside the captured workspace boundary,
     with the FileOperationVerifier behind every heredoc write
  6. Results go back into the Conversation as the next user turn

The loop ends when a response carries no commands (or the completion
marker), when the iteration cap is hit, or when the run is stopped,
times out, or fails upstream. Whatever happens, the Conversation stays
usable for the next run.
"""

from __future__ import annotations

import threading
from typing import Any

from loguru import logger

from deckhand.cancellation import CancelToken, RunCancelled, StopCause, TimedOut, UserStopped
from deckhand.config_loader import DeckhandConfig
from deckhand.context_window import ContextWindowManager
from deckhand.errors import DeckhandError
from deckhand.event_bus import EventBus
from deckhand.extractor import ExecutableUnit, extract_from_response
from deckhand.governance import BoundaryEnforcer, BoundaryViolation
from deckhand.history import ConversationHistory
from deckhand.prompts import TASK_COMPLETE_MARKER, build_system_prompt
from deckhand.router import BudgetExceededError, Router, UpstreamError
from deckhand.safety import (
    ClassifiedUnit,
    Idle,
    Preserving,
    Recovering,
    ReplayRefused,
    SafetyState,
    begin_unit,
    classify,
    preprocess,
    preservation_done,
    resume,
    unit_done,
)
from deckhand.state import (
    Conversation,
    ConversationTurn,
    ExecutionResult,
    RunOutcome,
    TurnResult,
)
from deckhand.verifier import FileOperationVerifier
from deckhand.workspace import WorkspaceSession
from deckhand.workspace.host import HostBridge, LocalHost
from deckhand.workspace.tools import REFUSED_EXIT_CODE, ToolExecutor

__all__ = ["Controller", "IterationLimitReached", "LoopBusyError", "RunOutcome"]


class IterationLimitReached(DeckhandError):
    code = "ITERATION_LIMIT_REACHED"


class LoopBusyError(DeckhandError):
    code = "LOOP_BUSY"


class Controller:
    def __init__(
        self,
        session: WorkspaceSession,
        config: DeckhandConfig,
        router: Router | None = None,
        host: HostBridge | None = None,
        history: ConversationHistory | None = None,
        bus: EventBus | None = None,
    ):
        self.session = session
        self.config = config
        self.router = router or Router(config)
        self.host = host or LocalHost(max_output_chars=config.limits.max_output_chars)
        self.history = history
        self.bus = bus or EventBus()
        self.window = ContextWindowManager.from_config(config.limits)

        self._gates: dict[str, threading.Lock] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._registry_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._tokens

    def stop(self, conversation_id: str, cause: StopCause = StopCause.USER) -> bool:
        """Cancel the active run of a conversation. Safe to call repeatedly."""
        token = self._tokens.get(conversation_id)
        return token.cancel(cause) if token else False

    def run(
        self,
        conversation: Conversation,
        user_turn: ConversationTurn | str,
        token: CancelToken | None = None,
    ) -> TurnResult:
        """
        Run one user request to completion.

        Raises LoopBusyError if this conversation already has a run in
        flight. Expected failures end the run with a RunOutcome and a
        marked assistant turn; anything else is logged and re-raised.
        """
        gate = self._enter(conversation.id)
        if gate is None:
            raise LoopBusyError(f"Conversation {conversation.id} already has a run in progress")

        token = token or CancelToken()
        self._tokens[conversation.id] = token
        try:
            with self.session.active_run() as enforcer:
                return self._run(conversation, user_turn, token, enforcer)
        finally:
            self._tokens.pop(conversation.id, None)
            self._leave(conversation.id, gate)

    # -----------------------------------------------------------------------
    # Loop
    # -----------------------------------------------------------------------

    def _run(
        self,
        conversation: Conversation,
        user_turn: ConversationTurn | str,
        token: CancelToken,
        enforcer: BoundaryEnforcer,
    ) -> TurnResult:
        if isinstance(user_turn, str):
            user_turn = ConversationTurn(role="user", content=user_turn)

        conversation.begin_run()
        conversation.workspace_path = str(enforcer.root) or None
        conversation.model = self.router.model
        self.router.start_run()
        self._append(conversation, user_turn)

        limits = self.config.limits
        tools = ToolExecutor(
            host=self.host,
            enforcer=enforcer,
            verifier=FileOperationVerifier(self.host),
            command_timeout=limits.command_timeout_seconds,
        )
        system_prompt = build_system_prompt(enforcer.root)
        briefing = self._load_briefing(conversation, tools)
        safety: SafetyState = Idle()
        result = TurnResult()

        logger.info(f"[LOOP] Run started on {conversation.id} (workspace: {enforcer.root or 'none'})")
        self._emit("run_started", {
            "conversation_id": conversation.id,
            "workspace": str(enforcer.root),
            "request": user_turn.content[:200],
        })

        try:
            while True:
                if conversation.iteration >= limits.max_iterations:
                    raise IterationLimitReached(
                        f"Stopped after {limits.max_iterations} iterations without a final answer. "
                        "Send a new message to continue."
                    )
                token.raise_if_cancelled()
                iteration = conversation.next_iteration()

                request = self.window.build(
                    conversation, system_prompt,
                    briefing=None if conversation.briefing_sent else briefing,
                )
                self._emit("request_sent", {
                    "iteration": iteration,
                    "turns": len(request.turn_indices),
                    "estimated_tokens": request.estimated_tokens,
                    "payload_bytes": request.payload_bytes,
                    "briefing": request.briefing_included,
                })

                response = self.router.complete(request.messages, token)
                self._append(conversation, ConversationTurn(
                    role="assistant", content=response.content, cost=response.cost,
                ))

                units = extract_from_response(response.content)
                if not units:
                    logger.info(f"[LOOP] Iteration {iteration}: no commands, run complete")
                    break

                safety = resume(safety)
                batch: list[ExecutionResult] = []
                try:
                    safety, skipped = self._execute_batch(units, token, tools, safety, batch)
                except (RunCancelled, KeyboardInterrupt):
                    result.results.extend(batch)
                    if batch:
                        self._append(conversation, ConversationTurn(
                            role="user", content=self._feedback(iteration, batch, safety, 0, stopped=True),
                        ))
                    raise
                result.results.extend(batch)
                self._append(conversation, ConversationTurn(
                    role="user", content=self._feedback(iteration, batch, safety, skipped),
                ))

                if TASK_COMPLETE_MARKER in response.content:
                    logger.info(f"[LOOP] Iteration {iteration}: completion marker, run complete")
                    break

            result.outcome = RunOutcome.COMPLETED

        except IterationLimitReached as e:
            self._fail(conversation, result, RunOutcome.ITERATION_LIMIT, e)
        except UserStopped as e:
            self._fail(conversation, result, RunOutcome.STOPPED_BY_USER, e)
        except TimedOut as e:
            self._fail(conversation, result, RunOutcome.TIMED_OUT, e)
        except BudgetExceededError as e:
            self._fail(conversation, result, RunOutcome.BUDGET_EXCEEDED, e)
        except UpstreamError as e:
            self._fail(conversation, result, RunOutcome.UPSTREAM_ERROR, e)
        except KeyboardInterrupt:
            token.cancel(StopCause.USER)
            self.host.kill_all()
            self._fail(conversation, result, RunOutcome.STOPPED_BY_USER, UserStopped())
        except Exception:
            logger.exception("[LOOP] Unexpected failure")
            self.host.kill_all()
            self._emit("run_finished", {"outcome": "error", "iterations": conversation.iteration})
            raise

        result.iterations = conversation.iteration
        logger.info(
            f"[LOOP] Run finished: {result.outcome.value} ({result.verdict.value}) "
            f"after {result.iterations} iteration(s)"
        )
        self._emit("run_finished", {
            "outcome": result.outcome.value,
            "verdict": result.verdict.value,
            "iterations": result.iterations,
            "budget": self.router.budget.summary(),
        })
        return result

    def _execute_batch(
        self,
        units: list[ExecutableUnit],
        token: CancelToken,
        tools: ToolExecutor,
        safety: SafetyState,
        results: list[ExecutionResult],
    ) -> tuple[SafetyState, int]:
        """
        Run one response's units in order, appending to `results` as each
        finishes. Stops early on refusal or recovery.
        """
        classified = preprocess(
            units,
            auto_stash=self.config.safety.auto_stash,
            stash_message=self.config.safety.stash_message,
        )

        for position, unit in enumerate(classified):
            token.raise_if_cancelled()
            try:
                safety = begin_unit(safety, unit)
            except ReplayRefused as e:
                refused = ExecutionResult(
                    unit=unit.unit, exit_code=REFUSED_EXIT_CODE, output=e.to_marked_text(),
                    tag=unit.tag.value, kind="refused",
                )
                results.append(refused)
                self._emit("unit_refused", {"unit": unit.text[:200], "code": e.code})
                return safety, len(classified) - position - 1

            if isinstance(safety, Preserving):
                safety = preservation_done(safety, self._run_prerequisites(unit, token, tools, results))
                if isinstance(safety, Recovering):
                    return safety, len(classified) - position

            outcome = self._execute(tools, unit.unit, token, unit.tag.value, prerequisite=False)
            results.append(outcome)
            safety = unit_done(safety, outcome.ok)
            if isinstance(safety, Recovering):
                return safety, len(classified) - position - 1

        return safety, 0

    def _run_prerequisites(
        self,
        unit: ClassifiedUnit,
        token: CancelToken,
        tools: ToolExecutor,
        results: list[ExecutionResult],
    ) -> bool:
        blocking = unit.preservation_steps
        for step in unit.prerequisites:
            outcome = self._execute(tools, step, token, classify(step).value, prerequisite=True)
            results.append(outcome)
            if not outcome.ok and step in blocking:
                logger.warning(f"[SAFETY] Preservation step failed: {step.text}")
                return False
        return True

    def _execute(
        self,
        tools: ToolExecutor,
        unit: ExecutableUnit,
        token: CancelToken,
        tag: str,
        prerequisite: bool,
    ) -> ExecutionResult:
        outcome = tools.execute(unit, token, tag=tag, prerequisite=prerequisite)
        if outcome.kind == "refused":
            self._emit("unit_refused", {"unit": unit.text[:200], "output": outcome.output[:200]})
        else:
            self._emit("unit_executed", {
                "unit": unit.opener[:200],
                "tag": tag,
                "exit_code": outcome.exit_code,
                "elapsed": round(outcome.elapsed, 3),
                "prerequisite": prerequisite,
            })
        if outcome.kind == "write" and outcome.ok:
            self._emit("write_verified", {"unit": unit.opener[:200], "detail": outcome.output[-200:]})
        return outcome

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _feedback(
        self,
        iteration: int,
        batch: list[ExecutionResult],
        safety: SafetyState,
        skipped: int,
        stopped: bool = False,
    ) -> str:
        sections = [f"Command results (iteration {iteration}):"]
        sections.extend(r.render() for r in batch)

        if any(r.prerequisite and "stash push" in r.unit.text and r.ok for r in batch):
            sections.append(
                f"Local changes were stashed as '{self.config.safety.stash_message}'. "
                "Run `git stash pop` when you need them back."
            )
        if isinstance(safety, Recovering):
            sections.append(
                f"The git command `{safety.unit.text}` did not complete ({safety.reason}). "
                "It will not be run again unchanged. Run `git status`, explain what happened, "
                "and propose a revised command."
            )
        elif batch and batch[-1].kind == "refused" and "REPLAY_REFUSED" in batch[-1].output:
            sections.append("That command already failed in this run. Propose a different approach.")
        if skipped:
            sections.append(f"{skipped} remaining command(s) from your last message were not run.")

        if stopped:
            sections.append("The run was stopped here; later commands from your last message were not run.")
        else:
            sections.append(f"Continue with the task, or reply with {TASK_COMPLETE_MARKER} when it is done.")
        return "\n\n".join(sections)

    def _load_briefing(self, conversation: Conversation, tools: ToolExecutor) -> str | None:
        briefing = self.config.briefing
        if not briefing.enabled or conversation.briefing_sent:
            return None
        try:
            if not tools.exists(briefing.path):
                return None
            text = tools.read_file(briefing.path)
        except BoundaryViolation:
            return None
        except OSError as e:
            logger.warning(f"[CONTEXT] Could not read briefing {briefing.path}: {e}")
            return None
        return text if text.strip() else None

    def _fail(
        self,
        conversation: Conversation,
        result: TurnResult,
        outcome: RunOutcome,
        error: DeckhandError,
    ) -> None:
        logger.warning(f"[LOOP] {error.to_marked_text()}")
        result.outcome = outcome
        result.message = error.to_marked_text()
        self._append(conversation, ConversationTurn(
            role="assistant", content=error.to_marked_text(), is_error=True,
        ))

    def _append(self, conversation: Conversation, turn: ConversationTurn) -> None:
        conversation.append(turn)
        if self.history:
            self.history.record_turn(conversation, turn)

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.bus.emit(event_type, source="controller", payload=payload)

    def _enter(self, conversation_id: str) -> threading.Lock | None:
        with self._registry_lock:
            gate = self._gates.setdefault(conversation_id, threading.Lock())
            return gate if gate.acquire(blocking=False) else None

    def _leave(self, conversation_id: str, gate: threading.Lock) -> None:
        # Popped under the registry lock, so _enter never acquires an orphaned gate.
        with self._registry_lock:
            self._gates.pop(conversation_id, None)
            gate.release()
