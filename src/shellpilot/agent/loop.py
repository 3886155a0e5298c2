"""Bounded tool-calling agent loop driving one terminal session."""

from __future__ import annotations

import asyncio
import logging as py_logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from enum import Enum

from shellpilot.agent.actions import (
    HistoryEntry,
    Part,
    RunCommand,
    SendKeys,
    TaskComplete,
    TextReply,
    function_call_entry,
    function_response_entry,
    parse_model_parts,
    user_entry,
)
from shellpilot.agent.control import RunControl
from shellpilot.agent.executor import CommandExecutor
from shellpilot.config import DEFAULT_MODEL
from shellpilot.errors import ExitCode, ShellPilotError
from shellpilot.terminal.capture import CaptureMode, CaptureResult, CaptureStatus

logger = py_logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20
WAITING_FOR_INPUT_TEXT = (
    "Command may be waiting for input. Check the terminal and resolve it, then try again."
)

ModelCall = Callable[[str, list[HistoryEntry]], Awaitable[list[Part]]]


class StepType(str, Enum):
    COMMAND = "command"
    SEND_KEYS = "send_keys"
    COMPLETE = "complete"
    ABORTED = "aborted"
    ERROR = "error"


class StepStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    TIMEOUT = "timeout"


class RunOutcome(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TEXT_ANSWER = "text_answer"
    ABORTED = "aborted"
    ERROR = "error"
    ITERATION_CAP = "iteration_cap"


@dataclass
class AgentStep:
    type: StepType
    status: StepStatus
    command: str | None = None
    keys: str | None = None
    reasoning: str | None = None
    summary: str | None = None
    text: str | None = None
    output: str | None = None
    index: int = -1

    def to_dict(self) -> dict[str, object]:
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in asdict(self).items()
            if value is not None
        }


@dataclass(frozen=True)
class ChatMessage:
    type: str
    text: str


@dataclass
class AgentRunState:
    running: bool = False
    paused: bool = False
    stop_requested: bool = False
    iteration_count: int = 0
    last_prompt: str | None = None
    outcome: RunOutcome = RunOutcome.IDLE

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


StepListener = Callable[[AgentStep], None]
MessageListener = Callable[[ChatMessage], None]
StateListener = Callable[[AgentRunState], None]


class _RunAborted(Exception):
    """The in-flight model call was cancelled by ``stop``."""


class AgentLoop:
    """Runs prompt -> model -> terminal action cycles until the model is done.

    One run is active at a time. ``history`` survives across runs so a
    follow-up prompt keeps the conversation; ``steps`` only holds the current
    run. Exhausting ``max_iterations`` ends the run quietly: no step is added
    and only ``state.outcome`` records ``ITERATION_CAP``.
    """

    def __init__(
        self,
        *,
        model_call: ModelCall,
        executor: CommandExecutor,
        model: str = DEFAULT_MODEL,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_step: StepListener | None = None,
        on_message: MessageListener | None = None,
        on_state: StateListener | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ShellPilotError(
                f"Invalid iteration cap: {max_iterations}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use at least one iteration.",
            )
        self.model = model
        self.max_iterations = max_iterations
        self._model_call = model_call
        self._executor = executor
        self._on_step = on_step
        self._on_message = on_message
        self._on_state = on_state
        self._history: list[HistoryEntry] = []
        self._steps: list[AgentStep] = []
        self._messages: list[ChatMessage] = []
        self._state = AgentRunState()
        self._control = RunControl()
        self._model_task: asyncio.Future[list[Part]] | None = None

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    @property
    def steps(self) -> list[AgentStep]:
        return list(self._steps)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def state(self) -> AgentRunState:
        return replace(self._state)

    async def start(self, prompt: str) -> RunOutcome:
        text = prompt.strip()
        if not text:
            raise ShellPilotError(
                "Agent prompt cannot be empty.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Describe the task for the agent.",
            )
        if self._state.running:
            raise ShellPilotError(
                "An agent run is already active.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Stop the current run or wait for it to finish.",
            )

        self._control = RunControl()
        self._state = AgentRunState(running=True, last_prompt=text, outcome=RunOutcome.RUNNING)
        self._steps = []
        self._history.append(user_entry(text))
        logger.info("agent-event step=start model=%s history=%s", self.model, len(self._history))
        self._notify_state()

        outcome = RunOutcome.ERROR
        try:
            outcome = await self._run()
        finally:
            self._model_task = None
            self._state.running = False
            self._state.paused = False
            self._state.outcome = outcome
            logger.info(
                "agent-event step=finish outcome=%s iterations=%s",
                outcome.value,
                self._state.iteration_count,
            )
            self._notify_state()
        return outcome

    def pause(self) -> bool:
        if not self._state.running or self._state.paused:
            return False
        return self._control.request_pause()

    def resume(self) -> bool:
        return self._control.resume()

    def stop(self) -> None:
        if not self._state.running:
            return
        if self._control.stop():
            self._state.stop_requested = True
            logger.info("agent-event step=stop-requested iteration=%s", self._state.iteration_count)
        task = self._model_task
        if task is not None and not task.done():
            task.cancel()
        self._executor.abort()
        self._notify_state()

    async def retry_last(self) -> RunOutcome | None:
        prompt = self._state.last_prompt
        if not prompt or self._state.running:
            return None
        self._history.clear()
        self._add_message("system", f"retrying: {prompt}")
        return await self.start(prompt)

    def clear(self) -> None:
        if self._state.running:
            raise ShellPilotError(
                "Cannot clear while an agent run is active.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Stop the run first.",
            )
        self._history.clear()
        self._steps.clear()
        self._messages.clear()

    async def _run(self) -> RunOutcome:
        for iteration in range(self.max_iterations):
            self._state.iteration_count = iteration + 1
            if not await self._checkpoint():
                return self._aborted()

            try:
                parts = await self._call_model()
            except _RunAborted:
                return self._aborted()
            except Exception as exc:
                message = exc.message if isinstance(exc, ShellPilotError) else str(exc) or "Agent error"
                logger.warning("agent-event step=model-error message=%s", message)
                self._add_step(AgentStep(type=StepType.ERROR, status=StepStatus.DONE, text=message))
                return RunOutcome.ERROR
            if self._control.stopped:
                return self._aborted()

            turn = parse_model_parts(parts)
            if turn.ignored is not None:
                logger.warning("agent-event step=unrecognized-call name=%s", turn.ignored.name)
            action = turn.action

            if isinstance(action, TextReply):
                self._history.append({"role": "model", "parts": turn.parts})
                self._add_message("model", action.text)
                return RunOutcome.TEXT_ANSWER

            if isinstance(action, TaskComplete):
                self._history.append({"role": "model", "parts": turn.parts})
                self._add_step(
                    AgentStep(type=StepType.COMPLETE, status=StepStatus.DONE, summary=action.summary)
                )
                self._history.append(function_response_entry("task_complete", {"acknowledged": True}))
                return RunOutcome.COMPLETED

            if isinstance(action, RunCommand):
                await self._run_command(action)
            elif isinstance(action, SendKeys):
                await self._send_keys(action)

        if self._control.stopped:
            return self._aborted()
        logger.info("agent-event step=iteration-cap max=%s", self.max_iterations)
        return RunOutcome.ITERATION_CAP

    async def _run_command(self, action: RunCommand) -> None:
        step = self._add_step(
            AgentStep(
                type=StepType.COMMAND,
                status=StepStatus.RUNNING,
                command=action.command,
                reasoning=action.reasoning,
            )
        )
        result = await self._execute(self._executor.run_command(action.command))
        step.output = result.output
        step.status = StepStatus.TIMEOUT if result.timed_out else StepStatus.DONE
        self._notify_step(step)

        if result.timed_out:
            # A hung interactive process needs a human before the agent continues.
            self._add_message("system", WAITING_FOR_INPUT_TEXT)
            if self._control.stop():
                self._state.stop_requested = True
                self._notify_state()

        self._history.append(
            function_call_entry("run_command", {"command": action.command, "reasoning": action.reasoning})
        )
        self._history.append(function_response_entry("run_command", {"output": result.output}))

    async def _send_keys(self, action: SendKeys) -> None:
        step = self._add_step(
            AgentStep(
                type=StepType.SEND_KEYS,
                status=StepStatus.RUNNING,
                keys=action.keys,
                reasoning=action.reasoning,
            )
        )
        result = await self._execute(self._executor.send_keys(action.keys))
        step.output = result.output
        step.status = StepStatus.DONE
        self._notify_step(step)

        self._history.append(function_call_entry("send_keys", {"keys": action.keys, "reasoning": action.reasoning}))
        self._history.append(function_response_entry("send_keys", {"output": result.output}))

    async def _execute(self, capture: Awaitable[CaptureResult]) -> CaptureResult:
        try:
            return await capture
        except ShellPilotError as exc:
            logger.warning("agent-event step=capture-error message=%s", exc.message)
            return CaptureResult(CaptureMode.SENTINEL, CaptureStatus.ERROR, f"Error: {exc.message}")

    async def _call_model(self) -> list[Part]:
        task = asyncio.ensure_future(self._model_call(self.model, list(self._history)))
        self._model_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._control.stopped:
                raise _RunAborted() from None
            raise
        finally:
            self._model_task = None

    async def _checkpoint(self) -> bool:
        if not self._control.pause_requested:
            return await self._control.checkpoint()
        self._state.paused = True
        logger.info("agent-event step=paused iteration=%s", self._state.iteration_count)
        self._notify_state()
        try:
            return await self._control.checkpoint()
        finally:
            self._state.paused = False
            self._notify_state()

    def _aborted(self) -> RunOutcome:
        self._add_step(AgentStep(type=StepType.ABORTED, status=StepStatus.DONE))
        return RunOutcome.ABORTED

    def _add_step(self, step: AgentStep) -> AgentStep:
        step.index = len(self._steps)
        self._steps.append(step)
        self._notify_step(step)
        return step

    def _add_message(self, kind: str, text: str) -> None:
        message = ChatMessage(type=kind, text=text)
        self._messages.append(message)
        if self._on_message:
            self._on_message(message)

    def _notify_step(self, step: AgentStep) -> None:
        if self._on_step:
            self._on_step(step)

    def _notify_state(self) -> None:
        if self._on_state:
            self._on_state(self.state)
