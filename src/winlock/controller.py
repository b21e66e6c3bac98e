"""Session state machine: alternate backend turns and tool turns until terminal."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import TypeAlias

from loguru import logger

from winlock.backends import Backend, BackendResponse
from winlock.context import (
    ContextAssembler,
    ContextBundle,
    ContextSource,
    RuleSnippet,
    TruncationPolicy,
    collect_rule_snippets,
)
from winlock.dispatcher import ToolDispatcher
from winlock.errors import (
    BackendError,
    CancellationError,
    ConfigError,
    MaxStepsError,
    UnresolvedToolCallsError,
    WinlockError,
)
from winlock.logging_utils import session_scope
from winlock.session import Session
from winlock.transcript import BackendTurn, TerminalTurn, ToolCall, ToolOutcome, ToolResultTurn, Turn
from winlock.types import FinishReason, SessionState

Sleep: TypeAlias = Callable[[float], Awaitable[None]]


class SessionController:
    """Drives one session to ``completed``, ``failed`` or ``cancelled``.

    The controller is the transcript's only writer. Each backend request is
    built from a fresh snapshot; every call of a backend turn gets an outcome
    before the next backend request is made. Cancellation is observed at every
    suspension point.
    """

    def __init__(
        self,
        backend: Backend,
        dispatcher: ToolDispatcher,
        *,
        sources: Iterable[ContextSource] = (),
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._dispatcher = dispatcher
        self._sources = list(sources)
        self._sleep = sleep

    def cancel(self, session: Session) -> None:
        """Request cancellation; safe to call repeatedly and from any thread."""
        if session.token.cancel():
            logger.info("session.cancel.requested session={}", session.id)

    async def start(self, session: Session) -> AsyncIterator[Turn]:
        """Run the session, yielding each turn as it is appended."""
        if session.state is not SessionState.IDLE:
            raise ConfigError(f"session {session.id} was already started")
        terminal = session.transcript.terminal_state()
        if terminal is not None:
            raise ConfigError(f"session {session.id} already ended as {terminal.value}")
        if not len(session.transcript):
            raise ConfigError(f"session {session.id} has no prompt")

        # The session id is only in scope while a step runs, never across a yield.
        steps = self._run(session)
        try:
            while True:
                with session_scope(session.id):
                    try:
                        turn = await anext(steps)
                    except StopAsyncIteration:
                        return
                yield turn
        finally:
            with session_scope(session.id):
                await steps.aclose()

    async def _run(self, session: Session) -> AsyncIterator[Turn]:
        logger.info("session.start id={} turns={}", session.id, len(session.transcript))
        terminal: TerminalTurn
        try:
            rules = collect_rule_snippets(self._sources)
            pending = session.transcript.unresolved_calls()
            if pending:
                logger.info("session.resume dispatching={}", len(pending))
                yield await self._tool_turn(session, pending)
            elif _answered(session.transcript.last()):
                logger.info("session.resume backend_already_answered=true")

            while not _answered(session.transcript.last()):
                steps = session.transcript.counts()["backend"]
                if steps >= session.config.max_steps:
                    raise MaxStepsError(f"reached max_steps={session.config.max_steps}")
                yield await self._backend_turn(session, rules)
                # Dispatch the stored calls, not the yielded copy.
                calls = session.transcript.unresolved_calls()
                if calls:
                    yield await self._tool_turn(session, calls)
            terminal = TerminalTurn(state=SessionState.COMPLETED)
        except CancellationError as exc:
            terminal = TerminalTurn(state=SessionState.CANCELLED, error_kind=exc.kind, message=str(exc))
        except WinlockError as exc:
            logger.warning("session.failed kind={} error={}", exc.kind, exc)
            terminal = TerminalTurn(state=SessionState.FAILED, error_kind=exc.kind, message=str(exc))
        except Exception as exc:
            logger.exception("session.failed.unexpected")
            message = f"{type(exc).__name__}: {exc!s}"
            terminal = TerminalTurn(state=SessionState.FAILED, error_kind="internal", message=message)

        self._set_state(session, terminal.state)
        yield self._append(session, terminal)
        logger.info("session.end state={} counts={}", terminal.state.value, session.transcript.counts())

    async def _backend_turn(self, session: Session, rules: tuple[RuleSnippet, ...]) -> BackendTurn:
        session.token.raise_if_cancelled()
        config = session.config
        policy = TruncationPolicy(budget_chars=config.budget_chars, preview_chars=config.preview_chars)
        assembler = ContextAssembler(policy)
        bundle = assembler.assemble(session.transcript.snapshot(), rules, tools=self._dispatcher.catalog())
        self._set_state(session, SessionState.AWAITING_BACKEND)
        response = await self._request(session, bundle)
        turn = BackendTurn(content=response.content, tool_calls=response.tool_calls, finish=response.finish)
        return self._append(session, turn)

    async def _request(self, session: Session, bundle: ContextBundle) -> BackendResponse:
        config = session.config
        backoff = config.backend_retry.backoff()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await session.token.guard(self._send(bundle, config.backend_timeout))
                _validate(response)
            except BackendError as exc:
                if not exc.transient or attempt > backoff.max_attempts:
                    raise
                delay = backoff.delay(attempt)
                logger.warning("backend.retry attempt={} delay={:.2f}s error={}", attempt, delay, exc)
                await session.token.guard(self._sleep(delay))
                continue
            logger.info(
                "backend.response attempt={} calls={} finish={}",
                attempt,
                len(response.tool_calls),
                response.finish.value,
            )
            return response

    async def _send(self, bundle: ContextBundle, timeout: float) -> BackendResponse:
        try:
            async with asyncio.timeout(timeout):
                return await self._backend.send(bundle)
        except TimeoutError as exc:
            raise BackendError.retryable(f"backend timed out after {timeout}s") from exc

    async def _tool_turn(self, session: Session, calls: tuple[ToolCall, ...]) -> ToolResultTurn:
        self._set_state(session, SessionState.AWAITING_TOOLS)
        outcomes = await self._dispatcher.dispatch(calls, session.config.tool_timeout, cancel=session.token)
        _check_outcomes(calls, outcomes)
        return self._append(session, ToolResultTurn(outcomes=tuple(outcomes)))

    def _append(self, session: Session, turn: Turn) -> Turn:
        return session.transcript.append(turn)

    def _set_state(self, session: Session, state: SessionState) -> None:
        if session.state is state:
            return
        logger.info("session.state {} -> {}", session.state.value, state.value)
        session.state = state


def _answered(turn: Turn | None) -> bool:
    """A backend turn without tool calls is the final answer."""
    return isinstance(turn, BackendTurn) and not turn.tool_calls


def _validate(response: BackendResponse) -> None:
    if response.finish is FinishReason.NEEDS_TOOLS and not response.tool_calls:
        raise BackendError.fatal("backend asked for tools without any tool call")
    seen: set[str] = set()
    for call in response.tool_calls:
        if not call.id:
            raise BackendError.fatal(f"tool call {call.name!r} has no id")
        if call.id in seen:
            raise BackendError.fatal(f"duplicate tool call id {call.id!r}")
        seen.add(call.id)


def _check_outcomes(calls: tuple[ToolCall, ...], outcomes: list[ToolOutcome]) -> None:
    expected = [call.id for call in calls]
    actual = [outcome.call_id for outcome in outcomes]
    if expected != actual:
        raise UnresolvedToolCallsError(f"expected outcomes for {expected}, got {actual}")
