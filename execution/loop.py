"""
Execution Loop — runs approved action drafts through their executors.

Every `interval_s` seconds:
    approved draft ──CAS──▶ executed / executed_stub ──▶ executor ──▶ Execution row
                                                                 └─▶ action.executed event

The draft leaves `approved` before the executor is invoked (compare-and-set
in the store), so two loops, or a loop that crashes mid-run, can never
execute the same draft twice. The price is that a crash between the
status change and the Execution row leaves a draft marked executed with no
record; that is visible and safe, a double side effect is neither.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from database.store_base import BasePipelineStore
from execution.executors import ExecutionContext, ExecutionResult, ExecutorRegistry
from models.schemas import (
    ActionDraft, ActionExecution, DraftStatus, EventType, ExecutionStatus, utcnow,
)

logger = structlog.get_logger()


class ExecutionLoop:
    """Fixed-interval loop over approved drafts."""

    def __init__(
        self,
        store: BasePipelineStore,
        executors: ExecutorRegistry,
        events: Any = None,
        interval_s: int = 30,
    ):
        self.store = store
        self.executors = executors
        self.events = events
        self.interval_s = interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="execution_loop")
        logger.info("execution_loop_started", interval_s=self.interval_s,
                    executors=self.executors.types())

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("execution_loop_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("execution_loop_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)

    async def run_once(self) -> dict[str, int]:
        """One pass over approved drafts. Returns counts per outcome."""
        stats = {"succeeded": 0, "failed": 0, "stubbed": 0, "skipped": 0}

        for draft in await self.store.list_drafts(status=DraftStatus.APPROVED):
            try:
                outcome = await self._execute_draft(draft)
            except Exception as e:
                logger.error("draft_execution_error", action_draft_id=draft.id,
                             error=str(e), exc_info=True)
                continue
            stats[outcome] += 1

        if any(stats.values()):
            logger.info("execution_pass_complete", **stats)
        return stats

    async def _execute_draft(self, draft: ActionDraft) -> str:
        executor = self.executors.get(draft.type)
        target = DraftStatus.EXECUTED if executor else DraftStatus.EXECUTED_STUB

        if not await self.store.transition_draft(draft.id, DraftStatus.APPROVED, target):
            # Another loop got there first, or a human rejected it meanwhile
            logger.info("draft_no_longer_approved", action_draft_id=draft.id)
            return "skipped"

        if executor is None:
            execution = await self.store.create_execution(ActionExecution(
                action_draft_id=draft.id,
                status=ExecutionStatus.STUBBED,
                result={
                    "message": f"Stub execution of {draft.type}",
                    "executed_at": utcnow().isoformat(),
                },
            ))
            logger.info("action_stub_executed", action_draft_id=draft.id,
                        type=draft.type, brand_id=draft.brand_id)
            await self._emit(draft, execution, {"stubbed": True})
            return "stubbed"

        ctx = ExecutionContext(
            brand_id=draft.brand_id,
            action_draft_id=draft.id,
            type=draft.type,
            payload=draft.payload,
        )
        try:
            result = await executor.execute(ctx)
        except Exception as e:
            logger.error("executor_raised", action_draft_id=draft.id, type=draft.type,
                         error=str(e), exc_info=True)
            result = ExecutionResult(success=False, error=f"Executor error: {type(e).__name__}")

        execution = await self.store.create_execution(ActionExecution(
            action_draft_id=draft.id,
            status=ExecutionStatus.SUCCESS if result.success else ExecutionStatus.FAILED,
            result=result.result if result.success else {},
            error=None if result.success else (result.error or "Execution failed"),
        ))
        logger.info("action_executed", action_draft_id=draft.id, type=draft.type,
                    brand_id=draft.brand_id, success=result.success, error=result.error)
        await self._emit(draft, execution, {"success": result.success})
        return "succeeded" if result.success else "failed"

    async def _emit(self, draft: ActionDraft, execution: ActionExecution,
                    extra: dict[str, Any]) -> None:
        if self.events is None:
            return
        await self.events.emit(
            EventType.ACTION_EXECUTED.value,
            draft.brand_id,
            {
                "action_draft_id": draft.id,
                "execution_id": execution.id,
                "type": draft.type,
                **extra,
            },
            dedupe_key=f"exec:{execution.id}",
            source="execution_loop",
        )
