"""
Task Manager：task 注册表 + 每个 task 一个 Agent Loop + 事件订阅。

职责：
- `submit`：分配 session → 构造 AgentConfiguration → 创建 task 记录（submitted）→ 后台启动 Agent Loop；
- `get/list`：返回快照（深拷贝，不阻塞）；
- `cancel`：向 Agent Loop 发出取消信号（在下一个挂起点生效），并把其 pending approval 处理为 cancelled；
- 事件：每次消息追加与状态迁移都会产生一个 `TaskEvent`（task 内 sequence 单调递增），
  通过 `subscribe/stream_events`（队列）与 `add_listener`（同步回调）对外可见。

并发模型：
- task 记录的修改与快照都在 `threading.Lock` 下进行，快照可以从任意线程读取；
- Agent Loop 运行在 submit 所在的事件循环上；订阅队列通过 `call_soon_threadsafe` 投递。
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from tasks_runtime.core.agent_config import AgentConfiguration
from tasks_runtime.core.agent_loop import AgentLoop
from tasks_runtime.core.contracts import Message, MessageRole, Task, TaskEvent, TaskPriority, TaskState, can_transition
from tasks_runtime.core.errors import InvalidTransitionError, NotFoundError, SessionCreationError, UserError
from tasks_runtime.core.utils import new_id, now_rfc3339
from tasks_runtime.safety.approval_manager import ApprovalManager
from tasks_runtime.safety.policy import ApprovalTrustTracker
from tasks_runtime.sessions import SessionHandle, SessionProvider

logger = logging.getLogger(__name__)

TaskEventListener = Callable[[TaskEvent], None]


class AgentConfigurationFactory(Protocol):
    """按 prompt 构造 AgentConfiguration 的策略接口（由 Task Router 选择）。"""

    def build(self, prompt: str) -> AgentConfiguration:
        """为一个新 task 构造配置。"""

        ...


class _AdmissionGate:
    """
    并发准入（仅在配置了 max_concurrent_tasks 时启用）。

    说明：
    - 排队按优先级（high > normal > low），同优先级按提交顺序；
    - 只在事件循环线程中使用，不需要额外加锁。
    """

    def __init__(self, limit: int) -> None:
        """参数：limit：同时运行的 Agent Loop 上限。"""

        self._limit = int(limit)
        self._active = 0
        self._waiters: List[tuple[int, int, "asyncio.Future[None]"]] = []
        self._counter = itertools.count()

    @property
    def queued(self) -> int:
        """仍在排队的数量（不含已取消的等待者）。"""

        return sum(1 for _, _, f in self._waiters if not f.done())

    async def acquire(self, priority: TaskPriority) -> None:
        """等待一个运行名额。"""

        if self._active < self._limit and not any(not f.done() for _, _, f in self._waiters):
            self._active += 1
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (-priority.rank, next(self._counter), fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # 名额已分配但等待者被取消：归还
                self.release()
            raise

    def release(self) -> None:
        """归还名额并唤醒下一个等待者。"""

        self._active -= 1
        while self._waiters:
            _, _, fut = heapq.heappop(self._waiters)
            if fut.done():
                continue
            self._active += 1
            fut.set_result(None)
            return


class TaskSubscription:
    """
    一个事件订阅（异步迭代器）。

    说明：
    - `task_id=None` 表示订阅全部 task；
    - `close()` 之后迭代结束；重复 close 无副作用。
    """

    def __init__(self, manager: "TaskManager", *, task_id: Optional[str], loop: asyncio.AbstractEventLoop) -> None:
        """由 `TaskManager.subscribe` 创建，不直接构造。"""

        self._manager = manager
        self.task_id = task_id
        self._loop = loop
        self._queue: asyncio.Queue[Optional[TaskEvent]] = asyncio.Queue()
        self._closed = False

    def matches(self, event: TaskEvent) -> bool:
        """判断事件是否属于本订阅。"""

        return self.task_id is None or event.task_id == self.task_id

    def _push(self, item: Optional[TaskEvent]) -> None:
        """线程安全地投递事件（None 为结束标记）。"""

        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug("subscription loop closed; dropping event")

    async def get(self) -> Optional[TaskEvent]:
        """等待下一个事件；订阅关闭后返回 None。"""

        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """取消订阅。"""

        if self._closed:
            return
        self._closed = True
        self._manager._unsubscribe(self)
        self._push(None)

    def __aiter__(self) -> "TaskSubscription":
        """返回自身。"""

        return self

    async def __anext__(self) -> TaskEvent:
        """迭代下一个事件。"""

        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


@dataclass
class _TaskRecord:
    """
    task 内部记录。

    字段：
    - task：可变的 Task 对象（只在 TaskManager 锁内修改）
    - config/session：本 task 的 AgentConfiguration 与独占工作区
    - loop/cancel_event：Agent Loop 所在事件循环与取消信号
    - runner_task：后台 asyncio.Task
    - events：事件历史（state_transition_history 开启时保留）
    - sequence：最后一个事件的序号
    - done：Agent Loop 结束后置位
    """

    task: Task
    config: AgentConfiguration
    session: SessionHandle
    loop: asyncio.AbstractEventLoop
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner_task: Optional["asyncio.Task[None]"] = None
    events: List[TaskEvent] = field(default_factory=list)
    sequence: int = 0
    done: asyncio.Event = field(default_factory=asyncio.Event)


class _TaskRecorder:
    """`TaskRecorder` 的实现：把 Agent Loop 的回写转发给 TaskManager。"""

    def __init__(self, manager: "TaskManager", record: _TaskRecord) -> None:
        """绑定 manager 与 task 记录。"""

        self._manager = manager
        self._record = record

    def append_message(self, message: Message) -> None:
        """追加消息。"""

        self._manager._append_message(self._record, message)

    def transition(
        self,
        state: TaskState,
        *,
        pending_approval_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        """状态迁移。"""

        self._manager._transition(
            self._record,
            state,
            pending_approval_id=pending_approval_id,
            error=error,
            detail=detail,
        )

    def record_iteration(self, iterations: int) -> None:
        """记录迭代次数。"""

        with self._manager._lock:
            self._record.task.iterations = int(iterations)


class TaskManager:
    """Task 生命周期管理（显式构造，依赖注入；无全局状态）。"""

    def __init__(
        self,
        *,
        session_provider: SessionProvider,
        approvals: ApprovalManager,
        trust: Optional[ApprovalTrustTracker] = None,
        max_concurrent_tasks: Optional[int] = None,
        keep_history: bool = True,
        tool_timeout_ms: int = 60_000,
        max_file_bytes: int = 256 * 1024,
    ) -> None:
        """
        参数：
        - session_provider：工作区分配器
        - approvals：共享 Approval Manager
        - trust：可选；部署级信任计数器（审批策略 trust_after_count 使用）
        - max_concurrent_tasks：可选；同时运行的 Agent Loop 上限（None = 不限制）
        - keep_history：是否保留每个 task 的事件历史（新订阅者可回放）
        - tool_timeout_ms/max_file_bytes：工具执行上下文默认值
        """

        self._session_provider = session_provider
        self._approvals = approvals
        self._trust = trust
        self._gate = _AdmissionGate(max_concurrent_tasks) if max_concurrent_tasks else None
        self._keep_history = bool(keep_history)
        self._tool_timeout_ms = int(tool_timeout_ms)
        self._max_file_bytes = int(max_file_bytes)

        self._lock = threading.Lock()
        self._records: Dict[str, _TaskRecord] = {}
        self._subscriptions: List[TaskSubscription] = []
        self._listeners: List[TaskEventListener] = []
        self._closed = False

    @property
    def approvals(self) -> ApprovalManager:
        """共享的 Approval Manager。"""

        return self._approvals

    @property
    def keep_history(self) -> bool:
        """是否保留事件历史。"""

        return self._keep_history

    async def submit(
        self,
        prompt: str,
        runner: str,
        priority: TaskPriority = TaskPriority.NORMAL,
        *,
        factory: AgentConfigurationFactory,
    ) -> Task:
        """
        提交一个 task 并立即返回（submitted 快照）。

        参数：
        - prompt：用户输入
        - runner：runner 名（记录到 Task.runner）
        - priority：准入优先级
        - factory：构造本 task AgentConfiguration 的策略

        异常：
        - ValueError：prompt 为空
        - UserError：manager 已关闭
        - SessionCreationError：无法分配工作区（task 不会被创建）
        """

        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")
        if self._closed:
            raise UserError("task manager is closed", code="CLOSED")

        config = factory.build(prompt)

        try:
            session = await asyncio.to_thread(self._session_provider.create)
        except SessionCreationError:
            logger.warning("session creation failed; task not submitted", exc_info=True)
            raise
        except Exception as e:
            raise SessionCreationError(f"session provider failed: {e}") from e

        loop = asyncio.get_running_loop()
        task = Task(
            id=new_id("task"),
            prompt=prompt,
            session_id=session.id,
            runner=runner,
            priority=TaskPriority(priority),
            agent_name=config.name,
        )
        record = _TaskRecord(task=task, config=config, session=session, loop=loop)

        with self._lock:
            self._records[task.id] = record
            events = [self._record_event(record, "stateChange", {"state": TaskState.SUBMITTED.value, "previous": None})]
            message = Message(role=MessageRole.USER, content=prompt)
            task.messages.append(message)
            events.append(self._record_event(record, "message", {"message": message.to_wire()}))
            snapshot = task.snapshot()
        for ev in events:
            self._notify_listeners(ev)

        record.runner_task = loop.create_task(self._run(record), name=f"agent-loop:{task.id}")
        logger.info("task %s submitted (runner=%s, agent=%s, session=%s)", task.id, runner, config.name, session.id)
        return snapshot

    def get(self, task_id: str) -> Optional[Task]:
        """返回 task 快照；不存在返回 None。"""

        with self._lock:
            record = self._records.get(task_id)
            return record.task.snapshot() if record is not None else None

    def require(self, task_id: str) -> Task:
        """返回 task 快照；不存在抛 `NotFoundError`。"""

        task = self.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def list(self, *, state: Optional[TaskState] = None) -> List[Task]:
        """按提交顺序返回 task 快照（可按状态过滤）。"""

        with self._lock:
            return [r.task.snapshot() for r in self._records.values() if state is None or r.task.state is state]

    def cancel(self, task_id: str) -> bool:
        """
        取消 task。

        返回：
        - True：已发出取消信号
        - False：task 已处于终态（no-op）

        异常：
        - NotFoundError：未知 task
        """

        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                raise NotFoundError("task", task_id)
            if record.task.state.is_terminal:
                return False

        self._signal(record, record.cancel_event.set)
        cancelled = self._approvals.cancel_for_task(task_id)
        logger.info("task %s cancel requested (pending approvals cancelled: %d)", task_id, cancelled)
        return True

    def subscribe(self, task_id: Optional[str] = None) -> TaskSubscription:
        """
        订阅 task 事件（必须在事件循环中调用）。

        参数：
        - task_id：只订阅某个 task；None 表示全部

        异常：
        - NotFoundError：指定的 task 不存在
        """

        loop = asyncio.get_running_loop()
        with self._lock:
            if task_id is not None and task_id not in self._records:
                raise NotFoundError("task", task_id)
            sub = TaskSubscription(self, task_id=task_id, loop=loop)
            self._subscriptions.append(sub)
        return sub

    def stream_events(self, task_id: str, *, include_history: Optional[bool] = None) -> AsyncIterator[TaskEvent]:
        """
        返回某个 task 的有限事件流（到终态事件为止）。

        规则：
        - 保留历史时从第一个事件开始回放；否则先发送一个当前快照的 stateChange 事件；
        - 快照与订阅在首次迭代时于同一把锁内完成，不会遗漏或重复事件；
        - 未被迭代的流不会注册订阅；
        - task 已在终态时流只包含历史/快照。

        异常：
        - NotFoundError：未知 task（在调用时同步抛出，而不是在迭代时）
        """

        with self._lock:
            if task_id not in self._records:
                raise NotFoundError("task", task_id)
        replay = self._keep_history if include_history is None else bool(include_history)
        return self._iter_stream(task_id, replay=replay and self._keep_history)

    def _open_stream(self, task_id: str, *, replay: bool) -> Tuple[List[TaskEvent], Optional[TaskSubscription]]:
        """在锁内取初始事件（历史或快照），task 未终结时同时注册订阅。"""

        loop = asyncio.get_running_loop()
        with self._lock:
            record = self._records[task_id]
            task = record.task
            if replay:
                initial = list(record.events)
            else:
                initial = [
                    TaskEvent(
                        type="stateChange",
                        task_id=task_id,
                        sequence=record.sequence,
                        payload={"state": task.state.value, "previous": None, "snapshot": task.to_wire()},
                        final=task.state.is_terminal,
                    )
                ]
            sub: Optional[TaskSubscription] = None
            if not task.state.is_terminal:
                sub = TaskSubscription(self, task_id=task_id, loop=loop)
                self._subscriptions.append(sub)
        return initial, sub

    async def _iter_stream(self, task_id: str, *, replay: bool) -> AsyncIterator[TaskEvent]:
        """先产出初始事件，再产出订阅中的实时事件，遇到 final 事件结束。"""

        initial, sub = self._open_stream(task_id, replay=replay)
        try:
            for ev in initial:
                yield ev
                if ev.final:
                    return
            if sub is None:
                return
            async for ev in sub:
                yield ev
                if ev.final:
                    return
        finally:
            if sub is not None:
                sub.close()

    def add_listener(self, listener: TaskEventListener) -> Callable[[], None]:
        """
        注册同步事件回调（例如日志投递）；返回取消注册函数。

        约束：
        - 回调异常 fail-open（记录日志，不影响 task 执行）；
        - 回调在产生事件的线程中同步调用，必须足够快。
        """

        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            """取消注册。"""

            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    async def wait_for_terminal(self, task_id: str, *, timeout: Optional[float] = None) -> Task:
        """
        等待 task 的 Agent Loop 结束并返回终态快照。

        异常：
        - NotFoundError：未知 task
        - asyncio.TimeoutError：超时
        """

        with self._lock:
            record = self._records.get(task_id)
        if record is None:
            raise NotFoundError("task", task_id)
        await asyncio.wait_for(record.done.wait(), timeout)
        return self.require(task_id)

    async def aclose(self) -> None:
        """关闭：拒绝新提交，取消所有运行中的 Agent Loop（进入 cancelled），结束全部订阅。"""

        self._closed = True
        with self._lock:
            running = [r.runner_task for r in self._records.values() if r.runner_task is not None and not r.runner_task.done()]
        for t in running:
            t.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            logger.info("task manager closed; %d running tasks cancelled", len(running))

        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.close()

    async def _run(self, record: _TaskRecord) -> None:
        """后台执行：准入 → Agent Loop → 归还名额。"""

        admitted = False
        try:
            admitted = await self._admit(record)
            if not admitted:
                self._finish_unstarted(record, "cancelled while queued")
                return
            agent = AgentLoop(
                task_id=record.task.id,
                config=record.config,
                session=record.session,
                approvals=self._approvals,
                recorder=_TaskRecorder(self, record),
                history=list(record.task.messages),
                cancel_event=record.cancel_event,
                trust=self._trust,
                tool_timeout_ms=self._tool_timeout_ms,
                max_file_bytes=self._max_file_bytes,
            )
            await agent.run()
        except asyncio.CancelledError:
            if not admitted:
                self._finish_unstarted(record, "runtime shutting down")
            raise
        finally:
            if admitted and self._gate is not None:
                self._gate.release()
            record.done.set()

    async def _admit(self, record: _TaskRecord) -> bool:
        """等待准入名额（与取消信号竞争）；排队期间被取消返回 False。"""

        if self._gate is None:
            return True
        acquire = asyncio.ensure_future(self._gate.acquire(record.task.priority))
        cancel_wait = asyncio.ensure_future(record.cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not acquire.done():
                acquire.cancel()
        return acquire.done() and not acquire.cancelled() and acquire.exception() is None

    def _finish_unstarted(self, record: _TaskRecord, reason: str) -> None:
        """Agent Loop 未启动即被取消：直接写入 cancelled。"""

        with self._lock:
            if record.task.state.is_terminal:
                return
        self._append_message(
            record,
            Message(role=MessageRole.ASSISTANT, content=f"Task cancelled: {reason}", metadata={"kind": "cancelled"}),
        )
        self._transition(record, TaskState.CANCELLED)
        logger.info("task %s cancelled before start: %s", record.task.id, reason)

    def _signal(self, record: _TaskRecord, fn: Callable[[], None]) -> None:
        """在 record 所在事件循环中执行 fn（跨线程时使用 call_soon_threadsafe）。"""

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is record.loop:
            fn()
            return
        try:
            record.loop.call_soon_threadsafe(fn)
        except RuntimeError:
            logger.debug("event loop of task %s is closed; signal dropped", record.task.id)

    def _append_message(self, record: _TaskRecord, message: Message) -> None:
        """追加消息并发布 message 事件。"""

        with self._lock:
            record.task.messages.append(message)
            record.task.updated_at = message.timestamp
            event = self._record_event(record, "message", {"message": message.to_wire()})
        self._notify_listeners(event)

    def _transition(
        self,
        record: _TaskRecord,
        state: TaskState,
        *,
        pending_approval_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        状态迁移并发布 stateChange 事件。

        异常：
        - InvalidTransitionError：迁移不合法（例如离开终态）
        """

        with self._lock:
            task = record.task
            previous = task.state
            if not can_transition(previous, state):
                raise InvalidTransitionError(task_id=task.id, src=previous.value, dst=state.value)
            now = now_rfc3339()
            task.state = state
            task.updated_at = now
            task.pending_approval_id = pending_approval_id
            if error is not None:
                task.error = dict(error)
            if state.is_terminal:
                task.completed_at = now

            payload: Dict[str, Any] = {"state": state.value, "previous": previous.value}
            if detail:
                payload.update(detail)
            if error is not None:
                payload["error"] = dict(error)
            event = self._record_event(record, "stateChange", payload, final=state.is_terminal)

        self._notify_listeners(event)
        logger.debug("task %s: %s -> %s", task.id, previous.value, state.value)

    def _record_event(self, record: _TaskRecord, kind: str, payload: Dict[str, Any], *, final: bool = False) -> TaskEvent:
        """生成下一个事件并投递给订阅者（调用方必须持有锁）。"""

        record.sequence += 1
        event = TaskEvent(type=kind, task_id=record.task.id, sequence=record.sequence, payload=payload, final=final)
        if self._keep_history:
            record.events.append(event)
        for sub in self._subscriptions:
            if sub.matches(event):
                sub._push(event)
        return event

    def _unsubscribe(self, sub: TaskSubscription) -> None:
        """移除订阅（TaskSubscription.close 调用）。"""

        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _notify_listeners(self, event: TaskEvent) -> None:
        """调用同步回调（fail-open）。"""

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("task event listener failed for task %s", event.task_id, exc_info=True)
