"""Apply a plan against the control plane.

Teardown runs first: deletes and the delete half of replacements,
dependents before dependencies. Creates, updates and the create half of
replacements follow in topological order. Deletes that a surviving
resource still pointed at run last. Operations in one level run
concurrently on a bounded pool; once one fails, queued operations are
skipped and the next level is never started.

The snapshot is saved after every confirmed remote call, so an
interrupted run leaves state describing exactly what was applied.
"""

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
from uuid import NAMESPACE_URL, uuid5

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sitestack.config.settings import Settings, get_settings
from sitestack.core.exceptions import (
    ApplyError,
    RemoteConflictError,
    RetryableError,
    SitestackError,
    UnresolvedReferenceError,
)
from sitestack.engine.expressions import Reference, interpolate, walk_path
from sitestack.engine.planner import diff_attributes
from sitestack.models.plan import Action, Operation, Plan
from sitestack.models.schemas import ResourceDeclaration, ResourceState, StateSnapshot
from sitestack.monitoring.metrics import record_drift, record_retry, track_operation
from sitestack.providers.base import Provider, RemoteResource, ResourceHandler
from sitestack.state.store import StateStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def operation_token(plan: Plan, phase: str, address: str) -> str:
    """Idempotency token, stable for one operation on one resource of one plan."""
    return str(uuid5(NAMESPACE_URL, f"sitestack:{plan.lineage}:{plan.serial}:{phase}:{address}"))


async def call_with_retry(
    settings: Settings,
    resource_type: str,
    address: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
) -> T:
    """Call the control plane, retrying transient failures.

    Args:
        settings: Supplies the attempt limit and backoff.
        resource_type: Labels the retry metric.
        address: Resource the call is for, for logging.
        fn: Handler coroutine function.
        *args: Passed to ``fn`` unchanged on every attempt.

    Raises:
        Whatever ``fn`` raised last, once retries are exhausted or the
        error is not a ``RetryableError``.
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        record_retry(resource_type)
        logger.warning(
            "operation_retry",
            address=address,
            call=fn.__name__,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(RetryableError),
        stop=stop_after_attempt(settings.retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_seconds,
            max=settings.retry_backoff_max_seconds,
        ),
        before_sleep=before_sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await fn(*args)
    return result


def _declaration(op: Operation) -> ResourceDeclaration:
    if op.declaration is None:
        raise SitestackError(
            f"{op.address}: {op.action.value} operation has no declaration",
            {"address": op.address, "action": op.action.value},
        )
    return op.declaration


class Executor:
    """
    Runs the operations of one plan.

    Args:
        provider: Control plane provider.
        store: Where the snapshot is saved after each confirmed call.
        settings: Worker pool size and retry policy.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings or get_settings()
        self._state_lock = asyncio.Lock()
        self._snapshot: StateSnapshot = StateSnapshot()
        self._plan: Optional[Plan] = None
        self._completed: list[str] = []

    async def execute(self, plan: Plan, snapshot: StateSnapshot) -> list[str]:
        """
        Apply every change in ``plan`` to ``snapshot``.

        Returns:
            Addresses of completed operations, in completion order. A
            replacement counts as completed once its new resource exists.

        Raises:
            ApplyError: One or more operations failed; queued operations
                and later levels were skipped.
            asyncio.CancelledError: Propagated after in-flight work is cancelled.
        """
        self._plan = plan
        self._snapshot = snapshot
        self._completed = []
        semaphore = asyncio.Semaphore(self.settings.max_workers)

        phases = (
            ("delete", plan.delete_levels(), self._teardown),
            ("apply", plan.apply_levels(), self._execute),
            ("cleanup", plan.cleanup_levels(), self._teardown),
        )
        for phase, levels, run in phases:
            for index, level in enumerate(levels):
                logger.info(
                    "level_started",
                    phase=phase,
                    level=index,
                    operations=[op.address for op in level],
                )
                failures = await self._run_level(level, semaphore, run)
                if failures:
                    skipped = [
                        op.address
                        for op in plan.changes
                        if op.address not in failures and op.address not in self._completed
                    ]
                    logger.error(
                        "level_failed",
                        phase=phase,
                        level=index,
                        failed=sorted(failures),
                        skipped=skipped,
                    )
                    raise ApplyError(failures, list(self._completed), skipped)

        return list(self._completed)

    async def _run_level(
        self,
        level: list[Operation],
        semaphore: asyncio.Semaphore,
        run: Callable[[Operation], Awaitable[None]],
    ) -> dict[str, BaseException]:
        failed = asyncio.Event()

        async def guarded(op: Operation) -> None:
            async with semaphore:
                if failed.is_set():
                    logger.info("operation_skipped", address=op.address, action=op.action.value)
                    return
                try:
                    await run(op)
                except Exception:
                    failed.set()
                    raise

        tasks = [asyncio.create_task(guarded(op), name=op.address) for op in level]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("apply_cancelled", completed=list(self._completed))
            raise

        failures: dict[str, BaseException] = {}
        for op, result in zip(level, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "operation_failed",
                    address=op.address,
                    action=op.action.value,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                failures[op.address] = result
        return failures

    async def _teardown(self, op: Operation) -> None:
        log = logger.bind(address=op.address, action=op.action.value)
        log.info("teardown_started")
        with track_operation(op.resource_type, Action.DELETE.value):
            await self._delete(op)
        if op.action is Action.REPLACE:
            log.info("teardown_completed")
            return
        self._completed.append(op.address)
        log.info("operation_completed")

    async def _execute(self, op: Operation) -> None:
        log = logger.bind(address=op.address, action=op.action.value)
        log.info("operation_started")
        with track_operation(op.resource_type, op.action.value):
            if op.action is Action.UPDATE:
                await self._update(op)
            else:
                # Replacements were torn down before the apply levels
                await self._create(op)
        self._completed.append(op.address)
        log.info("operation_completed")

    # -------------------------------------------------------------------------
    # Remote calls
    # -------------------------------------------------------------------------

    async def _call(
        self,
        op: Operation,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        return await call_with_retry(self.settings, op.resource_type, op.address, fn, *args)

    def _resolve(self, op: Operation) -> dict[str, Any]:
        """Resolve declared attributes against the live snapshot."""
        declaration = _declaration(op)
        values: Mapping[str, Any] = self._plan.variables if self._plan else {}

        def lookup(reference: Reference) -> Any:
            if reference.is_variable:
                return walk_path(values[reference.target], reference, op.address)
            target = self._snapshot.get(reference.target)
            if target is None or not target.has_attribute(reference.attribute):
                raise UnresolvedReferenceError(
                    "${" + reference.text + "}",
                    op.address,
                    "target has not been materialized",
                )
            return walk_path(target.attribute(reference.attribute), reference, op.address)

        return interpolate(declaration.attributes, lookup)

    async def _read_current(
        self, op: Operation, handler: ResourceHandler, prior: ResourceState
    ) -> Optional[RemoteResource]:
        return await self._call(op, handler.read, prior.id, dict(prior.inputs))

    def _check_drift(
        self,
        op: Operation,
        handler: ResourceHandler,
        prior: ResourceState,
        remote: Optional[RemoteResource],
    ) -> None:
        if remote is None:
            record_drift(op.resource_type)
            raise RemoteConflictError(
                op.address, "resource no longer exists remotely", {"id": prior.id}
            )
        drifted = sorted(
            key
            for key, expected in prior.inputs.items()
            if key in remote.attributes and handler.differs(key, expected, remote.attributes[key])
        )
        if drifted:
            record_drift(op.resource_type)
            raise RemoteConflictError(
                op.address,
                "remote attributes changed since the last apply",
                {"id": prior.id, "attributes": drifted},
            )

    async def _record(
        self,
        op: Operation,
        handler: ResourceHandler,
        attributes: dict[str, Any],
        remote: RemoteResource,
    ) -> None:
        declaration = _declaration(op)
        outputs = {
            key: value
            for key, value in remote.attributes.items()
            if key not in attributes or key in handler.computed
        }
        async with self._state_lock:
            self._snapshot.resources[op.address] = ResourceState(
                type=declaration.type,
                name=declaration.name,
                id=remote.id,
                inputs=attributes,
                outputs=outputs,
                dependencies=op.dependencies,
                prevent_destroy=declaration.lifecycle.prevent_destroy,
            )
            self.store.save(self._snapshot)

    async def _forget(self, address: str) -> None:
        async with self._state_lock:
            self._snapshot.resources.pop(address, None)
            self.store.save(self._snapshot)

    async def _create(self, op: Operation) -> None:
        handler = self.provider.handler_for(op.resource_type)
        attributes = self._resolve(op)
        token = operation_token(self._plan, "create", op.address)
        remote = await self._call(op, handler.create, attributes, token)
        logger.info("resource_created", address=op.address, id=remote.id)
        await self._record(op, handler, attributes, remote)

    async def _update(self, op: Operation) -> None:
        handler = self.provider.handler_for(op.resource_type)
        prior = self._snapshot.resources[op.address]
        self._check_drift(op, handler, prior, await self._read_current(op, handler, prior))

        attributes = self._resolve(op)
        changed = diff_attributes(prior.inputs, attributes)
        if not changed:
            logger.info("operation_noop_after_resolution", address=op.address)
            return
        forced = [key for key in changed if key in handler.force_new]
        if forced:
            raise RemoteConflictError(
                op.address,
                "resolved values now force replacement; plan again",
                {"attributes": forced},
            )

        token = operation_token(self._plan, "update", op.address)
        remote = await self._call(op, handler.update, prior.id, attributes, changed, token)
        logger.info("resource_updated", address=op.address, id=remote.id, changed=changed)
        await self._record(op, handler, attributes, remote)

    async def _delete(self, op: Operation) -> None:
        prior = self._snapshot.get(op.address)
        if prior is None:
            return
        handler = self.provider.handler_for(prior.type)
        remote = await self._read_current(op, handler, prior)
        if remote is None:
            logger.info("resource_already_deleted", address=op.address, id=prior.id)
        else:
            token = operation_token(self._plan, "delete", op.address)
            await self._call(op, handler.delete, prior.id, dict(prior.inputs), token)
            logger.info("resource_deleted", address=op.address, id=prior.id)
        await self._forget(op.address)
