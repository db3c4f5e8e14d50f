"""
Declarative resource reconciler.

Ties the planner, executor and state store together:

    reconciler = Reconciler.for_document(document)
    plan = await reconciler.plan(document, {"domain": "example.com"})
    result = await reconciler.apply(plan)

Only one run may hold the state lock at a time. A plan is bound to the
snapshot serial it was computed against; if the snapshot moved on, apply
refuses it and the caller must plan again.
"""

from typing import Any, Mapping, Optional
from uuid import uuid4

import structlog

from sitestack.config.settings import Settings, get_settings
from sitestack.core.exceptions import StalePlanError
from sitestack.engine.executor import Executor, call_with_retry
from sitestack.engine.graph import DependencyGraph
from sitestack.engine.outputs import evaluate_outputs
from sitestack.engine.planner import Planner
from sitestack.engine.variables import resolve_variables
from sitestack.models.plan import ApplyResult, Plan
from sitestack.models.schemas import Document, StateSnapshot
from sitestack.monitoring.metrics import set_resources_managed
from sitestack.providers.base import Provider
from sitestack.providers.registry import get_provider
from sitestack.state.store import StateStore

logger = structlog.get_logger(__name__)


class Reconciler:
    """
    Converges remote resources to a desired-state document.

    Args:
        provider: Control plane provider.
        store: State snapshot store.
        settings: Application settings. Defaults to get_settings().
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
        self.planner = Planner(provider)

    @classmethod
    def for_document(
        cls,
        document: Document,
        settings: Optional[Settings] = None,
        provider_name: Optional[str] = None,
    ) -> "Reconciler":
        """Build the provider named by the document (or overridden) and a file store."""
        settings = settings or get_settings()
        provider = get_provider(provider_name or document.provider.name, document.provider.options)
        store = StateStore(settings.state_path, settings.lock_timeout_seconds)
        return cls(provider, store, settings)

    # -------------------------------------------------------------------------
    # Read-only operations
    # -------------------------------------------------------------------------

    def validate(
        self,
        document: Document,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> DependencyGraph:
        """Check references, cycles, variables and resource types without remote calls."""
        resolve_variables(document.variables, variables)
        graph = DependencyGraph.from_document(document)
        graph.levels()
        for resource in document.resources:
            self.provider.handler_for(resource.type)
        logger.info("document_valid", resources=len(document.resources))
        return graph

    async def plan(
        self,
        document: Document,
        variables: Optional[Mapping[str, Any]] = None,
        destroy: bool = False,
    ) -> Plan:
        """Diff the document against the current snapshot."""
        return self.planner.plan(document, self.store.load(), variables, destroy=destroy)

    def outputs(self) -> dict[str, Any]:
        """Output values saved by the last successful apply."""
        return {name: output.value for name, output in self.store.load().outputs.items()}

    # -------------------------------------------------------------------------
    # Mutating operations
    # -------------------------------------------------------------------------

    async def apply(self, plan: Plan) -> ApplyResult:
        """
        Execute a plan under the state lock.

        Raises:
            StalePlanError: The snapshot changed since the plan was computed.
            ApplyError: An operation failed; completed work is saved.
        """
        run_id = str(uuid4())
        log = logger.bind(run_id=run_id)
        async with self.store.lock(run_id):
            snapshot = self.store.load()
            self._check_fresh(plan, snapshot)
            if snapshot.serial == 0:
                snapshot.lineage = plan.lineage

            log.info("apply_started", changes=len(plan.changes), destroy=plan.destroy)
            executor = Executor(self.provider, self.store, self.settings)
            try:
                completed = await executor.execute(plan, snapshot)
            finally:
                set_resources_managed(len(snapshot.resources))

            if plan.destroy or plan.document is None:
                outputs = {}
            else:
                outputs = evaluate_outputs(plan.document, snapshot, plan.variables)
            if completed or outputs != snapshot.outputs:
                snapshot.outputs = outputs
                self.store.save(snapshot)

            skipped = [op.address for op in plan.operations if op.address not in completed]
            log.info("apply_completed", completed=len(completed), serial=snapshot.serial)
            return ApplyResult(
                completed=completed,
                skipped=skipped,
                outputs={name: output.value for name, output in snapshot.outputs.items()},
                serial=snapshot.serial,
            )

    async def reconcile(
        self,
        document: Document,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ApplyResult:
        """Plan and apply in one step."""
        return await self.apply(await self.plan(document, variables))

    async def destroy(
        self,
        document: Document,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ApplyResult:
        """Delete every resource recorded in state."""
        return await self.apply(await self.plan(document, variables, destroy=True))

    async def refresh(self) -> StateSnapshot:
        """
        Re-read every recorded resource from the control plane.

        Resources gone remotely are dropped. Recorded attributes are
        replaced by remote values, so the next plan corrects drift instead
        of failing with RemoteConflictError.
        Reads use the same retry policy as apply.
        """
        run_id = str(uuid4())
        async with self.store.lock(run_id):
            snapshot = self.store.load()
            changed = False
            for address, resource in sorted(snapshot.resources.items()):
                handler = self.provider.handler_for(resource.type)
                remote = await call_with_retry(
                    self.settings, resource.type, address, handler.read, resource.id, dict(resource.inputs)
                )
                if remote is None:
                    logger.warning("refresh_resource_missing", address=address, id=resource.id)
                    del snapshot.resources[address]
                    changed = True
                    continue

                for key, value in remote.attributes.items():
                    if key in resource.inputs and handler.differs(key, resource.inputs[key], value):
                        logger.info("refresh_drift_recorded", address=address, attribute=key)
                        resource.inputs[key] = value
                        changed = True
                    elif key in handler.computed and resource.outputs.get(key) != value:
                        resource.outputs[key] = value
                        changed = True

            if changed:
                self.store.save(snapshot)
            set_resources_managed(len(snapshot.resources))
            logger.info("refresh_completed", changed=changed, resources=len(snapshot.resources))
            return snapshot

    def _check_fresh(self, plan: Plan, snapshot: StateSnapshot) -> None:
        if snapshot.serial != plan.serial:
            raise StalePlanError(plan.serial, snapshot.serial)
        if snapshot.serial > 0 and snapshot.lineage != plan.lineage:
            raise StalePlanError(plan.serial, snapshot.serial)
