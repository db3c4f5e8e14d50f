"""
Reconciliation engine.

- expressions: ${...} references and interpolation
- graph: dependency graph and topological levels
- variables: variable resolution
- planner: diff desired state against the snapshot
- executor: apply a plan level by level
- outputs: evaluate outputs after apply
- reconciler: plan / apply / destroy / refresh under the state lock
"""

from sitestack.engine.expressions import UNKNOWN, Reference, interpolate, iter_references
from sitestack.engine.graph import DependencyGraph
from sitestack.engine.planner import Planner, diff_attributes
from sitestack.engine.executor import Executor, operation_token
from sitestack.engine.outputs import evaluate_outputs
from sitestack.engine.reconciler import Reconciler
from sitestack.engine.variables import resolve_variables

__all__ = [
    "UNKNOWN",
    "Reference",
    "interpolate",
    "iter_references",
    "DependencyGraph",
    "Planner",
    "diff_attributes",
    "Executor",
    "operation_token",
    "evaluate_outputs",
    "Reconciler",
    "resolve_variables",
]
