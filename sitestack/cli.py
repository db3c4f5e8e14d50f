"""
sitestack command line.

Usage:
    sitestack validate -f site.yaml
    sitestack plan -f site.yaml --var domain=example.com
    sitestack apply -f site.yaml --var-file prod.yaml --auto-approve
    sitestack destroy -f site.yaml
    sitestack refresh -f site.yaml
    sitestack output [NAME]
    sitestack force-unlock
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

from sitestack import __version__
from sitestack.config.document import collect_variables, load_document
from sitestack.config.settings import Settings, get_settings
from sitestack.core.exceptions import ApplyError, SitestackError
from sitestack.engine.expressions import UNKNOWN
from sitestack.engine.reconciler import Reconciler
from sitestack.models.plan import Action, Plan
from sitestack.monitoring.metrics import track_run, write_metrics
from sitestack.state.store import StateStore

logger = structlog.get_logger(__name__)

DEFAULT_DOCUMENT = "sitestack.yaml"


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# Rendering
# =============================================================================


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return "(known after apply)"
    return json.dumps(value, sort_keys=True, default=repr)


def render_plan(plan: Plan) -> str:
    """Human-readable plan, one block per change."""
    lines = []
    for op in plan.changes:
        lines.append(f"{op.symbol} {op.address} ({op.action.value})")
        if op.action is Action.DELETE:
            continue
        for key in op.changed:
            marker = "  # forces replacement" if key in op.forces_replacement else ""
            if op.action is Action.CREATE:
                lines.append(f"    {key} = {_format_value(op.after.get(key))}")
            else:
                before = _format_value(op.before[key]) if key in op.before else "null"
                after = _format_value(op.after[key]) if key in op.after else "null"
                lines.append(f"    {key}: {before} -> {after}{marker}")

    summary = plan.summary()
    lines.append(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )
    if not plan.has_changes:
        lines.append("No changes. Remote resources match the document.")
    return "\n".join(lines)


def render_outputs(outputs: dict[str, Any], sensitive: set[str]) -> str:
    return "\n".join(
        f"{name} = {'<sensitive>' if name in sensitive else _format_value(value)}"
        for name, value in sorted(outputs.items())
    )


def _confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} Only 'yes' will be accepted: ").strip() == "yes"
    except EOFError:
        return False


# =============================================================================
# Commands
# =============================================================================


def _reconciler(args: argparse.Namespace, settings: Settings):
    document = load_document(args.file)
    variables = collect_variables(args.var_file or [], args.var or [])
    reconciler = Reconciler.for_document(document, settings, provider_name=args.provider)
    return reconciler, document, variables


async def cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    reconciler, document, variables = _reconciler(args, settings)
    graph = reconciler.validate(document, variables)
    print(f"Document is valid: {len(graph.nodes)} resources in {len(graph.levels())} levels.")
    return 0


async def cmd_plan(args: argparse.Namespace, settings: Settings) -> int:
    reconciler, document, variables = _reconciler(args, settings)
    plan = await reconciler.plan(document, variables, destroy=args.destroy)
    print(render_plan(plan))
    return 2 if args.detailed_exitcode and plan.has_changes else 0


async def _apply(args: argparse.Namespace, settings: Settings, destroy: bool) -> int:
    reconciler, document, variables = _reconciler(args, settings)
    plan = await reconciler.plan(document, variables, destroy=destroy)
    print(render_plan(plan))
    if destroy and not plan.has_changes:
        return 0
    if plan.has_changes and not args.auto_approve and not _confirm("Apply these changes?"):
        print("Apply cancelled.")
        return 1

    result = await reconciler.apply(plan)
    print(f"Apply complete: {result.changed_count} changed.")
    if result.outputs:
        sensitive = {name for name, output in document.outputs.items() if output.sensitive}
        print(render_outputs(result.outputs, sensitive))
    return 0


async def cmd_apply(args: argparse.Namespace, settings: Settings) -> int:
    return await _apply(args, settings, destroy=False)


async def cmd_destroy(args: argparse.Namespace, settings: Settings) -> int:
    return await _apply(args, settings, destroy=True)


async def cmd_refresh(args: argparse.Namespace, settings: Settings) -> int:
    reconciler, _, _ = _reconciler(args, settings)
    snapshot = await reconciler.refresh()
    print(f"Refreshed {len(snapshot.resources)} resources (serial {snapshot.serial}).")
    return 0


async def cmd_output(args: argparse.Namespace, settings: Settings) -> int:
    snapshot = StateStore(settings.state_path).load()
    outputs = {name: output.value for name, output in snapshot.outputs.items()}
    sensitive = {name for name, output in snapshot.outputs.items() if output.sensitive}
    if args.name:
        if args.name not in outputs:
            print(f"No output named {args.name!r}", file=sys.stderr)
            return 1
        value = outputs[args.name]
        print(value if isinstance(value, str) else json.dumps(value))
        return 0
    if args.json:
        print(json.dumps(outputs, indent=2, sort_keys=True))
    else:
        print(render_outputs(outputs, sensitive))
    return 0


async def cmd_force_unlock(args: argparse.Namespace, settings: Settings) -> int:
    store = StateStore(settings.state_path)
    if store.force_unlock():
        print(f"Removed lock {store.lock_path}")
    else:
        print("State is not locked.")
    return 0


COMMANDS = {
    "validate": cmd_validate,
    "plan": cmd_plan,
    "apply": cmd_apply,
    "destroy": cmd_destroy,
    "refresh": cmd_refresh,
    "output": cmd_output,
    "force-unlock": cmd_force_unlock,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitestack",
        description="Provision an S3 static website and CloudFront distribution from a YAML document.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--state", type=Path, help="State file (default: SITESTACK_STATE_PATH)")

    document_options = argparse.ArgumentParser(add_help=False)
    document_options.add_argument("-f", "--file", default=DEFAULT_DOCUMENT, help="Desired-state document")
    document_options.add_argument("--var", action="append", metavar="NAME=VALUE", help="Set a variable")
    document_options.add_argument("--var-file", action="append", type=Path, help="YAML file of variable values")
    document_options.add_argument("--provider", help="Override the document's provider (e.g. memory)")

    approve = argparse.ArgumentParser(add_help=False)
    approve.add_argument("--auto-approve", action="store_true", help="Skip the confirmation prompt")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("validate", parents=[document_options], help="Check the document")
    plan = sub.add_parser("plan", parents=[document_options], help="Show pending changes")
    plan.add_argument("--destroy", action="store_true", help="Plan deletion of everything")
    plan.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 2 when there are changes",
    )
    sub.add_parser("apply", parents=[document_options, approve], help="Apply changes")
    sub.add_parser("destroy", parents=[document_options, approve], help="Delete all managed resources")
    sub.add_parser("refresh", parents=[document_options], help="Update state from the control plane")
    output = sub.add_parser("output", help="Print saved outputs")
    output.add_argument("name", nargs="?")
    output.add_argument("--json", action="store_true")
    sub.add_parser("force-unlock", help="Remove a stale state lock")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    if args.state:
        settings = settings.model_copy(update={"state_path": args.state})
    configure_logging(settings)

    try:
        with track_run(args.command):
            return asyncio.run(COMMANDS[args.command](args, settings))
    except ApplyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        for address, error in e.failures.items():
            print(f"  {address}: {error}", file=sys.stderr)
        if e.skipped:
            print(f"  not attempted: {', '.join(e.skipped)}", file=sys.stderr)
        return 1
    except SitestackError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted. Completed changes are saved in state.", file=sys.stderr)
        return 130
    finally:
        if settings.metrics_textfile:
            write_metrics(settings.metrics_textfile)
