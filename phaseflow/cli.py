#!/usr/bin/env python3
"""
Phaseflow CLI

Command-line interface for driving a workflow through its phases,
resolving approval gates and recovering from errors.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import CONFIG_FILENAME, ConfigManager
from .engine import WorkflowOrchestrator
from .errors import (
    ApprovalGateError,
    CheckpointNotFoundError,
    InvalidWorkflowTypeError,
    NoActiveWorkflowError,
    WorkflowAlreadyActiveError,
    WorkflowDefinitionError,
    WorkflowError,
)
from .health import WorkflowDiagnostics
from .recovery import RecoveryContext, RecoveryResult

logger = logging.getLogger(__name__)

# Raised before any state changes when a request does not fit the workflow
OPERATOR_ERRORS = (
    ApprovalGateError,
    NoActiveWorkflowError,
    WorkflowAlreadyActiveError,
    InvalidWorkflowTypeError,
    CheckpointNotFoundError,
)


# ============================================================================
# Helpers
# ============================================================================

def _working_dir(args) -> Path:
    return Path(getattr(args, 'dir', '.') or '.')


def configure_logging(args) -> None:
    """Configure root logging from the logging section of phaseflow.yaml."""
    config_manager = ConfigManager(_working_dir(args) / CONFIG_FILENAME)
    log_config = config_manager.config.logging
    level = "DEBUG" if getattr(args, 'verbose', False) else log_config.level.upper()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_config.file:
        log_path = config_manager.resolve(log_config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_config.format,
        handlers=handlers,
        force=True,
    )


def get_orchestrator(args) -> WorkflowOrchestrator:
    """Create an orchestrator for the working directory."""
    working_dir = _working_dir(args)
    config_manager = ConfigManager(working_dir / CONFIG_FILENAME)
    ok, errors = config_manager.validate()
    if not ok:
        print(f"Error: invalid configuration in {CONFIG_FILENAME}", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        sys.exit(2)
    try:
        return WorkflowOrchestrator.for_directory(working_dir, config_manager)
    except WorkflowDefinitionError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


def _peek_context(orchestrator: WorkflowOrchestrator, operation: str) -> RecoveryContext:
    try:
        state = orchestrator.store.load()
    except WorkflowError:
        state = None
    return RecoveryContext.from_state(state, operation=operation)


def fail(orchestrator: WorkflowOrchestrator, error: WorkflowError, operation: str) -> None:
    """
    Report an error with its recovery outcome and exit 1.

    Errors that were not handled yet are passed to the recovery engine first,
    except rejected operator requests, which changed nothing and only get
    their next steps printed.
    """
    if error.recovery is None and isinstance(error, OPERATOR_ERRORS):
        logger.error(f"{operation} rejected: {error.message}")
        print(f"Error [{error.kind.value}]: {error.message}", file=sys.stderr)
        print("\nNext steps:", file=sys.stderr)
        for line in orchestrator.recovery.manual_instructions(error):
            print(f"  {line}", file=sys.stderr)
        sys.exit(1)

    result = error.recovery
    if result is None:
        result = orchestrator.recovery.handle(error, _peek_context(orchestrator, operation))

    print(f"Error [{error.kind.value}]: {error.message}", file=sys.stderr)
    print(f"Recovery strategy: {result.strategy.value}", file=sys.stderr)
    if result.success and not result.should_retry:
        print(f"✓ {result.message}", file=sys.stderr)
    instructions = result.instructions or orchestrator.recovery.manual_instructions(error)
    if not result.success or result.should_retry:
        print("\nNext steps:", file=sys.stderr)
        for line in instructions:
            print(f"  {line}", file=sys.stderr)
    sys.exit(1)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_json_arg(value: Optional[str], what: str) -> dict:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        print(f"Error: {what} must be valid JSON: {e}", file=sys.stderr)
        sys.exit(2)
    if not isinstance(parsed, dict):
        print(f"Error: {what} must be a JSON object", file=sys.stderr)
        sys.exit(2)
    return parsed


def _print_result(result: RecoveryResult) -> None:
    marker = "✓" if result.success else "✗"
    print(f"{marker} {result.message}")


def format_status(status: dict) -> str:
    """Human-readable status report."""
    if not status.get("active"):
        return "No active workflow. Run 'phaseflow start <type>' to begin."

    lines = [
        "=" * 60,
        f"WORKFLOW: {status['workflow_type']} ({status['workflow_id']})",
        "=" * 60,
        f"Phase {status['phase_index'] + 1}/{status['phases_total']}: "
        f"{status['current_phase_name']} [{status['current_phase']}]",
        f"Phase progress: {status['phase_progress']}% ({status['phase_status']})",
        f"Overall progress: {status['overall_progress']}% "
        f"({status['phases_completed']}/{status['phases_total']} phases completed)",
        f"Gates: {status['gates_approved']} approved, {status['gates_skipped']} skipped",
    ]
    if status["active_workers"]:
        workers = ", ".join(f"{w['name']} ({w['status']})" for w in status["active_workers"])
        lines.append(f"Workers: {workers}")
    if status["awaiting_approval"]:
        lines.append("")
        lines.append(f"⚠ Awaiting approval at gate: {status['awaiting_approval']}")
        timeout = status.get("gate_timeout")
        if timeout:
            lines.append(f"  {timeout['message']}")
        lines.append(f"  Run: phaseflow approve-gate {status['awaiting_approval']}")
    if status["safe_mode"]:
        lines.append("")
        lines.append("⚠ Safe mode is enabled (parallel workers disabled, every transition gated)")
    if status["remaining_phases"]:
        lines.append("")
        lines.append("Remaining phases:")
        for phase in status["remaining_phases"]:
            duration = f" ({phase['estimated_duration']})" if phase["estimated_duration"] else ""
            lines.append(f"  - {phase['name']}{duration}")
    return "\n".join(lines)


# ============================================================================
# Commands
# ============================================================================

def cmd_start(args):
    """Start a new workflow."""
    orchestrator = get_orchestrator(args)
    try:
        state = orchestrator.start(args.type, parallel=args.parallel, dry_run=args.dry_run)
    except WorkflowError as e:
        fail(orchestrator, e, "start")
        return

    definition = orchestrator.registry.get(state.workflow_type)
    print(f"\n✓ Workflow started: {state.workflow_id}")
    print(f"  Type: {state.workflow_type}")
    print(f"  Phase: {definition.display_name(state.current_phase)} [{state.current_phase}]")
    if state.parallel_mode:
        print("  Parallel workers: enabled")
    if state.dry_run:
        print("  Dry run: no artifacts will be produced")
    print("\nRun 'phaseflow status' to see progress.")


def cmd_status(args):
    """Show current workflow status."""
    orchestrator = get_orchestrator(args)
    try:
        status = orchestrator.status()
    except WorkflowError as e:
        fail(orchestrator, e, "status")
        return

    if args.json:
        _print_json(status)
    else:
        print(format_status(status))


def cmd_resume(args):
    """Resume the active workflow."""
    orchestrator = get_orchestrator(args)
    try:
        result = orchestrator.resume()
    except WorkflowError as e:
        fail(orchestrator, e, "resume")
        return

    if args.json:
        _print_json(result)
    elif result["success"]:
        print(f"✓ {result['message']}")
    else:
        print(f"✗ {result['message']}")
        if result.get("awaiting_approval"):
            print(f"  Run: phaseflow approve-gate {result['awaiting_approval']}")
    if not result["success"]:
        sys.exit(1)


def cmd_save_state(args):
    """Save a manual checkpoint."""
    orchestrator = get_orchestrator(args)
    try:
        checkpoint = orchestrator.save_checkpoint(note=args.note, name=args.name)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except WorkflowError as e:
        fail(orchestrator, e, "save_state")
        return

    print(
        f"✓ Workflow state saved at {checkpoint.phase} "
        f"({checkpoint.progress_at_creation}% complete)"
    )
    print(f"  Checkpoint: {checkpoint.checkpoint_id}")


def cmd_progress(args):
    """Update progress of the current phase."""
    orchestrator = get_orchestrator(args)
    workers = [w.strip() for w in args.workers.split(',') if w.strip()] if args.workers else None
    try:
        state = orchestrator.update_progress(
            progress_percentage=args.percent,
            artifacts_created=args.created,
            artifacts_total=args.total,
            active_workers=workers,
            estimated_time_remaining=args.eta,
        )
    except WorkflowError as e:
        fail(orchestrator, e, "update_progress")
        return

    print(f"✓ {state.current_phase}: {state.phase_details.progress_percentage}%")


def cmd_complete(args):
    """Complete the current phase."""
    orchestrator = get_orchestrator(args)
    results = _parse_json_arg(args.results, "--results")
    try:
        before = orchestrator.current()
        state = orchestrator.complete_phase(results)
    except WorkflowError as e:
        fail(orchestrator, e, "complete_phase")
        return

    completed_phase = before.current_phase if before else "?"
    print(f"✓ Completed phase: {completed_phase}")
    if state.completed:
        print(f"✓ Workflow {state.workflow_id} completed")
    elif state.awaiting_approval:
        print(f"⚠ Awaiting approval at gate: {state.awaiting_approval}")
        print(f"  Run: phaseflow approve-gate {state.awaiting_approval}")
    else:
        print(f"→ Now in phase: {state.current_phase}")


def cmd_approve_gate(args):
    """Approve the pending approval gate."""
    orchestrator = get_orchestrator(args)
    modifications = _parse_json_arg(args.modifications, "modifications")
    try:
        state = orchestrator.approve_gate(args.gate, modifications)
    except WorkflowError as e:
        fail(orchestrator, e, "approve_gate")
        return

    print(f"✓ Gate approved. Proceeding to phase: {state.current_phase}")


def cmd_list_types(args):
    """List registered workflow types."""
    orchestrator = get_orchestrator(args)
    registry = orchestrator.registry
    if args.json:
        _print_json({
            name: {
                "description": registry.get(name).description,
                "phases": list(registry.get(name).phases),
                "approval_gates": list(registry.get(name).approval_gates),
            }
            for name in registry.types()
        })
        return

    for name in registry.types():
        definition = registry.get(name)
        print(f"{name}: {definition.description or ''}".rstrip(": "))
        print(f"  Phases: {' → '.join(definition.phases)}")
        if definition.approval_gates:
            print(f"  Gates: {', '.join(definition.approval_gates)}")


def cmd_workflow_recovery(args):
    """Recovery and diagnostic actions."""
    orchestrator = get_orchestrator(args)
    try:
        _run_recovery_action(orchestrator, args)
    except WorkflowError as e:
        fail(orchestrator, e, "workflow_recovery")


def _run_recovery_action(orchestrator: WorkflowOrchestrator, args) -> None:
    if args.diagnostic:
        report = WorkflowDiagnostics(orchestrator).run()
        if args.json:
            print(report.to_json())
            return
        print("Workflow Diagnostics Report")
        print("=" * 32)
        print(json.dumps(report.workflow, indent=2, default=str))
        print()
        for component in report.components:
            print(f"[{component.status.upper()}] {component.name}: {component.message}")
        for problem in report.validation_errors:
            print(f"  - {problem}")
        if report.checkpoints:
            print("\nRecent checkpoints:")
            for c in report.checkpoints:
                print(f"  {c['checkpoint_id']} ({c['trigger']}, {c['phase']} {c['progress']}%)")
        if report.errors:
            print("\nRecent errors:")
            for err in report.errors:
                print(f"  [{err['timestamp']}] {err['kind']}: {err['message']}")
        if report.recommendations:
            print("\nRecommendations:")
            for i, rec in enumerate(report.recommendations, 1):
                print(f"  {i}. {rec}")
        return

    if args.validate_state:
        ok, problems = orchestrator.validate_state()
        if ok:
            print("✓ Workflow state is valid")
            return
        print("✗ Workflow state is invalid:")
        for problem in problems:
            print(f"  - {problem}")
        sys.exit(1)

    if args.show_errors is not None:
        records = orchestrator.store.list_error_records(args.show_errors)
        if args.json:
            _print_json([r.model_dump(mode="json") for r in records])
            return
        if not records:
            print("No errors recorded")
            return
        for record in records:
            outcome = "recovered" if record.recovery.succeeded else "not recovered"
            print(f"[{record.context.timestamp.isoformat()}] {record.kind}: {record.message}")
            print(f"  phase: {record.context.current_phase or '-'}, "
                  f"strategy: {record.recovery.strategy} ({outcome})")
        return

    if args.restore_checkpoint is not None:
        result = orchestrator.restore_checkpoint(args.restore_checkpoint or None)
        _print_result(result)
        if result.details.get("backup_id"):
            print(f"  Backup: {result.details['backup_id']}")
        return

    if args.reset_workflow:
        result = orchestrator.reset_workflow()
        print(f"✓ {result['message']}")
        if result["backup_id"]:
            print(f"  Backup: {result['backup_id']}")
        return

    if args.reset_phase:
        _print_result(orchestrator.reset_phase())
        return

    if args.skip_approval:
        state = orchestrator.skip_gate(reason=args.reason)
        print(f"✓ Approval skipped. Proceeding to phase: {state.current_phase}")
        return

    if args.skip_agent:
        _print_result(orchestrator.skip_worker(args.skip_agent, args.reason))
        return

    if args.retry_agent:
        _print_result(orchestrator.retry_worker(args.retry_agent))
        return

    if args.safe_mode:
        result = orchestrator.enter_safe_mode(args.reason or "Operator request")
        _print_result(result)
        for restriction in result.details.get("restrictions", []):
            print(f"  - {restriction}")
        return

    if args.exit_safe_mode:
        result = orchestrator.exit_safe_mode()
        _print_result(result)
        if not result.success:
            sys.exit(1)
        return

    if args.export_state is not None:
        path = orchestrator.export_state(args.export_state or None)
        print(f"✓ Workflow state exported to {path}")
        return

    if args.import_state:
        state = orchestrator.import_state(args.import_state)
        print(f"✓ Imported workflow {state.workflow_id} at phase: {state.current_phase}")
        return


# ============================================================================
# Parser
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phaseflow",
        description="Phaseflow - drive multi-phase workflows with approval gates, checkpoints and recovery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  phaseflow start new-project
  phaseflow status
  phaseflow progress --created 3 --total 10
  phaseflow complete
  phaseflow approve-gate post-research
  phaseflow save-state "before stakeholder call"
  phaseflow workflow-recovery --diagnostic
  phaseflow workflow-recovery --restore-checkpoint
        """
    )

    parser.add_argument('--dir', '-d', default='.', help='Working directory (default: current)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start a new workflow')
    start_parser.add_argument('type', help='Workflow type (see list-types)')
    start_parser.add_argument('--parallel', action='store_true', help='Allow parallel workers')
    start_parser.add_argument('--dry-run', action='store_true', help='Record transitions without producing artifacts')
    start_parser.set_defaults(func=cmd_start)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show current workflow status')
    status_parser.add_argument('--json', action='store_true', help='Output as JSON')
    status_parser.set_defaults(func=cmd_status)

    # Resume command
    resume_parser = subparsers.add_parser('resume', help='Resume the active workflow')
    resume_parser.add_argument('--json', action='store_true', help='Output as JSON')
    resume_parser.set_defaults(func=cmd_resume)

    # Save-state command
    save_parser = subparsers.add_parser('save-state', help='Save a manual checkpoint')
    save_parser.add_argument('note', nargs='?', help='Note stored with the checkpoint')
    save_parser.add_argument('--name', help='Checkpoint name (default: manual-<timestamp>)')
    save_parser.set_defaults(func=cmd_save_state)

    # Progress command
    progress_parser = subparsers.add_parser('progress', help='Update progress of the current phase')
    progress_parser.add_argument('--percent', type=int, help='Progress percentage (0-100)')
    progress_parser.add_argument('--created', type=int, help='Artifacts created so far')
    progress_parser.add_argument('--total', type=int, help='Artifacts expected in this phase')
    progress_parser.add_argument('--workers', help='Comma-separated active workers')
    progress_parser.add_argument('--eta', help='Estimated time remaining')
    progress_parser.set_defaults(func=cmd_progress)

    # Complete command
    complete_parser = subparsers.add_parser('complete', help='Complete the current phase')
    complete_parser.add_argument('--results', help='Phase results as a JSON object')
    complete_parser.set_defaults(func=cmd_complete)

    # Approve-gate command
    approve_parser = subparsers.add_parser('approve-gate', help='Approve the pending approval gate')
    approve_parser.add_argument('gate', help='Gate name')
    approve_parser.add_argument('modifications', nargs='?', help='Modifications as a JSON object')
    approve_parser.set_defaults(func=cmd_approve_gate)

    # List-types command
    types_parser = subparsers.add_parser('list-types', help='List available workflow types')
    types_parser.add_argument('--json', action='store_true', help='Output as JSON')
    types_parser.set_defaults(func=cmd_list_types)

    # Workflow-recovery command
    recovery_parser = subparsers.add_parser('workflow-recovery', help='Recovery and diagnostics')
    actions = recovery_parser.add_mutually_exclusive_group(required=True)
    actions.add_argument('--diagnostic', action='store_true',
                         help='Validate state, list recent checkpoints/errors, print recommendations')
    actions.add_argument('--validate-state', action='store_true', help='Validate the stored workflow state')
    actions.add_argument('--show-errors', type=int, nargs='?', const=5, metavar='N',
                         help='Show the N most recent errors (default: 5)')
    actions.add_argument('--restore-checkpoint', nargs='?', const='', metavar='NAME',
                         help='Restore the latest or a named checkpoint')
    actions.add_argument('--reset-workflow', action='store_true',
                         help='Discard the workflow (a safety backup is written first)')
    actions.add_argument('--reset-phase', action='store_true', help='Restart the current phase')
    actions.add_argument('--skip-approval', action='store_true', help='Bypass the pending approval gate')
    actions.add_argument('--skip-agent', metavar='NAME', help='Skip a failed worker')
    actions.add_argument('--retry-agent', metavar='NAME', help='Retry a skipped or failed worker')
    actions.add_argument('--safe-mode', action='store_true', help='Enter safe mode')
    actions.add_argument('--exit-safe-mode', action='store_true', help='Exit safe mode')
    actions.add_argument('--export-state', nargs='?', const='', metavar='FILE',
                         help='Export the workflow state to a JSON file')
    actions.add_argument('--import-state', metavar='FILE', help='Import workflow state from a JSON file')
    recovery_parser.add_argument('--reason', help='Reason recorded with skips and safe mode')
    recovery_parser.add_argument('--json', action='store_true', help='Output as JSON where supported')
    recovery_parser.set_defaults(func=cmd_workflow_recovery)

    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args)
    args.func(args)


if __name__ == '__main__':
    main()
