from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.table import Table

from .constants import QUALITY_CHECKS
from .container import Container
from .errors import ErrorKind, Outcome, TaskNotFoundError
from .evidence import EvidenceDelta
from .fsm import workflow_summary
from .logging_utils import configure_logging
from .models import LaneState, ProvenanceStatus, RemediationPath, ReviewLane, TaskMode
from .service import WorkflowService

EXIT_REFUSED = 2


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _service(args: argparse.Namespace) -> WorkflowService:
    return WorkflowService(Container(_resolve_project_dir(args.project_dir)))


def _write(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + '\n')


def _emit_outcome(outcome: Outcome) -> int:
    if outcome.error is not None:
        if outcome.error.kind == ErrorKind.STALE_CASE:
            _write({'discarded': True, **outcome.error.to_dict()})
            return 0
        _write({'ok': False, 'error': outcome.error.to_dict()})
        sys.stderr.write(outcome.error.message + '\n')
        return EXIT_REFUSED
    _write({'ok': True, 'notices': outcome.notices, 'summary': workflow_summary(outcome.task)})
    return 0


def _run(args: argparse.Namespace, action: Callable[[WorkflowService], Outcome]) -> int:
    service = _service(args)
    try:
        return _emit_outcome(action(service))
    except TaskNotFoundError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    finally:
        service.close()


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------

def _task_create(args: argparse.Namespace) -> int:
    service = _service(args)
    task = service.create_task(
        args.title,
        description=args.description,
        project_id=args.project_id,
        mode=args.mode,
    )
    _write({'task': task.to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    service = _service(args)
    tasks = service.list_tasks(args.mode)
    if not args.table:
        _write({'tasks': [t.to_dict() for t in tasks]})
        return 0
    table = Table(title='Tasks')
    table.add_column('ID', style='cyan')
    table.add_column('Title')
    table.add_column('Mode')
    table.add_column('Stage')
    table.add_column('Progress', justify='right')
    table.add_column('Clearance')
    for task in tasks:
        summary = workflow_summary(task)
        clearance = summary['clearance']
        table.add_row(
            task.id,
            task.title,
            task.mode.value,
            f"{summary['current_step']} {summary['current_label']}" if summary['current_step'] else '-',
            f"{summary['progress_percent']}%",
            clearance['status'] if clearance else '-',
        )
    Console().print(table)
    return 0


def _task_show(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        summary = service.summary(args.task_id)
    except TaskNotFoundError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    if not args.table:
        _write({'summary': summary})
        return 0
    table = Table(title=f"{args.task_id} ({summary['progress_percent']}%)")
    table.add_column('#', justify='right')
    table.add_column('Stage')
    table.add_column('State')
    for step in summary['steps']:
        state = step['state']
        if step['provenance_incomplete']:
            state = f'[yellow]{state} (provenance incomplete)[/yellow]'
        table.add_row(str(step['num']), step['label'], state)
    console = Console()
    console.print(table)
    guard = summary['guard']
    if guard['message']:
        console.print(f"[red]{guard['message']}[/red]")
    return 0


def _task_delete(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        service.delete_task(args.task_id)
    except TaskNotFoundError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    _write({'deleted': args.task_id})
    return 0


def _task_events(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        events = service.events(args.task_id)
    except TaskNotFoundError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    _write({'events': events})
    return 0


# ---------------------------------------------------------------------------
# workflow
# ---------------------------------------------------------------------------

def _workflow_mode(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.enter_ai_mode(args.task_id, args.mode))


def _workflow_advance(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.advance(args.task_id))


def _workflow_retreat(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.retreat(args.task_id))


def _workflow_jump(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.jump_to(args.task_id, args.step))


def _workflow_skip(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.skip(args.task_id, args.step))


def _workflow_select_tool(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.select_tool(args.task_id, args.tool))


def _workflow_launch(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.launch_tool(args.task_id))


def _workflow_check(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.set_quality_check(args.task_id, args.key, not args.uncheck))


def _workflow_restart(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.restart(args.task_id, confirm=args.yes))


def _workflow_convert(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.convert_to_manual(args.task_id, confirm=args.yes))


def _asset_add(args: argparse.Namespace) -> int:
    return _run(
        args,
        lambda s: s.add_asset(
            args.task_id,
            args.name,
            size=args.size,
            provenance_status=args.provenance,
            asset_id=args.asset_id,
        ),
    )


# ---------------------------------------------------------------------------
# clearance
# ---------------------------------------------------------------------------

def _clearance_resolve(args: argparse.Namespace) -> int:
    def action(service: WorkflowService) -> Outcome:
        case_id = args.case_id
        if not case_id:
            case = service.get_task(args.task_id).clearance_case
            case_id = case.id if case else ''
        return service.resolve_lane(
            args.task_id,
            case_id,
            args.lane,
            args.outcome,
            feedback=args.feedback,
            asset_id=args.asset_id,
        )

    return _run(args, action)


def _clearance_resubmit(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.resubmit(args.task_id))


def _clearance_remediate(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.choose_remediation(args.task_id, args.path))


# ---------------------------------------------------------------------------
# evidence
# ---------------------------------------------------------------------------

def _evidence_activate(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.activate_evidence(args.task_id))


def _evidence_deactivate(args: argparse.Namespace) -> int:
    return _run(args, lambda s: s.deactivate_evidence(args.task_id))


def _evidence_record(args: argparse.Namespace) -> int:
    try:
        delta = EvidenceDelta(prompts=args.prompts, generations=args.generations, downloads=args.downloads)
    except ValueError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    return _run(args, lambda s: s.record_evidence(args.task_id, delta))


def _evidence_show(args: argparse.Namespace) -> int:
    service = _service(args)
    try:
        task = service.get_task(args.task_id)
    except TaskNotFoundError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    _write({'evidence': task.evidence.to_dict()})
    return 0


# ---------------------------------------------------------------------------
# tools / server
# ---------------------------------------------------------------------------

def _tools_list(args: argparse.Namespace) -> int:
    service = _service(args)
    tools = service.catalog.search(args.query, args.category, args.project_id)
    if not args.table:
        _write({'tools': [tool.to_dict() for tool in tools]})
        return 0
    table = Table(title='AI Tools')
    table.add_column('ID', style='cyan')
    table.add_column('Name')
    table.add_column('Category')
    table.add_column('Tracking')
    for tool in tools:
        table.add_row(tool.id, tool.name, tool.category, tool.tracking_label)
    Console().print(table)
    return 0


def _server(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Creative workflow engine CLI')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Log level (default: $CREATIVE_WORKFLOW_LOG_LEVEL or INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('title')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--project-id', default=None)
    tcreate.add_argument('--mode', default=TaskMode.MANUAL.value, choices=[m.value for m in TaskMode])
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--mode', default=None, choices=[m.value for m in TaskMode])
    tlist.add_argument('--table', action='store_true')
    tlist.set_defaults(func=_task_list)
    tshow = task_sub.add_parser('show', help='Show a task workflow summary')
    tshow.add_argument('task_id')
    tshow.add_argument('--table', action='store_true')
    tshow.set_defaults(func=_task_show)
    tdelete = task_sub.add_parser('delete', help='Delete a task')
    tdelete.add_argument('task_id')
    tdelete.set_defaults(func=_task_delete)
    tevents = task_sub.add_parser('events', help='Show the audit events of a task')
    tevents.add_argument('task_id')
    tevents.set_defaults(func=_task_events)

    workflow = subparsers.add_parser('workflow', help='Drive the seven-stage workflow')
    wf_sub = workflow.add_subparsers(dest='workflow_cmd', required=True)
    wmode = wf_sub.add_parser('mode', help='Enter an AI mode')
    wmode.add_argument('task_id')
    wmode.add_argument('mode', choices=[TaskMode.ASSISTED.value, TaskMode.GENERATIVE.value])
    wmode.set_defaults(func=_workflow_mode)
    for name, func, help_text in (
        ('advance', _workflow_advance, 'Complete the current stage and move on'),
        ('retreat', _workflow_retreat, 'Go back one stage'),
        ('launch', _workflow_launch, 'Launch the selected tool'),
    ):
        cmd = wf_sub.add_parser(name, help=help_text)
        cmd.add_argument('task_id')
        cmd.set_defaults(func=func)
    wjump = wf_sub.add_parser('jump', help='Jump back to an earlier stage')
    wjump.add_argument('task_id')
    wjump.add_argument('step', type=int)
    wjump.set_defaults(func=_workflow_jump)
    wskip = wf_sub.add_parser('skip', help='Skip the current stage (flags provenance as incomplete)')
    wskip.add_argument('task_id')
    wskip.add_argument('step', type=int)
    wskip.set_defaults(func=_workflow_skip)
    wtool = wf_sub.add_parser('select-tool', help='Select the AI tool at stage 2')
    wtool.add_argument('task_id')
    wtool.add_argument('tool')
    wtool.set_defaults(func=_workflow_select_tool)
    wcheck = wf_sub.add_parser('check', help='Tick a quality checklist item')
    wcheck.add_argument('task_id')
    wcheck.add_argument('key', choices=list(QUALITY_CHECKS))
    wcheck.add_argument('--uncheck', action='store_true')
    wcheck.set_defaults(func=_workflow_check)
    wrestart = wf_sub.add_parser('restart', help='Restart the workflow from stage 1')
    wrestart.add_argument('task_id')
    wrestart.add_argument('--yes', action='store_true', help='Confirm the irreversible restart')
    wrestart.set_defaults(func=_workflow_restart)
    wconvert = wf_sub.add_parser('convert', help='Convert the task to manual (irreversible)')
    wconvert.add_argument('task_id')
    wconvert.add_argument('--yes', action='store_true', help='Confirm the irreversible conversion')
    wconvert.set_defaults(func=_workflow_convert)

    asset = subparsers.add_parser('asset', help='Register output assets')
    asset_sub = asset.add_subparsers(dest='asset_cmd', required=True)
    aadd = asset_sub.add_parser('add', help='Register an uploaded asset')
    aadd.add_argument('task_id')
    aadd.add_argument('name')
    aadd.add_argument('--size', default=0, type=int)
    aadd.add_argument('--provenance', default=ProvenanceStatus.MATCHING.value, choices=[p.value for p in ProvenanceStatus])
    aadd.add_argument('--asset-id', default=None)
    aadd.set_defaults(func=_asset_add)

    clearance = subparsers.add_parser('clearance', help='Clearance review and remediation')
    cl_sub = clearance.add_subparsers(dest='clearance_cmd', required=True)
    cresolve = cl_sub.add_parser('resolve', help='Record a lane decision')
    cresolve.add_argument('task_id')
    cresolve.add_argument('lane', choices=[lane.value for lane in ReviewLane])
    cresolve.add_argument('outcome', choices=[LaneState.APPROVED.value, LaneState.REJECTED.value])
    cresolve.add_argument('--case-id', default=None, help='Case to resolve (default: the current case)')
    cresolve.add_argument('--feedback', default=None)
    cresolve.add_argument('--asset-id', default=None)
    cresolve.set_defaults(func=_clearance_resolve)
    cresubmit = cl_sub.add_parser('resubmit', help='Open a fresh clearance case')
    cresubmit.add_argument('task_id')
    cresubmit.set_defaults(func=_clearance_resubmit)
    cremediate = cl_sub.add_parser('remediate', help='Choose a remediation path after rejection')
    cremediate.add_argument('task_id')
    cremediate.add_argument('path', choices=[p.value for p in RemediationPath])
    cremediate.set_defaults(func=_clearance_remediate)

    evidence = subparsers.add_parser('evidence', help='Evidence capture')
    ev_sub = evidence.add_subparsers(dest='evidence_cmd', required=True)
    for name, func, help_text in (
        ('activate', _evidence_activate, 'Start a new evidence session'),
        ('deactivate', _evidence_deactivate, 'Stop capturing evidence'),
        ('show', _evidence_show, 'Show the evidence session'),
    ):
        cmd = ev_sub.add_parser(name, help=help_text)
        cmd.add_argument('task_id')
        cmd.set_defaults(func=func)
    erecord = ev_sub.add_parser('record', help='Record observed tool activity')
    erecord.add_argument('task_id')
    erecord.add_argument('--prompts', default=0, type=int)
    erecord.add_argument('--generations', default=0, type=int)
    erecord.add_argument('--downloads', default=0, type=int)
    erecord.set_defaults(func=_evidence_record)

    tools = subparsers.add_parser('tools', help='AI tool catalog')
    tools_sub = tools.add_subparsers(dest='tools_cmd', required=True)
    tlist_tools = tools_sub.add_parser('list', help='List available tools')
    tlist_tools.add_argument('--query', default='')
    tlist_tools.add_argument('--category', default='all')
    tlist_tools.add_argument('--project-id', default=None)
    tlist_tools.add_argument('--table', action='store_true')
    tlist_tools.set_defaults(func=_tools_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
