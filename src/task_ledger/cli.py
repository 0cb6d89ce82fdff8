from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import AlreadyCompleted, DependenciesBlocked, TaskEngineError
from .logging_utils import configure_logging, pretty
from .task_engine.engine import TaskEngine
from .task_engine.model import Task
from .task_engine.reconcile import UpdateMode


def _engine(args: argparse.Namespace) -> TaskEngine:
    return TaskEngine(args.data_dir)


def _emit(payload: Any) -> None:
    sys.stdout.write(pretty(payload) + '\n')


def _tasks(tasks: list[Task]) -> list[dict[str, Any]]:
    return [task.to_dict() for task in tasks]


def _load_plan(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding='utf-8')
    if path.suffix in {'.yaml', '.yml'}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if isinstance(data, list):
        data = {'tasks': data}
    if not isinstance(data, dict) or not isinstance(data.get('tasks'), list):
        raise ValueError(f"{path.name}: expected a 'tasks' list")
    return data


def _task_list(args: argparse.Namespace) -> int:
    tasks = _engine(args).list_tasks(args.status)
    _emit({'tasks': _tasks(tasks), 'total': len(tasks)})
    return 0


def _task_show(args: argparse.Namespace) -> int:
    task = _engine(args).get_task_detail(args.task_id)
    _emit({'task': task.to_dict()})
    return 0


def _task_search(args: argparse.Namespace) -> int:
    page = _engine(args).search(args.query, by_id=args.id, page=args.page, page_size=args.page_size)
    _emit({
        'tasks': _tasks(page.tasks),
        'page': page.page,
        'page_size': page.page_size,
        'total_results': page.total_results,
        'total_pages': page.total_pages,
    })
    return 0


def _plan(args: argparse.Namespace) -> int:
    try:
        plan = _load_plan(Path(args.file).expanduser())
    except (OSError, ValueError, yaml.YAMLError) as exc:
        sys.stderr.write(f"Could not read plan file: {exc}\n")
        return 1
    analysis = args.analysis if args.analysis is not None else plan.get('analysis_result')
    result = _engine(args).reconcile(plan['tasks'], args.mode, analysis)
    _emit({
        'mode': result.mode.value,
        'created': _tasks(result.created),
        'updated': _tasks(result.updated),
        'discarded': [t.id for t in result.discarded],
        'backup': result.backup.to_dict() if result.backup else None,
    })
    return 0


def _start(args: argparse.Namespace) -> int:
    outcome = _engine(args).start_task(args.task_id)
    _emit({
        'task': outcome.task.to_dict(),
        'complexity': {
            'level': outcome.complexity.level.value,
            'recommendations': outcome.complexity.recommendations,
        },
    })
    return 0


def _report(args: argparse.Namespace) -> int:
    outcome = _engine(args).report_result(args.task_id, args.outcome, args.error)
    payload: dict[str, Any] = {'task': outcome.task.to_dict(), 'outcome': outcome.outcome.value}
    if outcome.loop is not None:
        payload['loop'] = {
            'is_looping': outcome.loop.is_looping,
            'failure_history': outcome.loop.failure_history,
        }
    _emit(payload)
    return 0


def _complete(args: argparse.Namespace) -> int:
    outcome = _engine(args).complete_task(args.task_id, args.summary)
    _emit({
        'task': outcome.task.to_dict(),
        'warning': str(outcome.inconsistency) if outcome.inconsistency else None,
    })
    return 0


def _delete(args: argparse.Namespace) -> int:
    task = _engine(args).delete_task(args.task_id)
    _emit({'deleted': task.id, 'name': task.name})
    return 0


def _clear(args: argparse.Namespace) -> int:
    if not args.confirm:
        sys.stderr.write("Refusing to clear all tasks without --confirm\n")
        return 1
    result = _engine(args).clear_all()
    _emit({'removed': result.removed, 'backup': result.backup.to_dict()})
    return 0


def _status(args: argparse.Namespace) -> int:
    entries = _engine(args).check_agent_status()
    _emit({'in_progress': [entry.to_dict() for entry in entries]})
    return 0


def _order(args: argparse.Namespace) -> int:
    _emit({'batches': _engine(args).get_execution_order()})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Task ledger: persisted tasks with dependency-aware execution')
    parser.add_argument('--data-dir', default=None, help='Storage root (default: $TASK_LEDGER_DATA_DIR or ./.task_ledger)')
    parser.add_argument('--log-level', default='WARNING', help='Log level for stderr output')
    subparsers = parser.add_subparsers(dest='command', required=True)

    plist = subparsers.add_parser('list', help='List tasks')
    plist.add_argument('--status', default=None, choices=['all', 'pending', 'in_progress', 'completed'])
    plist.set_defaults(func=_task_list)

    pshow = subparsers.add_parser('show', help='Show one task by ID or ID prefix')
    pshow.add_argument('task_id')
    pshow.set_defaults(func=_task_show)

    psearch = subparsers.add_parser('search', help='Search tasks by keywords or ID')
    psearch.add_argument('query')
    psearch.add_argument('--id', action='store_true', help='Treat the query as a task ID or prefix')
    psearch.add_argument('--page', default=1, type=int)
    psearch.add_argument('--page-size', default=None, type=int)
    psearch.set_defaults(func=_task_search)

    pplan = subparsers.add_parser('plan', help='Apply a JSON/YAML batch of task definitions')
    pplan.add_argument('file')
    pplan.add_argument('--mode', default=UpdateMode.CLEAR_ALL.value, choices=[m.value for m in UpdateMode])
    pplan.add_argument('--analysis', default=None, help='Analysis text attached to every task in the batch')
    pplan.set_defaults(func=_plan)

    pstart = subparsers.add_parser('start', help='Start (or retry) a task')
    pstart.add_argument('task_id')
    pstart.set_defaults(func=_start)

    preport = subparsers.add_parser('report', help='Report the outcome of the current attempt')
    preport.add_argument('task_id')
    preport.add_argument('outcome', choices=['succeeded', 'failed'])
    preport.add_argument('--error', default=None)
    preport.set_defaults(func=_report)

    pcomplete = subparsers.add_parser('complete', help='Record the completion summary')
    pcomplete.add_argument('task_id')
    pcomplete.add_argument('--summary', default=None)
    pcomplete.set_defaults(func=_complete)

    pdelete = subparsers.add_parser('delete', help='Delete an unfinished task')
    pdelete.add_argument('task_id')
    pdelete.set_defaults(func=_delete)

    pclear = subparsers.add_parser('clear', help='Back up and remove every task')
    pclear.add_argument('--confirm', action='store_true')
    pclear.set_defaults(func=_clear)

    pstatus = subparsers.add_parser('status', help='Report activity of in-progress tasks')
    pstatus.set_defaults(func=_status)

    porder = subparsers.add_parser('order', help='Show dependency-ordered execution batches')
    porder.set_defaults(func=_order)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except (DependenciesBlocked, AlreadyCompleted) as exc:
        sys.stderr.write(str(exc) + '\n')
        return 2
    except TaskEngineError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1


if __name__ == '__main__':
    sys.exit(main())
