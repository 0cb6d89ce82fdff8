from __future__ import annotations

import json
from pathlib import Path

import pytest

from task_ledger.cli import main


def _run(capsys: pytest.CaptureFixture[str], data_dir: Path, *args: str) -> tuple[int, dict]:
    rc = main(['--data-dir', str(data_dir), *args])
    out = capsys.readouterr().out
    return rc, (json.loads(out) if out.strip() else {})


def _write_plan(tmp_path: Path) -> Path:
    plan = tmp_path / 'plan.yaml'
    plan.write_text(
        'analysis_result: split into two steps\n'
        'tasks:\n'
        '  - name: Build\n'
        '    description: compile it\n'
        '  - name: Ship\n'
        '    dependencies: [Build]\n',
        encoding='utf-8',
    )
    return plan


def test_plan_list_start_report_complete(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    data_dir = tmp_path / 'ledger'
    rc, payload = _run(capsys, data_dir, 'plan', str(_write_plan(tmp_path)))
    assert rc == 0
    assert payload['mode'] == 'clearAllTasks'
    assert payload['backup'] is not None
    ids = {t['name']: t['id'] for t in payload['created']}
    assert payload['created'][0]['analysis_result'] == 'split into two steps'

    rc, payload = _run(capsys, data_dir, 'list', '--status', 'pending')
    assert rc == 0 and payload['total'] == 2

    assert _run(capsys, data_dir, 'start', ids['Ship'])[0] == 2

    rc, payload = _run(capsys, data_dir, 'start', ids['Build'])
    assert rc == 0
    assert payload['task']['status'] == 'in_progress'
    assert payload['complexity']['level'] == 'low'

    rc, payload = _run(capsys, data_dir, 'report', ids['Build'], 'succeeded')
    assert rc == 0 and payload['task']['status'] == 'completed'

    rc, payload = _run(capsys, data_dir, 'complete', ids['Build'], '--summary', 'built')
    assert rc == 0
    assert payload['task']['summary'] == 'built'
    assert payload['warning'] is None

    assert _run(capsys, data_dir, 'start', ids['Build'])[0] == 2

    rc, payload = _run(capsys, data_dir, 'order')
    assert payload['batches'] == [[ids['Ship']]]


def test_report_failure_includes_loop_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = tmp_path / 'plan.json'
    plan.write_text(json.dumps([{'name': 'Flaky'}]), encoding='utf-8')
    _, payload = _run(capsys, tmp_path, 'plan', str(plan))
    task_id = payload['created'][0]['id']

    _run(capsys, tmp_path, 'start', task_id)
    rc, payload = _run(capsys, tmp_path, 'report', task_id, 'failed', '--error', 'timeout')
    assert rc == 0
    assert payload['loop'] == {'is_looping': False, 'failure_history': ['timeout']}

    rc, _ = _run(capsys, tmp_path, 'report', task_id, 'failed')
    assert rc == 1


def test_show_search_status_delete(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _, payload = _run(capsys, tmp_path, 'plan', str(_write_plan(tmp_path)), '--mode', 'append')
    ids = {t['name']: t['id'] for t in payload['created']}

    rc, payload = _run(capsys, tmp_path, 'show', ids['Build'][:8])
    assert rc == 0 and payload['task']['name'] == 'Build'

    rc, payload = _run(capsys, tmp_path, 'search', 'compile')
    assert rc == 0 and [t['name'] for t in payload['tasks']] == ['Build']

    _run(capsys, tmp_path, 'start', ids['Build'])
    rc, payload = _run(capsys, tmp_path, 'status')
    assert rc == 0 and [e['task_id'] for e in payload['in_progress']] == [ids['Build']]

    assert _run(capsys, tmp_path, 'delete', ids['Build'])[0] == 1
    rc, payload = _run(capsys, tmp_path, 'delete', ids['Ship'])
    assert rc == 0 and payload['deleted'] == ids['Ship']


def test_clear_requires_confirm(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'plan', str(_write_plan(tmp_path)))
    assert _run(capsys, tmp_path, 'clear')[0] == 1
    rc, payload = _run(capsys, tmp_path, 'clear', '--confirm')
    assert rc == 0 and payload['removed'] == 2
    assert _run(capsys, tmp_path, 'list')[1]['total'] == 0


def test_unknown_task_and_bad_plan(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(capsys, tmp_path, 'show', 'missing')[0] == 1
    bad = tmp_path / 'bad.json'
    bad.write_text('{"items": []}', encoding='utf-8')
    assert _run(capsys, tmp_path, 'plan', str(bad))[0] == 1
    assert _run(capsys, tmp_path, 'plan', str(tmp_path / 'nope.yaml'))[0] == 1


def test_unreadable_store_exits_with_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / 'tasks.json').mkdir()
    rc, payload = _run(capsys, tmp_path, 'list')
    assert rc == 1
    assert payload == {}
