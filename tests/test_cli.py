from __future__ import annotations

import json
from pathlib import Path

import pytest
from loguru import logger

from creative_workflow.cli import EXIT_REFUSED, build_parser, main


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


def _run(capsys, project_dir: Path, *argv: str) -> tuple[int, dict]:
    capsys.readouterr()
    code = main(['--project-dir', str(project_dir), '--log-level', 'WARNING', *argv])
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip().startswith('{') else {})


def _create(capsys, project_dir: Path, mode: str = 'assisted') -> str:
    code, payload = _run(capsys, project_dir, 'task', 'create', 'Poster', '--mode', mode)
    assert code == 0
    return payload['task']['id']


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_task_create_and_list(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    code, payload = _run(capsys, tmp_path, 'task', 'list')
    assert code == 0
    assert [t['id'] for t in payload['tasks']] == [task_id]
    assert (tmp_path / '.creative_workflow' / 'tasks.yaml').exists()


def test_workflow_advance_and_guard(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    code, payload = _run(capsys, tmp_path, 'workflow', 'advance', task_id)
    assert code == 0
    assert payload['ok'] is True
    assert payload['summary']['current_step'] == 2

    code, payload = _run(capsys, tmp_path, 'workflow', 'advance', task_id)
    assert code == EXIT_REFUSED
    assert payload['error']['kind'] == 'guard_failed'

    code, payload = _run(capsys, tmp_path, 'workflow', 'select-tool', task_id, 'Midjourney')
    assert code == 0
    assert payload['notices'] == ['Midjourney selected']
    assert payload['summary']['tracking_level'] == 'full'


def test_skip_critical_stage_is_refused(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    code, payload = _run(capsys, tmp_path, 'workflow', 'skip', task_id, '1')
    assert code == EXIT_REFUSED
    assert payload['error']['kind'] == 'skip_forbidden'


def test_restart_without_yes_is_refused(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    code, payload = _run(capsys, tmp_path, 'workflow', 'restart', task_id)
    assert code == EXIT_REFUSED
    assert payload['error']['kind'] == 'confirmation_required'
    code, _ = _run(capsys, tmp_path, 'workflow', 'restart', task_id, '--yes')
    assert code == 0


def test_clearance_resolve_uses_current_case(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    steps = [
        ('workflow', 'advance', task_id),
        ('workflow', 'select-tool', task_id, 'ChatGPT'),
        ('workflow', 'advance', task_id),
        ('workflow', 'advance', task_id),
        ('asset', 'add', task_id, 'copy.txt', '--size', '512'),
        ('workflow', 'advance', task_id),
        ('workflow', 'advance', task_id),
    ]
    for argv in steps:
        code, _ = _run(capsys, tmp_path, *argv)
        assert code == 0, argv

    for lane in ('legal', 'qa', 'admin'):
        code, payload = _run(capsys, tmp_path, 'clearance', 'resolve', task_id, lane, 'approved')
        assert code == 0
    assert payload['summary']['clearance']['status'] == 'approved'

    code, payload = _run(capsys, tmp_path, 'clearance', 'resolve', task_id, 'qa', 'approved', '--case-id', 'case-old')
    assert code == 0
    assert payload['discarded'] is True


def test_evidence_record(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    assert _run(capsys, tmp_path, 'evidence', 'activate', task_id)[0] == 0
    assert _run(capsys, tmp_path, 'evidence', 'record', task_id, '--prompts', '2', '--downloads', '1')[0] == 0
    code, payload = _run(capsys, tmp_path, 'evidence', 'show', task_id)
    assert code == 0
    assert payload['evidence']['counts'] == {'prompts': 2, 'generations': 0, 'downloads': 1}

    code, _ = _run(capsys, tmp_path, 'evidence', 'record', task_id, '--prompts', '-1')
    assert code == 1


def test_show_table(tmp_path: Path, capsys) -> None:
    task_id = _create(capsys, tmp_path)
    capsys.readouterr()
    code = main(['--project-dir', str(tmp_path), 'task', 'show', task_id, '--table'])
    assert code == 0
    assert 'Brief & Context' in capsys.readouterr().out


def test_unknown_task(tmp_path: Path, capsys) -> None:
    assert _run(capsys, tmp_path, 'workflow', 'advance', 'task-missing')[0] == 1
    assert _run(capsys, tmp_path, 'task', 'show', 'task-missing')[0] == 1
    assert _run(capsys, tmp_path, 'task', 'delete', 'task-missing')[0] == 1


def test_tools_list(tmp_path: Path, capsys) -> None:
    code, payload = _run(capsys, tmp_path, 'tools', 'list', '--category', 'Image Generation')
    assert code == 0
    assert [t['name'] for t in payload['tools']] == ['Midjourney', 'DALL-E 3', 'Stable Diffusion']
