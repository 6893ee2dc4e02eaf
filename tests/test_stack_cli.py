"""Tests for stack_opr/cli.py - plan/apply/destroy/validate/unlock/state verbs."""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import EXAMPLES_DIR, stack_template
from stack_opr.cli import (
    EXIT_CHANGES,
    EXIT_ERROR,
    EXIT_OK,
    apply_main,
    destroy_main,
    plan_main,
    state_main,
    unlock_main,
    validate_main,
)
from stack_opr.lock import LockManager
from stack_opr.state import StateSnapshot
from stack_opr.store import FileStateStore


@pytest.fixture(autouse=True)
def restore_root_logging():
    """--json-output swaps root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workspace(tmp_path):
    """Config with a file state store plus a 'demo' template."""
    config = {
        'state': {'backend': 'file', 'dir': 'state'},
        'pseudo_parameters': {
            'AWS::Partition': 'aws',
            'AWS::Region': 'us-east-1',
            'AWS::AccountId': '123456789012',
        },
        'providers': {'Test::Table': {'replace_properties': ['KeySchema']}},
    }
    (tmp_path / 'stack-driver.yaml').write_text(yaml.safe_dump(config))
    (tmp_path / 'demo.yaml').write_text(yaml.safe_dump(stack_template(), sort_keys=False))
    return tmp_path


def _args(workspace, *extra):
    return ['--config', str(workspace / 'stack-driver.yaml'), *extra]


def _template(workspace):
    return ['-T', str(workspace / 'demo.yaml')]


def _store(workspace):
    return FileStateStore(workspace / 'state')


class TestPlan:
    """Tests for 'stack plan'."""

    def test_changes_exit_code(self, workspace, capsys):
        rc = plan_main(_args(workspace, *_template(workspace)))
        assert rc == EXIT_CHANGES
        out = capsys.readouterr().out
        assert 'PLAN: demo' in out
        assert '+ Bucket: create (Test::Bucket)' in out
        assert '+ Name = state-dev' in out
        assert 'Plan: 3 to create (0 unchanged)' in out

    def test_plan_takes_and_releases_lock(self, workspace):
        plan_main(_args(workspace, *_template(workspace)))
        lock = LockManager(_store(workspace), 'demo').current()
        assert lock.token == 1
        assert lock.released

    def test_json_output(self, workspace, capsys):
        rc = plan_main(_args(workspace, *_template(workspace), '--json-output', '-p', 'Env=prod'))
        assert rc == EXIT_CHANGES
        data = json.loads(capsys.readouterr().out)
        assert data['stack'] == 'demo'
        assert data['summary'] == {'create': 3}
        assert data['parameters'] == {'Env': 'prod', 'TableClass': 'STANDARD'}
        policy = data['entries'][2]
        assert policy['changes'][0]['after'] == [
            '(known after apply: Bucket.Arn)',
            '(known after apply: Table.Arn)',
        ]

    def test_explicit_stack_name(self, workspace, capsys):
        plan_main(_args(workspace, *_template(workspace), '-S', 'prod'))
        assert 'PLAN: prod' in capsys.readouterr().out

    def test_params_file(self, workspace, capsys):
        params = workspace / 'params.yaml'
        params.write_text('Env: prod\nTableClass: STANDARD_IA\n')
        rc = plan_main(_args(workspace, *_template(workspace), '--params-file', str(params),
                             '-p', 'TableClass=STANDARD', '--json-output'))
        assert rc == EXIT_CHANGES
        data = json.loads(capsys.readouterr().out)
        assert data['parameters'] == {'Env': 'prod', 'TableClass': 'STANDARD'}

    def test_invalid_parameter(self, workspace, capsys):
        rc = plan_main(_args(workspace, *_template(workspace), '-p', 'Env=staging'))
        assert rc == EXIT_ERROR
        assert capsys.readouterr().err.startswith('Error: E102:')

    def test_malformed_parameter(self, workspace, capsys):
        rc = plan_main(_args(workspace, *_template(workspace), '-p', 'Env'))
        assert rc == EXIT_ERROR
        assert "Invalid parameter 'Env'" in capsys.readouterr().err

    def test_missing_template(self, workspace, capsys):
        rc = plan_main(_args(workspace, '-T', str(workspace / 'nope.yaml')))
        assert rc == EXIT_ERROR
        assert capsys.readouterr().err.startswith('Error: E101:')

    def test_lock_held(self, workspace, capsys):
        LockManager(_store(workspace), 'demo', holder='ci-runner').acquire()
        rc = plan_main(_args(workspace, *_template(workspace)))
        assert rc == EXIT_ERROR
        err = capsys.readouterr().err
        assert 'E301' in err
        assert 'ci-runner' in err

    def test_cycle_reported(self, workspace, capsys):
        data = stack_template()
        data['Resources']['Bucket']['Properties']['Policy'] = {'Ref': 'Policy'}
        path = workspace / 'cyclic.yaml'
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        rc = plan_main(_args(workspace, '-T', str(path)))
        assert rc == EXIT_ERROR
        assert 'E206' in capsys.readouterr().err

    def test_inline_template_needs_stack(self, workspace, capsys):
        rc = plan_main(_args(workspace, '--template-json', json.dumps(stack_template())))
        assert rc == EXIT_ERROR
        assert 'pass --stack' in capsys.readouterr().err


class TestApply:
    """Tests for 'stack apply'."""

    def test_auto_approve(self, workspace, capsys):
        rc = apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        assert rc == EXIT_OK
        out = capsys.readouterr().out
        assert '3 succeeded, 0 failed, 0 skipped, 0 cancelled' in out
        assert 'BucketName = bucket-' in out

        snapshot = StateSnapshot.load(_store(workspace), 'demo')
        assert len(snapshot) == 3
        assert (workspace / 'state' / 'resources' / 'test-table').is_dir()

    def test_second_apply_no_changes(self, workspace, capsys):
        apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        capsys.readouterr()
        rc = apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        assert rc == EXIT_OK
        assert 'No changes.' in capsys.readouterr().out
        assert plan_main(_args(workspace, *_template(workspace))) == EXIT_OK

    def test_confirmation_declined(self, workspace, capsys):
        with patch('builtins.input', return_value='n'):
            rc = apply_main(_args(workspace, *_template(workspace)))
        assert rc == EXIT_ERROR
        assert 'Aborted.' in capsys.readouterr().out
        assert len(StateSnapshot.load(_store(workspace), 'demo')) == 0
        assert LockManager(_store(workspace), 'demo').current().released

    def test_json_output(self, workspace, capsys):
        rc = apply_main(_args(workspace, *_template(workspace), '--json-output'))
        assert rc == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert sorted(data['succeeded']) == ['Bucket', 'Policy', 'Table']
        assert data['outputs']['PolicyArn'].startswith('arn:local:Test::Policy:')

    def test_saved_plan(self, workspace, capsys):
        plan_path = workspace / 'plan.json'
        assert plan_main(_args(workspace, *_template(workspace), '-p', 'Env=prod',
                               '--out', str(plan_path))) == EXIT_CHANGES
        rc = apply_main(_args(workspace, '--plan-file', str(plan_path)))
        assert rc == EXIT_OK
        bucket = StateSnapshot.load(_store(workspace), 'demo').get('Bucket')
        assert bucket.properties == {'Name': 'state-prod', 'Versioning': 'Enabled'}

    def test_saved_plan_stale(self, workspace, capsys):
        plan_path = workspace / 'plan.json'
        plan_main(_args(workspace, *_template(workspace), '--out', str(plan_path)))
        assert apply_main(_args(workspace, '--plan-file', str(plan_path))) == EXIT_OK
        capsys.readouterr()

        rc = apply_main(_args(workspace, '--plan-file', str(plan_path)))
        assert rc == EXIT_ERROR
        assert 'E503' in capsys.readouterr().err
        assert LockManager(_store(workspace), 'demo').current().released

    def test_saved_plan_template_changed(self, workspace, capsys):
        plan_path = workspace / 'plan.json'
        plan_main(_args(workspace, *_template(workspace), '--out', str(plan_path)))
        data = stack_template()
        data['Resources']['Table']['Properties']['TableClass'] = 'STANDARD_IA'
        (workspace / 'demo.yaml').write_text(yaml.safe_dump(data, sort_keys=False))

        rc = apply_main(_args(workspace, '--plan-file', str(plan_path)))
        assert rc == EXIT_ERROR
        assert 'Template changed since the plan was saved' in capsys.readouterr().err

    def test_missing_plan_file(self, workspace, capsys):
        rc = apply_main(_args(workspace, '--plan-file', str(workspace / 'none.json')))
        assert rc == EXIT_ERROR
        assert 'Cannot load plan file' in capsys.readouterr().err

    def test_report_written(self, workspace):
        config_path = workspace / 'stack-driver.yaml'
        config = yaml.safe_load(config_path.read_text())
        config['report_dir'] = 'reports'
        config_path.write_text(yaml.safe_dump(config))

        assert apply_main(_args(workspace, *_template(workspace), '--auto-approve')) == EXIT_OK
        reports = sorted(p.name for p in (workspace / 'reports').iterdir())
        assert len(reports) == 2
        assert reports[0].endswith('.demo.apply.succeeded.json')
        assert reports[1].endswith('.demo.apply.succeeded.md')

    def _set_report_dir(self, workspace, report_dir):
        config_path = workspace / 'stack-driver.yaml'
        config = yaml.safe_load(config_path.read_text())
        config['report_dir'] = report_dir
        config_path.write_text(yaml.safe_dump(config))

    def test_report_dir_unusable(self, workspace, capsys):
        (workspace / 'blocker').write_text('not a directory')
        self._set_report_dir(workspace, 'blocker')

        rc = apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        assert rc == EXIT_ERROR
        assert 'Cannot create report directory' in capsys.readouterr().err
        assert len(StateSnapshot.load(_store(workspace), 'demo')) == 0
        assert LockManager(_store(workspace), 'demo').current().released

    def test_report_write_failure(self, workspace, capsys):
        self._set_report_dir(workspace, 'reports')
        with patch('stack_opr.cli.ApplyReport.finish', side_effect=OSError('disk full')):
            rc = apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        assert rc == EXIT_ERROR
        assert '3 succeeded' in capsys.readouterr().out
        assert len(StateSnapshot.load(_store(workspace), 'demo')) == 3
        assert LockManager(_store(workspace), 'demo').current().released


class TestDestroy:
    """Tests for 'stack destroy'."""

    def test_dry_run(self, workspace, capsys):
        apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        capsys.readouterr()
        rc = destroy_main(_args(workspace, '-S', 'demo', '--dry-run'))
        assert rc == EXIT_OK
        out = capsys.readouterr().out
        assert 'DESTROY PLAN: demo' in out
        assert '- Bucket: delete(retained)' in out
        assert len(StateSnapshot.load(_store(workspace), 'demo')) == 3

    def test_destroy(self, workspace, capsys):
        apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        rc = destroy_main(_args(workspace, *_template(workspace), '--yes'))
        assert rc == EXIT_OK
        assert len(StateSnapshot.load(_store(workspace), 'demo')) == 0
        # Retained bucket document is still on disk
        assert list((workspace / 'state' / 'resources' / 'test-bucket').glob('*.json'))
        assert not list((workspace / 'state' / 'resources' / 'test-table').glob('*.json'))

    def test_nothing_to_destroy(self, workspace, capsys):
        assert destroy_main(_args(workspace, '-S', 'empty', '--yes')) == EXIT_OK
        assert 'No changes.' in capsys.readouterr().out

    def test_requires_stack(self, workspace, capsys):
        assert destroy_main(_args(workspace, '--yes')) == EXIT_ERROR
        assert 'specify the stack' in capsys.readouterr().err


class TestValidate:
    """Tests for 'stack validate'."""

    def test_valid(self, workspace, capsys):
        assert validate_main(_args(workspace, *_template(workspace))) == EXIT_OK
        assert "Template 'demo.yaml' is valid (3 resources)" in capsys.readouterr().out

    def test_example_template(self, workspace, capsys):
        rc = validate_main(_args(workspace, '-T', str(EXAMPLES_DIR / 's3-tfstate.yaml')))
        assert rc == EXIT_OK

    def test_errors_listed(self, workspace, capsys):
        data = stack_template()
        data['Resources']['Policy']['Properties']['Queue'] = {'Fn::GetAtt': 'Queue.Arn'}
        data['Resources']['Policy']['DependsOn'] = 'Ghost'
        path = workspace / 'broken.yaml'
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        assert validate_main(_args(workspace, '-T', str(path))) == EXIT_ERROR
        err = capsys.readouterr().err
        assert '2 validation error(s)' in err
        assert "unknown resource 'Queue'" in err
        assert "DependsOn unknown resource 'Ghost'" in err

    def test_missing_required_parameter(self, workspace, capsys):
        data = stack_template()
        data['Parameters']['Owner'] = {'Type': 'String'}
        path = workspace / 'owner.yaml'
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        assert validate_main(_args(workspace, '-T', str(path), '--json-output')) == EXIT_OK
        payload = json.loads(capsys.readouterr().out)
        assert payload['valid'] is True
        assert payload['missing_parameters'] == ['Owner']
        assert 'resources' not in payload

    def test_parameter_violation(self, workspace, capsys):
        rc = validate_main(_args(workspace, *_template(workspace), '-p', 'Env=staging',
                                 '--json-output'))
        assert rc == EXIT_ERROR
        payload = json.loads(capsys.readouterr().out)
        assert payload['errors'][0].startswith('E102:')

    def test_json_resources_in_order(self, workspace, capsys):
        validate_main(_args(workspace, *_template(workspace), '--json-output'))
        payload = json.loads(capsys.readouterr().out)
        assert payload['resources'] == ['Bucket', 'Table', 'Policy']


class TestUnlockAndState:
    """Tests for 'stack unlock' and 'stack state'."""

    def test_unlock(self, workspace, capsys):
        LockManager(_store(workspace), 'demo', holder='crashed').acquire()
        assert unlock_main(_args(workspace, '-S', 'demo', '1')) == EXIT_OK
        assert "Lock on 'demo' released (token 1)" in capsys.readouterr().out
        assert plan_main(_args(workspace, *_template(workspace))) == EXIT_CHANGES

    def test_unlock_wrong_token(self, workspace, capsys):
        LockManager(_store(workspace), 'demo', holder='crashed').acquire()
        assert unlock_main(_args(workspace, '-S', 'demo', '5')) == EXIT_ERROR
        assert 'E302' in capsys.readouterr().err

    def test_unlock_not_locked(self, workspace, capsys):
        assert unlock_main(_args(workspace, '-S', 'demo', '1')) == EXIT_OK
        assert "is not locked" in capsys.readouterr().out

    def test_unlock_requires_stack(self, workspace, capsys):
        assert unlock_main(_args(workspace, '1')) == EXIT_ERROR

    def test_state_show(self, workspace, capsys):
        apply_main(_args(workspace, *_template(workspace), '--auto-approve'))
        capsys.readouterr()
        assert state_main(_args(workspace, '-S', 'demo')) == EXIT_OK
        out = capsys.readouterr().out
        assert 'Stack: demo' in out
        assert 'Lock: none' in out
        assert 'Bucket: Test::Bucket bucket-' in out
        assert '[retain]' in out
        assert 'output BucketName = bucket-' in out

    def test_state_json(self, workspace, capsys):
        LockManager(_store(workspace), 'demo', holder='ci').acquire()
        assert state_main(_args(workspace, '-S', 'demo', 'show', '--json-output')) == EXIT_OK
        payload = json.loads(capsys.readouterr().out)
        assert payload['version'] == 0
        assert payload['resources'] == {}
        assert payload['lock']['holder'] == 'ci'
