"""Shared pytest fixtures for stack-driver tests."""

import copy
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import ProviderError
from stack_opr.executor import ApplyExecutor
from stack_opr.graph import ResourceGraph
from stack_opr.lock import LockManager
from stack_opr.plan import PlanEngine
from stack_opr.providers import ProviderRegistry, ProviderResult, ResourceProvider
from stack_opr.state import StateSnapshot
from stack_opr.store import MemoryStateStore
from template import Template

EXAMPLES_DIR = Path(__file__).parent.parent / 'examples'


class FakeProvider(ResourceProvider):
    """In-memory provider that records every call.

    Args:
        replace_properties: Properties whose change forces replacement
        fail_on: Logical ids whose create/update/delete raise ProviderError
    """

    def __init__(self, replace_properties=None, fail_on=None):
        super().__init__(replace_properties)
        self.fail_on = set(fail_on or ())
        self.resources: dict[str, dict] = {}
        self.owners: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._mutex = threading.Lock()
        self._counter = 0

    def _record(self, op: str, logical_id: str) -> None:
        with self._mutex:
            self.calls.append((op, logical_id))
        if logical_id in self.fail_on:
            raise ProviderError(f"{op} {logical_id} failed", logical_id)

    def calls_for(self, op: str) -> list[str]:
        return [lid for o, lid in self.calls if o == op]

    def describe(self, physical_id):
        props = self.resources.get(physical_id)
        return copy.deepcopy(props) if props is not None else None

    def create(self, logical_id, properties):
        self._record('create', logical_id)
        with self._mutex:
            self._counter += 1
            physical_id = f'{logical_id.lower()}-{self._counter}'
            self.resources[physical_id] = copy.deepcopy(properties)
            self.owners[physical_id] = logical_id
        return ProviderResult(physical_id, {'Arn': f'arn:fake:{physical_id}'})

    def update(self, physical_id, properties, changes):
        self._record('update', self.owners.get(physical_id, physical_id))
        self.resources[physical_id] = copy.deepcopy(properties)
        return {'Arn': f'arn:fake:{physical_id}'}

    def delete(self, physical_id):
        self._record('delete', self.owners.get(physical_id, physical_id))
        self.resources.pop(physical_id, None)


def stack_template() -> dict:
    """Bucket and Table without dependencies, Policy depending on both."""
    return {
        'Description': 'State storage stack',
        'Parameters': {
            'Env': {'Type': 'String', 'Default': 'dev', 'AllowedValues': ['dev', 'prod']},
            'TableClass': {'Type': 'String', 'Default': 'STANDARD'},
        },
        'Conditions': {
            'IsProd': {'Fn::Equals': ['prod', {'Ref': 'Env'}]},
        },
        'Resources': {
            'Bucket': {
                'Type': 'Test::Bucket',
                'DeletionPolicy': 'Retain',
                'Properties': {
                    'Name': {'Fn::Sub': 'state-${Env}'},
                    'Versioning': {'Fn::If': ['IsProd', 'Enabled', {'Ref': 'AWS::NoValue'}]},
                },
            },
            'Table': {
                'Type': 'Test::Table',
                'Properties': {
                    'KeySchema': 'LockID',
                    'TableClass': {'Ref': 'TableClass'},
                },
            },
            'Policy': {
                'Type': 'Test::Policy',
                'Properties': {
                    'Resources': [
                        {'Fn::GetAtt': ['Bucket', 'Arn']},
                        {'Fn::GetAtt': 'Table.Arn'},
                    ],
                },
            },
        },
        'Outputs': {
            'BucketName': {'Value': {'Ref': 'Bucket'}},
            'PolicyArn': {'Value': {'Fn::GetAtt': 'Policy.Arn'}},
        },
    }


@pytest.fixture
def template_data():
    """Fresh copy of the bucket/table/policy template dict."""
    return stack_template()


@pytest.fixture
def memory_store():
    return MemoryStateStore()


@pytest.fixture
def fake_provider():
    return FakeProvider(replace_properties=['KeySchema'])


@pytest.fixture
def registry(fake_provider):
    reg = ProviderRegistry()
    reg.register('*', fake_provider)
    return reg


@pytest.fixture
def s3_template_path():
    """The example state-storage template shipped in examples/."""
    return EXAMPLES_DIR / 's3-tfstate.yaml'


@pytest.fixture
def aws_pseudo():
    return {
        'AWS::Partition': 'aws',
        'AWS::Region': 'us-east-1',
        'AWS::AccountId': '123456789012',
    }


def plan_template(data, store, registry, parameters=None, stack='test', refresh=False):
    """Build graph, load state and plan; returns (graph, snapshot, plan)."""
    graph = ResourceGraph(Template.from_dict(data), parameters)
    snapshot = StateSnapshot.load(store, stack)
    plan = PlanEngine(snapshot, registry, graph, refresh=refresh).plan()
    return graph, snapshot, plan


def apply_template(data, store, registry, parameters=None, stack='test'):
    """Plan and apply a template under a fresh lock; returns (plan, result)."""
    lock = LockManager(store, stack, holder='tester')
    lock.acquire()
    graph, snapshot, plan = plan_template(data, store, registry, parameters, stack)
    result = ApplyExecutor(snapshot, store, registry, lock, graph).apply(plan)
    return plan, result
