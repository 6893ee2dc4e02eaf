"""Tests for resolver/evaluator.py - condition and property evaluation."""

import datetime
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import (
    CyclicConditionError,
    ExpressionError,
    UnknownConditionError,
    UnknownPlaceholderError,
    UnresolvedReferenceError,
)
from resolver.base import OMIT, Computed
from resolver.evaluator import ExpressionEvaluator


class StaticLookup:
    """Lookup backed by fixed ids/attributes."""

    def __init__(self, ids=None, attrs=None):
        self.ids = ids or {}
        self.attrs = attrs or {}

    def physical_id(self, logical_id):
        return self.ids[logical_id]

    def attribute(self, logical_id, name):
        return self.attrs[(logical_id, name)]


@pytest.fixture
def evaluator(aws_pseudo):
    return ExpressionEvaluator(
        parameters={'Env': 'prod', 'Count': 3, 'Key': ''},
        conditions={
            'IsProd': {'Fn::Equals': ['prod', {'Ref': 'Env'}]},
            'IsDev': {'Fn::Not': [{'Condition': 'IsProd'}]},
            'HasKey': {'Fn::Not': [{'Fn::Equals': ['', {'Ref': 'Key'}]}]},
            'ProdNoKey': {'Fn::And': [{'Condition': 'IsProd'}, {'Condition': 'IsDev'}]},
            'Either': {'Fn::Or': [{'Condition': 'IsProd'}, {'Condition': 'HasKey'}]},
        },
        pseudo_parameters=aws_pseudo,
        resources={'Bucket', 'Table'},
    )


class TestConditions:
    """Tests for condition evaluation."""

    def test_evaluate_all(self, evaluator):
        assert evaluator.evaluate_conditions() == {
            'IsProd': True,
            'IsDev': False,
            'HasKey': False,
            'ProdNoKey': False,
            'Either': True,
        }

    def test_number_compares_as_string(self):
        ev = ExpressionEvaluator({'Count': 1}, {'One': {'Fn::Equals': ['1', {'Ref': 'Count'}]}})
        assert ev.condition('One') is True

    def test_unknown_condition(self, evaluator):
        with pytest.raises(UnknownConditionError):
            evaluator.condition('Missing')

    def test_cyclic_condition(self):
        ev = ExpressionEvaluator({}, {
            'A': {'Fn::Not': [{'Condition': 'B'}]},
            'B': {'Fn::Not': [{'Condition': 'A'}]},
        })
        with pytest.raises(CyclicConditionError) as exc_info:
            ev.condition('A')
        assert exc_info.value.chain == ['A', 'B', 'A']
        assert exc_info.value.code == 'E202'

    def test_condition_cannot_reference_resource(self, evaluator):
        evaluator.conditions['ByBucket'] = {'Fn::Equals': ['x', {'Ref': 'Bucket'}]}
        with pytest.raises(UnresolvedReferenceError):
            evaluator.condition('ByBucket')

    def test_malformed_condition(self):
        ev = ExpressionEvaluator({}, {'Bad': {'Fn::Equals': ['only-one']}})
        with pytest.raises(ExpressionError):
            ev.condition('Bad')


class TestResolve:
    """Tests for property resolution."""

    def test_ref_parameter_and_pseudo(self, evaluator):
        assert evaluator.resolve({'Ref': 'Env'}) == 'prod'
        assert evaluator.resolve({'Ref': 'AWS::Region'}) == 'us-east-1'

    def test_ref_resource_without_lookup_is_computed(self, evaluator):
        assert evaluator.resolve({'Ref': 'Bucket'}) == Computed('Bucket')

    def test_ref_unknown(self, evaluator):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            evaluator.resolve({'Ref': 'Nope'}, source='Table')
        assert 'in Table' in str(exc_info.value)

    def test_getatt_with_lookup(self, evaluator):
        lookup = StaticLookup(attrs={('Bucket', 'Arn'): 'arn:aws:s3:::b'})
        assert evaluator.resolve({'Fn::GetAtt': ['Bucket', 'Arn']}, lookup) == 'arn:aws:s3:::b'

    def test_getatt_unknown_resource(self, evaluator):
        with pytest.raises(UnresolvedReferenceError):
            evaluator.resolve({'Fn::GetAtt': 'Queue.Arn'})

    def test_sub(self, evaluator):
        lookup = StaticLookup(ids={'Bucket': 'bucket-1'}, attrs={('Table', 'Arn'): 'arn:t'})
        result = evaluator.resolve(
            {'Fn::Sub': 'arn:${AWS::Partition}:${Bucket}/${Table.Arn}/${Count}'}, lookup)
        assert result == 'arn:aws:bucket-1/arn:t/3'

    def test_sub_escape_and_locals(self, evaluator):
        result = evaluator.resolve({'Fn::Sub': ['${!Literal}-${Name}', {'Name': {'Ref': 'Env'}}]})
        assert result == '${Literal}-prod'

    def test_sub_unknown_placeholder(self, evaluator):
        with pytest.raises(UnknownPlaceholderError) as exc_info:
            evaluator.resolve({'Fn::Sub': 'x-${Missing}'})
        assert exc_info.value.placeholder == 'Missing'

    def test_sub_computed_propagates(self, evaluator):
        assert evaluator.resolve({'Fn::Sub': '${Bucket.Arn}/*'}) == Computed('Bucket.Arn')

    def test_if_and_novalue(self, evaluator):
        props = {
            'Versioning': {'Fn::If': ['IsProd', 'Enabled', {'Ref': 'AWS::NoValue'}]},
            'Debug': {'Fn::If': ['IsDev', True, {'Ref': 'AWS::NoValue'}]},
            'List': ['a', {'Ref': 'AWS::NoValue'}, 'b'],
        }
        assert evaluator.resolve_properties(props) == {
            'Versioning': 'Enabled',
            'List': ['a', 'b'],
        }

    def test_whole_tree_omitted(self, evaluator):
        assert evaluator.resolve({'Ref': 'AWS::NoValue'}) is OMIT
        assert evaluator.resolve_properties({'Fn::If': ['IsDev', {'A': 1}, {'Ref': 'AWS::NoValue'}]}) == {}

    def test_untaken_branch_not_evaluated(self, evaluator):
        tree = {'Fn::If': ['IsProd', 'ok', {'Ref': 'DoesNotExist'}]}
        assert evaluator.resolve(tree) == 'ok'

    def test_join_and_select(self, evaluator):
        assert evaluator.resolve({'Fn::Join': ['-', ['a', {'Ref': 'Env'}, 2]]}) == 'a-prod-2'
        assert evaluator.resolve({'Fn::Select': [1, ['x', 'y']]}) == 'y'

    def test_select_out_of_range(self, evaluator):
        with pytest.raises(ExpressionError):
            evaluator.resolve({'Fn::Select': [5, ['x']]})

    def test_dates_become_strings(self, evaluator):
        assert evaluator.resolve({'Version': datetime.date(2012, 10, 17)}) == {'Version': '2012-10-17'}

    def test_properties_must_be_mapping(self, evaluator):
        with pytest.raises(ExpressionError):
            evaluator.resolve_properties({'Ref': 'Env'}, source='Bucket')

    def test_deterministic(self, evaluator):
        tree = {'B': {'Fn::Sub': '${Env}-${AWS::AccountId}'}, 'A': [{'Ref': 'Count'}]}
        assert evaluator.resolve(tree) == evaluator.resolve(tree)
        assert list(evaluator.resolve(tree)) == ['B', 'A']

    def test_example_template_conditions(self, s3_template_path, aws_pseudo):
        from template import load_template
        from validation import validate_parameters

        template = load_template(file_path=str(s3_template_path))
        params = validate_parameters(template, {'S3ServerSideEncryption': 'SSE-KMS'})
        ev = ExpressionEvaluator(params, template.conditions, aws_pseudo,
                                 set(template.resources))
        conds = ev.evaluate_conditions()
        assert conds['WithDefaultS3Encryption'] is False
        assert conds['WithDefaultS3EncryptionKey'] is True
        assert conds['WithPayPerRequest'] is True

        props = ev.resolve_properties(template.resources['StateStorageBucket'].properties)
        sse = props['BucketEncryption']['ServerSideEncryptionConfiguration'][0]
        assert sse['ServerSideEncryptionByDefault'] == {
            'SSEAlgorithm': 'aws:kms',
            'KMSMasterKeyID': 'arn:aws:kms:us-east-1:123456789012:alias/aws/s3',
        }

        table = ev.resolve_properties(template.resources['StateLockingTable'].properties)
        assert 'ProvisionedThroughput' not in table
        assert 'SSESpecification' not in table
