import pytest
from svcorch.UTILS.string_interpolation import EnvironmentInterpolator
from svcorch.errors import ConfigError

CONTEXT = {'SET': 'value', 'EMPTY': ''}


@pytest.mark.parametrize('template,expected', [
    ('${SET}', 'value'),
    ('$SET/suffix', 'value/suffix'),
    ('${UNSET:-fallback}', 'fallback'),
    ('${EMPTY:-fallback}', 'fallback'),
    ('${EMPTY-fallback}', ''),
    ('${UNSET-fallback}', 'fallback'),
    ('${SET:+alt}', 'alt'),
    ('${EMPTY:+alt}', ''),
    ('${EMPTY+alt}', 'alt'),
    ('$${SET}', '${SET}'),
    ('cost: $$5', 'cost: $5'),
    ('no variables', 'no variables'),
])
def test_interpolate(template, expected):
    assert EnvironmentInterpolator(CONTEXT).interpolate(template) == expected


def test_unset_records_missing():
    interpolator = EnvironmentInterpolator(CONTEXT)
    assert interpolator.interpolate('${UNSET}/${UNSET}/$OTHER') == '//'
    assert interpolator.missing == ['UNSET', 'OTHER']


def test_strict_mode_raises():
    with pytest.raises(KeyError):
        EnvironmentInterpolator(CONTEXT, strict=True).interpolate('${UNSET}')


def test_required_variable():
    with pytest.raises(ConfigError, match='need it'):
        EnvironmentInterpolator(CONTEXT).interpolate('${EMPTY:?need it}')
    assert EnvironmentInterpolator(CONTEXT).interpolate('${EMPTY?need it}') == ''


def test_interpolate_tree_leaves_keys_and_scalars():
    tree = {'${SET}': ['${SET}', 5, None, {'k': '$SET'}]}
    assert EnvironmentInterpolator(CONTEXT).interpolate_tree(tree) == {'${SET}': ['value', 5, None, {'k': 'value'}]}
