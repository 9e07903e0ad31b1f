import yaml

from pipeline_config import Config
from pipeline_models import ImportOptions


def test_missing_config_is_created_with_defaults(tmp_path):
    config = Config('config.yaml', working_dir=tmp_path)

    assert (tmp_path / 'config.yaml').exists()
    assert config.get('import', 'starting_number') == 400
    assert config.get('validation', 'cache_ttl_seconds') == 3600
    assert config.get('resolver', 'directory_ttl_seconds') == 1800


def test_existing_config_is_not_overwritten(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.dump({'import': {'max_channels': 25}, 'custom': {'flag': True}}))
    before = path.read_text()

    config = Config('config.yaml', working_dir=tmp_path)

    assert config.get('import', 'max_channels') == 25
    assert config.get('custom', 'flag') is True
    assert config.get('validation') == {}
    assert path.read_text() == before


def test_get_defaults_for_missing_values(tmp_path):
    (tmp_path / 'config.yaml').write_text(yaml.dump({'import': 'not-a-section'}))
    config = Config('config.yaml', working_dir=tmp_path)

    assert config.get('import', 'starting_number', 7) == 7
    assert config.get('validation') == {}
    assert config.get('validation', 'timeout', 8) == 8


def test_resolve_path(tmp_path):
    config = Config('config.yaml', working_dir=tmp_path)
    assert config.resolve_path('cache/x.json') == str(tmp_path / 'cache' / 'x.json')


def test_import_options_from_config(tmp_path):
    (tmp_path / 'config.yaml').write_text(yaml.dump({
        'import': {
            'starting_number': 900,
            'max_channels': 10,
            'validate_streams': False,
            'filter_countries': ['US'],
        }
    }))
    options = ImportOptions.from_config(Config('config.yaml', working_dir=tmp_path))

    assert options.starting_number == 900
    assert options.max_channels == 10
    assert options.validate_streams is False
    assert options.filter_countries == ['US']
    assert options.skip_duplicates is True
