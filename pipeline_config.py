"""
pipeline_config.py
Configuration management for the playlist importer
"""

import os
from pathlib import Path

import yaml


DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)


class Config:
    """Configuration management"""

    def __init__(self, config_file='config.yaml', working_dir=None):
        self.working_dir = Path(working_dir) if working_dir else Path(config_file).parent
        self.config_file = Path(self.working_dir, Path(config_file).name)
        self.config = self._load_config()

    def _load_config(self):
        """Load configuration from YAML file"""
        if not os.path.exists(self.config_file):
            # Create default config
            default_config = self._get_default_config()
            Path(self.config_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.dump(default_config, f, default_flow_style=False)
            return default_config

        with open(self.config_file, 'r') as f:
            loaded = yaml.safe_load(f)
        return loaded or {}

    def _get_default_config(self):
        """Get default configuration"""
        return {
            'import': {
                'starting_number': 400,
                'max_channels': None,
                'skip_duplicates': True,
                'validate_streams': True,
                'force_revalidate': False,
                'filter_countries': [],
                'filter_languages': []
            },
            'validation': {
                'batch_size': 10,
                'timeout': 8,
                'batch_delay': 0.05,
                'cache_ttl_seconds': 3600,
                'cache_file': 'cache/validation_cache.json',
                'require_manifest_markers': True,
                'max_body_bytes': 65536
            },
            'resolver': {
                'directory_ttl_seconds': 1800,
                'timeout': 15
            },
            'fetch': {
                'timeout': 30,
                'user_agent': DEFAULT_USER_AGENT
            }
        }

    def get(self, section, key=None, default=None):
        """Get configuration value"""
        if key is None:
            return self.config.get(section, default if default is not None else {})
        section_data = self.config.get(section, {})
        if not isinstance(section_data, dict):
            return default
        return section_data.get(key, default)

    def resolve_path(self, relative_path):
        """Resolve a path within the working directory"""
        return str(Path(self.working_dir, relative_path))
