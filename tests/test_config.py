"""Tests for configuration, utilities and logging setup."""
import logging

import pytest

from wfo_client.sync_service import load_config, save_config
from wfo_shared.logging_config import (WorkforceFormatter, set_log_level,
                                       setup_logging)
from wfo_shared.models import SyncConfig
from wfo_shared.utils import isoformat, parse_datetime, to_int_optional


class TestSyncConfig:

    def test_defaults(self):
        config = SyncConfig()
        assert config.sync_interval == 300
        assert config.max_retries == 3
        assert config.location_queue_limit == 50

    def test_url_normalised(self):
        assert SyncConfig(supabase_url="https://x.supabase.co/").supabase_url == "https://x.supabase.co"

    @pytest.mark.parametrize('kwargs', [
        {'supabase_url': 'x.supabase.co'},
        {'sync_interval': 1},
        {'timeout': 0},
        {'max_retries': 0},
        {'location_interval': -1},
        {'location_queue_limit': 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_from_dict_ignores_unknown_keys(self):
        assert SyncConfig.from_dict({'timeout': 20, 'theme': 'dark'}).timeout == 20

    def test_save_and_load(self, store):
        save_config(store, SyncConfig(supabase_url="https://x.supabase.co", api_key="k", max_retries=5))

        loaded = load_config(store)

        assert loaded.supabase_url == "https://x.supabase.co"
        assert loaded.api_key == "k"
        assert loaded.max_retries == 5

    def test_load_falls_back_on_garbage(self, store):
        store.set_setting('sync_interval', 'soon')
        assert load_config(store).sync_interval == 300


class TestUtils:

    def test_isoformat_utc(self):
        parsed = parse_datetime('2024-06-01T09:30:00Z')
        assert isoformat(parsed) == '2024-06-01T09:30:00Z'

    def test_parse_invalid(self):
        assert parse_datetime('yesterday') is None
        assert parse_datetime('') is None

    def test_to_int_optional(self):
        assert to_int_optional('42') == 42
        assert to_int_optional('') is None
        assert to_int_optional('x') is None


class TestLogging:

    def test_setup_logging_is_idempotent(self):
        first = setup_logging('TESTCOMP')
        second = setup_logging('TESTCOMP')

        assert first is second
        assert first.name == 'workforceone.testcomp'
        assert len(first.handlers) == 1

    def test_set_log_level(self):
        logger = setup_logging('LEVELCOMP')

        set_log_level('DEBUG')
        assert logger.level == logging.DEBUG
        assert all(h.level == logging.DEBUG for h in logger.handlers)

        set_log_level('INFO')
        assert logger.level == logging.INFO

    def test_formatter_tags_component(self):
        formatter = WorkforceFormatter('SYNC', use_colors=False)
        record = logging.LogRecord('x', logging.INFO, __file__, 1, 'hello', None, None)

        assert '[SYNC] [INFO] hello' in formatter.format(record)
