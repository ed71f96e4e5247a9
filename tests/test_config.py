"""
BulkHelpersConfig validation happens at construction time.
"""

import pytest

import config
from config import BulkHelpersConfig
from errors import ConfigurationError


def _factory():
    raise AssertionError("not called in these tests")


class TestValidation:

    def test_defaults_are_valid(self):
        cfg = BulkHelpersConfig()
        assert cfg.schema_copy_mode == config.SCHEMA_COPY_INSIDE_TRANSACTION
        assert not cfg.is_concurrent_connection_enabled

    @pytest.mark.parametrize("overrides", [
        {"batch_size": 0},
        {"per_batch_timeout_seconds": -1},
        {"max_concurrent_connections": 0},
        {"schema_copy_mode": "sideways"},
        {"loading_schema": ""},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            BulkHelpersConfig(**overrides)

    def test_same_scratch_schema_needs_unique_names(self):
        with pytest.raises(ConfigurationError, match="collide"):
            BulkHelpersConfig(loading_schema="stage", discarding_schema="STAGE", unique_table_names=False)
        BulkHelpersConfig(loading_schema="stage", discarding_schema="stage", unique_table_names=True)

    def test_outside_transaction_requires_concurrent_factory(self):
        with pytest.raises(ConfigurationError, match="concurrent"):
            BulkHelpersConfig(schema_copy_mode=config.SCHEMA_COPY_OUTSIDE_TRANSACTION)
        cfg = BulkHelpersConfig(
            schema_copy_mode=config.SCHEMA_COPY_OUTSIDE_TRANSACTION,
            concurrent_connection_factory=_factory,
        )
        assert cfg.copies_schema_outside_transaction

    def test_fulltext_handling_requires_concurrent_factory(self):
        with pytest.raises(ConfigurationError, match="Full-text"):
            BulkHelpersConfig(fulltext_index_handling_enabled=True)

    def test_with_concurrent_connections_returns_copy(self):
        base = BulkHelpersConfig()
        cfg = base.with_concurrent_connections(_factory, max_connections=3)
        assert cfg.is_concurrent_connection_enabled
        assert cfg.max_concurrent_connections == 3
        assert not base.is_concurrent_connection_enabled


class TestProcessDefaults:

    def teardown_method(self):
        config.reset_defaults()

    def test_configure_defaults_replaces_default(self):
        cfg = config.configure_defaults(batch_size=17)
        assert config.default_config() is cfg
        assert cfg.batch_size == 17

    def test_configure_defaults_validates(self):
        with pytest.raises(ConfigurationError):
            config.configure_defaults(batch_size=0)

    def test_reset_defaults(self):
        config.configure_defaults(batch_size=17)
        config.reset_defaults()
        assert config.default_config().batch_size == config.BULK_BATCH_SIZE
