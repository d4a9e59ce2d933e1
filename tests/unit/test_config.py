"""
Unit tests for config module.
"""

import pytest
from hvac.exceptions import VaultError

from mongodiff.utils.config import ConfigError, DiffConfig, load_config, load_run_config


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "diff.yaml"
    path.write_text(
        "source_uri: mongodb://src:27017\n"
        "dest_uri: mongodb://dst:27017\n"
        "threads: 4\n"
        "include_namespaces:\n"
        "  - app.users\n"
        "  - app.orders\n"
        "unknown_key: 1\n"
    )
    return str(path)


class TestLoadConfig:
    """Test layered config loading."""

    def test_defaults(self):
        config = load_config(environ={})

        assert config.threads == 8
        assert config.batch_size == 10000
        assert config.include_namespaces == []
        assert config.status_db_name == "mongodiff"
        assert config.status_coll_name == "diff_status"

    def test_yaml_file(self, config_file, caplog):
        config = load_config(config_file, environ={})

        assert config.source_uri == "mongodb://src:27017"
        assert config.threads == 4
        assert config.include_namespaces == ["app.users", "app.orders"]
        assert "unknown_key" in caplog.text

    def test_env_overrides_file(self, config_file):
        """Test that MONGODIFF_* variables win over the file."""
        environ = {
            "MONGODIFF_THREADS": "12",
            "MONGODIFF_INCLUDE_NAMESPACES": "app.a, app.b",
            "MONGODIFF_REPORT_INTERVAL": "2.5",
        }

        config = load_config(config_file, environ=environ)

        assert config.threads == 12
        assert config.include_namespaces == ["app.a", "app.b"]
        assert config.report_interval == 2.5

    def test_overrides_win_and_none_is_ignored(self, config_file):
        """Test that explicit overrides win, except None values."""
        config = load_config(
            config_file,
            environ={"MONGODIFF_THREADS": "12"},
            overrides={"threads": 2, "dest_uri": None, "batch_size": 500}
        )

        assert config.threads == 2
        assert config.batch_size == 500
        assert config.dest_uri == "mongodb://dst:27017"

    def test_malformed_number(self):
        with pytest.raises(ConfigError, match="threads must be an integer"):
            load_config(environ={"MONGODIFF_THREADS": "many"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to read config file"):
            load_config(str(tmp_path / "absent.yaml"), environ={})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config(str(path), environ={})


class TestDiffConfig:
    """Test validation and derived settings."""

    def test_validate_ok(self):
        config = DiffConfig(source_uri="mongodb://a", dest_uri="mongodb://b")
        assert config.validate() is config

    @pytest.mark.parametrize("changes,message", [
        ({"source_uri": None}, "source_uri is required"),
        ({"dest_uri": ""}, "dest_uri is required"),
        ({"threads": 0}, "threads must be at least 1"),
        ({"batch_size": 0}, "batch_size must be at least 1"),
        ({"report_interval": 0}, "report_interval must be positive"),
        ({"submit_timeout": -1}, "submit_timeout must be positive"),
        ({"include_namespaces": ["users"]}, "Invalid namespace"),
    ])
    def test_validate_errors(self, changes, message):
        values = {"source_uri": "mongodb://a", "dest_uri": "mongodb://b"}
        values.update(changes)

        with pytest.raises(ConfigError, match=message):
            DiffConfig(**values).validate()

    def test_status_uri_defaults_to_dest(self):
        config = DiffConfig(dest_uri="mongodb://b")
        assert config.status_uri == "mongodb://b"

        config.status_db_uri = "mongodb://status"
        assert config.status_uri == "mongodb://status"

    def test_resolve_secrets_without_path(self):
        """Test that no Vault lookup happens without vault_path."""
        class Unreachable:
            def connection_uris(self, path):
                raise AssertionError("should not be called")

        config = DiffConfig()
        assert config.resolve_secrets(Unreachable()) is config

    @pytest.mark.parametrize("values", [
        {"dest_uri": "mongodb://b"},
        {"status_db_uri": "mongodb://status"},
    ])
    def test_validate_status_only(self, values):
        """Test that status-only commands need no cluster connection strings."""
        config = DiffConfig(**values)
        assert config.validate(clusters=False) is config

    def test_validate_requires_status_uri(self):
        with pytest.raises(ConfigError, match="status_db_uri or dest_uri is required"):
            DiffConfig().validate(clusters=False)


class FakeVault:
    """Vault client stand-in serving one secret."""

    def __init__(self, uris=None, error=None):
        self.uris = uris or {}
        self.error = error
        self.closed = False

    def connection_uris(self, path):
        if self.error is not None:
            raise self.error
        return self.uris

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True


class TestLoadRunConfig:
    """Test loading, secret resolution and validation together."""

    def test_status_without_clusters(self):
        config = load_run_config(overrides={"status_db_uri": "mongodb://status"}, clusters=False, environ={})
        assert config.status_uri == "mongodb://status"

    def test_diff_requires_clusters(self):
        with pytest.raises(ConfigError, match="source_uri is required"):
            load_run_config(overrides={"dest_uri": "mongodb://b"}, environ={})

    def test_uris_from_vault(self):
        vault = FakeVault({"source_uri": "mongodb://a", "dest_uri": "mongodb://b"})

        config = load_run_config(overrides={"vault_path": "mongodiff/prod"}, environ={}, vault_factory=lambda: vault)

        assert config.source_uri == "mongodb://a"
        assert config.dest_uri == "mongodb://b"
        assert vault.closed is True

    def test_missing_vault_address_is_config_error(self):
        def factory():
            raise ValueError("No Vault address: pass url or set VAULT_ADDR")

        with pytest.raises(ConfigError, match="No Vault address"):
            load_run_config(overrides={"vault_path": "mongodiff/prod"}, environ={}, vault_factory=factory)

    def test_vault_error_propagates(self):
        vault = FakeVault(error=VaultError("permission denied"))

        with pytest.raises(VaultError, match="permission denied"):
            load_run_config(overrides={"vault_path": "mongodiff/prod"}, environ={}, vault_factory=lambda: vault)
        assert vault.closed is True
