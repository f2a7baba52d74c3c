"""Unit tests for configuration and project root resolution."""

import tempfile
from pathlib import Path

import pytest

from spec_mcp.config import Settings, locate_workspace_root, resolve_root
from spec_mcp.store import FileDocumentStore


class TestSettings:
    """Test cases for reading settings from the environment."""

    def test_defaults(self):
        """Test defaults apply with an empty environment."""
        settings = Settings.from_env({})

        assert settings.project_root is None
        assert settings.storage_dir == ".spec"
        assert settings.max_retries == 3
        assert settings.lock_timeout == 5.0
        assert settings.log_level == "INFO"
        assert settings.log_file is None

    def test_overrides(self):
        """Test every variable is honoured."""
        settings = Settings.from_env(
            {
                "SPEC_MCP_PROJECT_ROOT": "/tmp/project",
                "SPEC_MCP_STORAGE_DIR": ".specs",
                "SPEC_MCP_MAX_RETRIES": "5",
                "SPEC_MCP_LOCK_TIMEOUT": "0.5",
                "SPEC_MCP_LOG_LEVEL": "debug",
                "SPEC_MCP_LOG_FILE": "/tmp/spec.log",
            }
        )

        assert settings.project_root == "/tmp/project"
        assert settings.storage_dir == ".specs"
        assert settings.max_retries == 5
        assert settings.lock_timeout == 0.5
        assert settings.log_level == "DEBUG"
        assert settings.log_file == Path("/tmp/spec.log")

    @pytest.mark.parametrize(
        "name,value",
        [("SPEC_MCP_MAX_RETRIES", "many"), ("SPEC_MCP_MAX_RETRIES", "-1"), ("SPEC_MCP_LOCK_TIMEOUT", "0")],
    )
    def test_invalid_numbers(self, name, value):
        """Test malformed numeric settings are rejected."""
        with pytest.raises(ValueError, match=name):
            Settings.from_env({name: value})

    def test_store(self):
        """Test settings build a file store with their storage options."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = Settings(storage_dir=".x", lock_timeout=1.0).store(Path(temp_dir))

        assert isinstance(store, FileDocumentStore)
        assert store.storage_dir == ".x"
        assert store.lock_timeout == 1.0


class TestResolveRoot:
    """Test cases for choosing the project root."""

    @pytest.fixture
    def temp_dir(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir).resolve()

    def test_explicit_root_wins(self, temp_dir):
        """Test an explicit root is used even when the environment names another."""
        settings = Settings(project_root="/does/not/exist")
        assert resolve_root(str(temp_dir), settings) == temp_dir

    def test_explicit_root_must_exist(self, temp_dir):
        """Test a missing explicit root is an error."""
        with pytest.raises(ValueError, match="does not exist"):
            resolve_root(str(temp_dir / "missing"), Settings())

    def test_environment_root(self, temp_dir):
        """Test the environment root is used without an argument."""
        assert resolve_root(None, Settings(project_root=str(temp_dir))) == temp_dir

    def test_environment_root_must_exist(self, temp_dir):
        """Test a missing environment root is an error."""
        with pytest.raises(ValueError, match="SPEC_MCP_PROJECT_ROOT"):
            resolve_root(None, Settings(project_root=str(temp_dir / "missing")))

    def test_detects_ancestor_with_storage_dir(self, temp_dir):
        """Test the nearest ancestor holding the storage directory is found."""
        (temp_dir / ".spec").mkdir()
        nested = temp_dir / "src" / "pkg"
        nested.mkdir(parents=True)

        assert locate_workspace_root(".spec", nested) == temp_dir
        assert resolve_root(None, Settings(), cwd=nested) == temp_dir
