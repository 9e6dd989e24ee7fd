"""Tests for run configuration."""

import json
from pathlib import Path

import pytest

from tools.tree_backup.archive import CompressionType, Compressor
from tools.tree_backup.config import BackupConfig, LogVerbosity, config_field_names, load_config_file
from tools.tree_backup.errors import ConfigurationError, PreconditionError

from conftest import write_tree


class TestBackupConfig:
    """Test BackupConfig coercion and validation."""

    def test_coerces_strings(self, tmp_path):
        """Test that raw file or CLI values become typed fields."""
        config = BackupConfig(
            sources=[str(tmp_path)],
            destination=str(tmp_path / "dest"),
            compression="XZ",
            compressor="external",
            log_verbosity="debug",
            notify_to="a@example.com, b@example.com",
        )

        assert config.sources == [tmp_path]
        assert isinstance(config.destination, Path)
        assert config.compression is CompressionType.XZ
        assert config.compressor is Compressor.EXTERNAL
        assert config.log_verbosity is LogVerbosity.DEBUG
        assert config.notify_to == ["a@example.com", "b@example.com"]

    def test_invalid_enum_value(self, tmp_path):
        """Test that an unknown compression name is a configuration error."""
        with pytest.raises(ConfigurationError, match="expected one of: none, gzip, bzip2, xz"):
            BackupConfig(sources=[tmp_path], destination=tmp_path, compression="zstd")

    def test_valid_config(self, source_tree, destination):
        """Test that a sane configuration validates."""
        BackupConfig(sources=[source_tree], destination=destination).validate()

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"retain_versions": 0}, "retain_versions must be at least 1"),
            ({"workers": 0}, "workers must be at least 1"),
            ({"prefix": "a/b"}, "Invalid generation prefix"),
            ({"prefix": ""}, "Invalid generation prefix"),
            ({"notify": True}, "Notification requires"),
        ],
    )
    def test_invalid_values(self, source_tree, destination, overrides, message):
        """Test rejection of out-of-range values."""
        config = BackupConfig(sources=[source_tree], destination=destination, **overrides)
        with pytest.raises(ConfigurationError, match=message):
            config.validate()

    def test_no_sources(self, destination):
        """Test that an empty source list is rejected."""
        with pytest.raises(ConfigurationError, match="At least one source"):
            BackupConfig(sources=[], destination=destination).validate()

    def test_missing_source(self, tmp_path, destination):
        """Test that a missing source is a precondition failure."""
        with pytest.raises(PreconditionError, match="Source path does not exist"):
            BackupConfig(sources=[tmp_path / "missing"], destination=destination).validate()

    def test_source_is_file(self, tmp_path, destination):
        """Test that a file source is a precondition failure."""
        source = tmp_path / "file.txt"
        source.write_text("x")
        with pytest.raises(PreconditionError, match="not a directory"):
            BackupConfig(sources=[source], destination=destination).validate()

    def test_missing_destination(self, source_tree, tmp_path):
        """Test that a missing destination is a precondition failure."""
        with pytest.raises(PreconditionError, match="Destination path does not exist"):
            BackupConfig(sources=[source_tree], destination=tmp_path / "nowhere").validate()

    def test_destination_inside_source(self, source_tree):
        """Test that backing up into a source tree is refused."""
        inside = source_tree / "backups"
        inside.mkdir()
        with pytest.raises(ConfigurationError, match="is inside source"):
            BackupConfig(sources=[source_tree], destination=inside).validate()

    def test_sources_with_same_name(self, tmp_path, destination):
        """Test that two sources ending in the same folder name are refused."""
        one = write_tree(tmp_path / "one" / "project", {"readme.txt": "from one"})
        two = write_tree(tmp_path / "two" / "project", {"readme.txt": "from two"})

        with pytest.raises(ConfigurationError, match="share the name 'project'"):
            BackupConfig(sources=[one, two], destination=destination).validate()

    def test_source_inside_another_source(self, source_tree, destination):
        """Test that nested sources are refused."""
        with pytest.raises(ConfigurationError, match="is inside source"):
            BackupConfig(sources=[source_tree, source_tree / "src"], destination=destination).validate()

    def test_smtp_login_fields(self, tmp_path):
        """Test that SMTP credentials are part of the configuration."""
        config = BackupConfig(
            sources=[tmp_path], destination=tmp_path, smtp_username="backup", smtp_password="secret"
        )

        assert config.smtp_username == "backup"
        assert config.smtp_password == "secret"
        assert {"smtp_username", "smtp_password"} <= set(config_field_names())

    def test_missing_staging_dir(self, source_tree, destination, tmp_path):
        """Test that staging requires an existing staging directory."""
        config = BackupConfig(
            sources=[source_tree], destination=destination, stage=True, staging_dir=tmp_path / "nope"
        )
        with pytest.raises(PreconditionError, match="Staging directory"):
            config.validate()


class TestLoadConfigFile:
    """Test JSON config files."""

    def test_load(self, tmp_path):
        """Test reading known keys."""
        path = tmp_path / "backup.json"
        path.write_text(json.dumps({"retain_versions": 5, "exclude_patterns": ["*/tmp"]}))

        assert load_config_file(path) == {"retain_versions": 5, "exclude_patterns": ["*/tmp"]}

    def test_unknown_key(self, tmp_path):
        """Test that typos in keys are reported."""
        path = tmp_path / "backup.json"
        path.write_text(json.dumps({"retain": 5}))

        with pytest.raises(ConfigurationError, match="Unknown config key.*retain"):
            load_config_file(path)

    def test_invalid_json(self, tmp_path):
        """Test that malformed JSON is a configuration error."""
        path = tmp_path / "backup.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config_file(path)

    def test_not_an_object(self, tmp_path):
        """Test that a top-level list is rejected."""
        path = tmp_path / "backup.json"
        path.write_text("[1, 2]")

        with pytest.raises(ConfigurationError, match="must contain a JSON object"):
            load_config_file(path)

    def test_missing_file(self, tmp_path):
        """Test that an unreadable file is a configuration error."""
        with pytest.raises(ConfigurationError, match="Cannot read config file"):
            load_config_file(tmp_path / "absent.json")

    def test_field_names(self):
        """Test that config keys mirror the dataclass fields."""
        names = config_field_names()
        assert "sources" in names
        assert "retain_versions" in names
        assert "smtp_host" in names
