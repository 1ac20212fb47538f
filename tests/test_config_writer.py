"""Unit tests for ConfigWriter."""

import errno
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from unbound_rsh.cli import ConfigWriter, WriteError, WriteErrorKind

CONTENT = 'local-zone: "a.example" redirect\nlocal-data: "a.example A 10.0.0.1"\n'


class TestConfigWriterWrite:
    """Tests for ConfigWriter write functionality."""

    def test_write_creates_file_with_content(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"

        ConfigWriter(str(output)).write(CONTENT)

        assert output.read_text() == CONTENT

    def test_write_creates_parent_directories(self, tmp_path: Path) -> None:
        output = tmp_path / "nested" / "unbound" / "rsh.conf"

        ConfigWriter(str(output)).write(CONTENT)

        assert output.exists()

    def test_write_overwrites_existing_file(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"
        output.write_text('local-zone: "old.example" redirect\n')

        ConfigWriter(str(output)).write(CONTENT)

        assert output.read_text() == CONTENT
        assert "old.example" not in output.read_text()

    def test_write_leaves_no_temp_files(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"

        ConfigWriter(str(output)).write(CONTENT)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["rsh.conf"]

    def test_write_applies_mode(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"

        ConfigWriter(str(output), mode=0o640).write(CONTENT)

        assert stat.S_IMODE(os.stat(output).st_mode) == 0o640

    def test_write_same_content_twice_is_byte_identical(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"
        writer = ConfigWriter(str(output))

        writer.write(CONTENT)
        first = output.read_bytes()
        writer.write(CONTENT)

        assert output.read_bytes() == first


class TestConfigWriterErrors:
    """Failures keep the previous file intact and are classified."""

    def test_permission_error_is_classified(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"
        output.write_text("previous\n")

        with patch("unbound_rsh.cli.os.replace", side_effect=PermissionError("denied")):
            with pytest.raises(WriteError) as excinfo:
                ConfigWriter(str(output)).write(CONTENT)

        assert excinfo.value.kind is WriteErrorKind.PERMISSION
        assert output.read_text() == "previous\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["rsh.conf"]

    def test_io_error_is_classified(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"
        output.write_text("previous\n")

        with patch("unbound_rsh.cli.os.fsync", side_effect=OSError(errno.EIO, "I/O error")):
            with pytest.raises(WriteError) as excinfo:
                ConfigWriter(str(output)).write(CONTENT)

        assert excinfo.value.kind is WriteErrorKind.IO_FAILURE
        assert output.read_text() == "previous\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["rsh.conf"]

    def test_parent_is_a_file(self, tmp_path: Path) -> None:
        blocker = tmp_path / "unbound"
        blocker.write_text("not a directory")

        with pytest.raises(WriteError) as excinfo:
            ConfigWriter(str(blocker / "rsh.conf")).write(CONTENT)

        assert excinfo.value.kind is WriteErrorKind.IO_FAILURE


class TestConfigWriterPath:
    def test_path_is_pathlib_path(self, tmp_path: Path) -> None:
        output = tmp_path / "rsh.conf"

        writer = ConfigWriter(str(output))

        assert isinstance(writer.path, Path)
        assert writer.path == output
