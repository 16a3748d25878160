"""
Unit tests for the admin CLI.
"""

import asyncio
import json
import os
import tempfile

import pytest

from dbaas.eavdb_server import main as admin
from dbaas.eavdb_server.config import DriverConfig
from dbaas.eavdb_server.driver import EavDriver


class TestAdminCLI:
    """Tests for the eavdb-admin entry point."""

    @pytest.fixture
    def db_path(self, monkeypatch):
        monkeypatch.setattr(admin, "setup_logging", lambda config: None)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "eav.sqlite3")

            async def seed():
                async with EavDriver(DriverConfig.for_path(path)) as driver:
                    await driver.create("User@example", {"name": "alice"})
                    await driver.list("User@example", {"filter": {"name": "alice"}})

            asyncio.run(seed())
            yield path

    def run(self, capsys, *argv):
        status = admin.main(list(argv))
        return status, json.loads(capsys.readouterr().out)

    def test_resources(self, db_path, capsys):
        status, output = self.run(capsys, "--path", db_path, "resources")
        assert status == 0
        assert output == [{"name": "User", "domain": "example"}]

    def test_usage(self, db_path, capsys):
        status, output = self.run(capsys, "--path", db_path, "usage", "User@example")
        assert status == 0
        assert output["filter"] == {"name": 1}

    def test_drop(self, db_path, capsys):
        status, output = self.run(capsys, "--path", db_path, "drop", "User@example")
        assert status == 0
        assert output == {"dropped": "User@example"}

        _, output = self.run(capsys, "--path", db_path, "resources")
        assert output == []

    def test_unlock_all(self, db_path, capsys):
        status, output = self.run(capsys, "--path", db_path, "unlock-all")
        assert status == 0
        assert output == {"released": 0}

    def test_invalid_configuration(self, capsys):
        assert admin.main(["--path", ":memory:", "resources"]) == 1
        assert "Configuration error" in capsys.readouterr().err
