"""Tests for environment variable substitution."""

import pytest

from confsource.env import render_env, render_env_tree

ENVIRON = {"HOST": "db.internal", "PORT": "5432", "EMPTY": ""}


class TestRenderEnv:
    """Test ``${VAR}`` rendering in strings."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("${HOST}", "db.internal"),
            ("${HOST}:${PORT}", "db.internal:5432"),
            ("postgres://${HOST}/app", "postgres://db.internal/app"),
            ("${MISSING}", ""),
            ("${MISSING:-localhost}", "localhost"),
            ("${EMPTY:-fallback}", "fallback"),
            ("${HOST:-localhost}", "db.internal"),
            ("${MISSING:-}", ""),
            ("plain text", "plain text"),
            ("$HOST", "$HOST"),
        ],
    )
    def test_render(self, value, expected):
        assert render_env(value, ENVIRON) == expected

    def test_escape(self):
        """``$${VAR}`` is kept as a literal reference."""
        assert render_env("$${HOST}", ENVIRON) == "${HOST}"
        assert render_env("cost: $${PORT} at ${HOST}", ENVIRON) == "cost: ${PORT} at db.internal"

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("CONFSOURCE_TEST_TOKEN", "s3cret")

        assert render_env("token=${CONFSOURCE_TEST_TOKEN}") == "token=s3cret"


class TestRenderEnvTree:
    """Test rendering across a decoded tree."""

    def test_nested_values(self):
        tree = {
            "server": {"host": "${HOST}", "port": 8080},
            "replicas": ["${HOST}", "${MISSING:-standby}"],
            "${HOST}": True,
        }

        rendered = render_env_tree(tree, ENVIRON)

        assert rendered == {
            "server": {"host": "db.internal", "port": 8080},
            "replicas": ["db.internal", "standby"],
            "${HOST}": True,
        }
        assert tree["server"]["host"] == "${HOST}"
