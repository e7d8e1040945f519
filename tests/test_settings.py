import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from llepub.settings import (
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_FETCH_TIMEOUT,
    USER_AGENT,
    load_settings,
    read_env,
)


class ReadEnvTests(unittest.TestCase):
    def test_read_env_prefers_plain_value(self) -> None:
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file")
            file_path = tmp.name
        try:
            with mock.patch.dict(
                os.environ,
                {"LLEPUB_SAMPLE": "from-env", "LLEPUB_SAMPLE_FILE": file_path},
            ):
                self.assertEqual(read_env("LLEPUB_SAMPLE"), "from-env")
        finally:
            Path(file_path).unlink(missing_ok=True)

    def test_read_env_supports_file_suffix(self) -> None:
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False) as tmp:
            tmp.write("from-file\n")
            file_path = tmp.name
        try:
            with mock.patch.dict(os.environ, {"LLEPUB_SAMPLE_FILE": file_path}):
                os.environ.pop("LLEPUB_SAMPLE", None)
                self.assertEqual(read_env("LLEPUB_SAMPLE"), "from-file")
        finally:
            Path(file_path).unlink(missing_ok=True)

    def test_read_env_missing_file_uses_default(self) -> None:
        with mock.patch.dict(os.environ, {"LLEPUB_SAMPLE_FILE": "/nonexistent/llepub-secret"}):
            os.environ.pop("LLEPUB_SAMPLE", None)
            self.assertEqual(read_env("LLEPUB_SAMPLE", "fallback"), "fallback")


class LoadSettingsTests(unittest.TestCase):
    def test_defaults_without_environment(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.fetch_timeout, DEFAULT_FETCH_TIMEOUT)
        self.assertEqual(settings.user_agent, USER_AGENT)
        self.assertEqual(settings.compression_level, DEFAULT_COMPRESSION_LEVEL)

    def test_environment_overrides(self) -> None:
        env = {
            "LLEPUB_FETCH_TIMEOUT": "2.5",
            "LLEPUB_USER_AGENT": "llepub-tests/1.0",
            "LLEPUB_COMPRESSION_LEVEL": "9",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.fetch_timeout, 2.5)
        self.assertEqual(settings.user_agent, "llepub-tests/1.0")
        self.assertEqual(settings.compression_level, 9)

    def test_invalid_values_fall_back(self) -> None:
        env = {
            "LLEPUB_FETCH_TIMEOUT": "-1",
            "LLEPUB_COMPRESSION_LEVEL": "12",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.fetch_timeout, DEFAULT_FETCH_TIMEOUT)
        self.assertEqual(settings.compression_level, DEFAULT_COMPRESSION_LEVEL)

        with mock.patch.dict(os.environ, {"LLEPUB_FETCH_TIMEOUT": "soon"}, clear=True):
            self.assertEqual(load_settings().fetch_timeout, DEFAULT_FETCH_TIMEOUT)


if __name__ == "__main__":
    unittest.main()
