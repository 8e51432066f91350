import logging
import os
import sys
import tempfile
import unittest
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from unittest import mock

from pydantic import ValidationError

from ledger_scout.config import AppConfig, ConfigLoadRequest, YamlConfigLoader
from ledger_scout.config.models import DEFAULT_GATEWAYS, LoggingSettings
from ledger_scout.logging import LOG_FORMAT, init_logging

_YAML = """
gateways:
  templates:
    - https://first.test/ipfs/{cid}
  request_timeout_seconds: 5
cache:
  content_ttl_seconds: 600
scanner:
  batch_size: 20
  fallback_name_template: "Item #{index}"
"""


class YamlConfigLoaderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.yaml_path = Path(self._tmp.name) / "config.yaml"
        self.yaml_path.write_text(_YAML, encoding="utf-8")
        self.request = ConfigLoadRequest(yaml_path=str(self.yaml_path), dotenv_path=None)

    async def _load(self, env: dict) -> AppConfig:
        clean = {k: v for k, v in os.environ.items() if not k.startswith("LEDGER_SCOUT__")}
        clean.update(env)
        with mock.patch.dict(os.environ, clean, clear=True):
            return await YamlConfigLoader().load(self.request)

    async def test_yaml_values_and_defaults(self) -> None:
        config = await self._load({})

        self.assertEqual(list(config.gateways.templates), ["https://first.test/ipfs/{cid}"])
        self.assertEqual(config.gateways.request_timeout_seconds, 5)
        self.assertEqual(config.cache.content_ttl_seconds, 600)
        self.assertEqual(config.cache.failure_ttl_seconds, 60)
        self.assertEqual(config.scanner.batch_size, 20)
        self.assertEqual(config.scanner.fallback_name_template, "Item #{index}")
        self.assertEqual(config.ledger.base_url, "")

    async def test_env_overrides_win_over_yaml(self) -> None:
        config = await self._load(
            {
                "LEDGER_SCOUT__CACHE__CONTENT_TTL_SECONDS": "900",
                "LEDGER_SCOUT__LEDGER__BASE_URL": "http://ledger.test",
                "LEDGER_SCOUT__LOGGING__FILE__PATH": "logs/app.log",
                "LEDGER_SCOUT__GATEWAYS__TEMPLATES": '["https://a.test/ipfs/{cid}", "https://b.test/ipfs/{cid}"]',
            }
        )

        self.assertEqual(config.cache.content_ttl_seconds, 900)
        self.assertEqual(config.ledger.base_url, "http://ledger.test")
        self.assertEqual(config.logging.file.path, "logs/app.log")
        self.assertEqual(
            list(config.gateways.templates),
            ["https://a.test/ipfs/{cid}", "https://b.test/ipfs/{cid}"],
        )

    async def test_unknown_override_path_is_rejected(self) -> None:
        with self.assertRaises(KeyError):
            await self._load({"LEDGER_SCOUT__CACHE__NO_SUCH_KEY": "1"})

    async def test_override_into_scalar_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            await self._load({"LEDGER_SCOUT__SCANNER__BATCH_SIZE__X": "1"})

    async def test_inconsistent_ttls_fail_validation(self) -> None:
        with self.assertRaises(ValidationError):
            await self._load({"LEDGER_SCOUT__CACHE__FAILURE_TTL_SECONDS": "601"})

    async def test_empty_yaml_gives_defaults(self) -> None:
        self.yaml_path.write_text("", encoding="utf-8")

        config = await self._load({})

        self.assertEqual(tuple(config.gateways.templates), DEFAULT_GATEWAYS)
        self.assertEqual(config.scanner.default_bound, 1000)


class InitLoggingTests(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_levels = {
            name: logging.getLogger(name).level
            for name in ("", "aiohttp.client", "asyncio", "ledger_scout.discovery")
        }

        def restore() -> None:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                if handler not in saved_handlers:
                    handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            for name, level in saved_levels.items():
                logging.getLogger(name).setLevel(level)

        self.addCleanup(restore)

    def test_invalid_level_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            init_logging(LoggingSettings(level="LOUD"))

    def test_invalid_override_level_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            init_logging(LoggingSettings(loggers={"ledger_scout.discovery": "chatty"}))

    def test_console_goes_to_stderr_and_libraries_are_quieted(self) -> None:
        init_logging(LoggingSettings(level="info"))

        root = logging.getLogger()
        self.assertEqual(root.level, logging.INFO)
        self.assertEqual(len(root.handlers), 1)
        self.assertIs(root.handlers[0].stream, sys.stderr)
        self.assertEqual(root.handlers[0].formatter._fmt, LOG_FORMAT)
        self.assertEqual(logging.getLogger("aiohttp.client").level, logging.WARNING)

    def test_debug_leaves_libraries_verbose_and_overrides_apply(self) -> None:
        init_logging(LoggingSettings(level="DEBUG", loggers={"asyncio": "ERROR"}))

        self.assertEqual(logging.getLogger("aiohttp.client").level, logging.DEBUG)
        self.assertEqual(logging.getLogger("asyncio").level, logging.ERROR)

    def test_file_handler_rotates_daily(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "ledger-scout.log"
            init_logging(LoggingSettings.model_validate({"file": {"path": str(path)}}))

            file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, TimedRotatingFileHandler)]
            self.assertEqual(len(file_handlers), 1)
            self.assertEqual(file_handlers[0].suffix, "%Y-%m-%d")
            logging.getLogger("ledger_scout.test").info("Logged to file. key=%s", "value")
            file_handlers[0].flush()
            self.assertIn("Logged to file. key=value", path.read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
