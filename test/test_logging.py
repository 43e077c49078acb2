"""
Tests for structured logging helpers.
"""

import ast
import json
import logging
from pathlib import Path

import pytest

import sigcore
from sigcore.shared.logging import (
    RESERVED_ATTRS,
    StructuredFormatter,
    get_logger,
    log_with_context,
    safe_extra,
)

SRC = Path(sigcore.__file__).parent


def literal_extra_keys() -> list[tuple[str, int, str]]:
    """(file, line, key) for every literal key passed as ``extra={...}`` in the package."""
    found: list[tuple[str, int, str]] = []
    for path in sorted(SRC.rglob("*.py")):
        tree = ast.parse(path.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call):
                continue
            for keyword in node.keywords:
                if keyword.arg != "extra" or not isinstance(keyword.value, ast.Dict):
                    continue
                for key in keyword.value.keys:
                    if isinstance(key, ast.Constant) and isinstance(key.value, str):
                        found.append((path.relative_to(SRC).as_posix(), key.lineno, key.value))
    return found


class TestExtraKeys:
    def test_package_never_shadows_record_attributes(self) -> None:
        keys = literal_extra_keys()

        assert keys, "expected logging calls with extra fields"
        clashes = [f"{file}:{line} {key}" for file, line, key in keys if key in RESERVED_ATTRS]
        assert clashes == []

    def test_every_extra_key_formats(self) -> None:
        record = logging.LogRecord("sigcore.test", logging.INFO, __file__, 1, "msg", None, None)
        for _, _, key in literal_extra_keys():
            setattr(record, key, "value")

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["message"] == "msg"


class TestContextLogger:
    def test_reserved_keys_are_prefixed(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = get_logger("sigcore.test.reserved")

        with caplog.at_level(logging.INFO, logger="sigcore.test.reserved"):
            logger.info("Subscription paused", extra={"name": "CRM", "created": True, "failure_count": 3})

        record = caplog.records[-1]
        assert record.name == "sigcore.test.reserved"
        assert record.extra_name == "CRM"  # type: ignore[attr-defined]
        assert record.extra_created is True  # type: ignore[attr-defined]
        assert record.failure_count == 3  # type: ignore[attr-defined]

    def test_log_with_context(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = get_logger("sigcore.test.context")

        with caplog.at_level(logging.WARNING, logger="sigcore.test.context"):
            log_with_context(logger, logging.WARNING, "Delivery failed", message="boom", status_code=500)

        record = caplog.records[-1]
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["message"] == "Delivery failed"
        assert payload["extra_message"] == "boom"
        assert payload["status_code"] == 500

    def test_safe_extra(self) -> None:
        assert safe_extra({"module": "x", "provider": "twilio"}) == {"extra_module": "x", "provider": "twilio"}
