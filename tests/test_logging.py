"""Tests for logging setup and secret redaction."""

import io
import json
import logging

import pytest
from pythonjsonlogger import jsonlogger

from relayb0t.utils.logging import (
    REDACTED,
    SecretRedactingFilter,
    SecretRedactor,
    setup_logging,
)

RELAYER_KEY = "0x" + "ab" * 32
API_KEY = "pk-live-5f3c9e"


@pytest.fixture
def redactor():
    return SecretRedactor([RELAYER_KEY, API_KEY, None])


@pytest.fixture
def captured(redactor):
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(jsonlogger.JsonFormatter("%(name)s %(levelname)s %(message)s"))
    handler.addFilter(SecretRedactingFilter(redactor))
    logger = logging.getLogger("relayb0t.tests.redaction")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    yield logger, stream

    logger.removeHandler(handler)


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_redact_text(redactor):
    assert redactor.redact_text(f"key={RELAYER_KEY}") == f"key={REDACTED}"
    # Without the 0x prefix too
    assert redactor.redact_text(f"key={RELAYER_KEY[2:]}") == f"key={REDACTED}"
    assert redactor.redact_text("nothing secret here") == "nothing secret here"


def test_message_and_args_redacted(captured):
    logger, stream = captured

    logger.error("RPC refused signer %s", RELAYER_KEY)
    logger.info(f"price api key {API_KEY} rejected")

    text = stream.getvalue()
    assert RELAYER_KEY[2:] not in text
    assert API_KEY not in text
    assert [line["message"] for line in _lines(stream)] == [
        f"RPC refused signer {REDACTED}",
        f"price api key {REDACTED} rejected",
    ]


def test_extra_fields_redacted(captured):
    logger, stream = captured
    tx_hash = "0x" + "cd" * 32

    logger.info(
        "Submitted transfer",
        extra={"tx_hash": tx_hash, "price_api_key": "anything", "detail": f"via {API_KEY}"},
    )

    [line] = _lines(stream)
    assert line["tx_hash"] == tx_hash
    assert line["price_api_key"] == REDACTED
    assert line["detail"] == f"via {REDACTED}"


def test_structlog_processor(redactor):
    event = redactor(
        None, "info", {"event": f"loaded {RELAYER_KEY}", "relayer_private_key": RELAYER_KEY, "n": 3}
    )

    assert event == {"event": f"loaded {REDACTED}", "relayer_private_key": REDACTED, "n": 3}


def test_setup_logging_installs_redaction(settings, capsys):
    settings = settings.model_copy(
        update={"relayer_private_key": RELAYER_KEY, "log_format": "console"}
    )
    root = logging.getLogger()
    saved = list(root.handlers), root.level

    try:
        setup_logging(settings)
        assert any(isinstance(f, SecretRedactingFilter) for f in root.handlers[0].filters)

        logging.getLogger("relayb0t.tests").warning(f"bad key {RELAYER_KEY}")
        out = capsys.readouterr().out
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])

    assert "bad key ***" in out
    assert RELAYER_KEY[2:] not in out
