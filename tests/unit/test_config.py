import io
import logging
import os

import pytest

from grpcdeck.config import (
    DEFAULT_CALL_TIMEOUT,
    Config,
    configure_logging,
    default_storage_path,
    parse_bool,
)
from grpcdeck.domain import (
    Endpoint,
    SecurityProfile,
    StreamType,
    TLSFiles,
    format_byte_size,
    format_duration,
)
from grpcdeck.errors import ValidationError


@pytest.mark.parametrize("raw,expected", [
    ("1", True), ("TRUE", True), (" yes ", True), ("on", True),
    ("0", False), ("false", False), ("No", False), ("off", False),
    ("maybe", None), ("", None),
])
def test_parse_bool(raw, expected):
    assert parse_bool(raw) is expected


def test_from_env_defaults():
    cfg = Config.from_env({})
    assert cfg.debug is False
    assert cfg.storage_path == default_storage_path()
    assert cfg.call_timeout == DEFAULT_CALL_TIMEOUT


def test_from_env_reads_debug_and_home(tmp_path):
    cfg = Config.from_env({"GRPCDECK_DEBUG": "true", "GRPCDECK_HOME": str(tmp_path)})
    assert cfg.debug is True
    assert cfg.storage_path == str(tmp_path)


def test_from_env_ignores_bad_debug(caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("grpcdeck"), "propagate", True)
    with caplog.at_level(logging.WARNING, logger="grpcdeck.config"):
        cfg = Config.from_env({"GRPCDECK_DEBUG": "sometimes"})
    assert cfg.debug is False
    assert "GRPCDECK_DEBUG" in caplog.text


def test_default_storage_path_is_under_home():
    assert default_storage_path() == os.path.join(os.path.expanduser("~"), ".grpcdeck")


def test_configure_logging_levels():
    buf    = io.StringIO()
    logger = configure_logging(debug=False, stream=buf)
    logging.getLogger("grpcdeck.test").info("hidden")
    logging.getLogger("grpcdeck.test").warning("shown")
    assert "hidden" not in buf.getvalue()
    assert "WARNING grpcdeck.test: shown" in buf.getvalue()

    configure_logging(debug=True, stream=buf)
    assert logger.level == logging.DEBUG
    assert len([h for h in logger.handlers if getattr(h, "_grpcdeck", False)]) == 1
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# ── domain values ────────────────────────────────────────────────────────────

@pytest.mark.parametrize("use_tls,insecure,profile", [
    (False, False, SecurityProfile.PLAINTEXT),
    (True, False, SecurityProfile.TLS),
    (True, True, SecurityProfile.TLS_SKIP_VERIFY),
])
def test_security_profile_from_flags(use_tls, insecure, profile):
    assert SecurityProfile.from_flags(use_tls, insecure) == profile


def test_skip_verify_requires_tls():
    with pytest.raises(ValidationError):
        SecurityProfile.from_flags(False, True)


def test_endpoint_validation():
    with pytest.raises(ValidationError):
        Endpoint("  ").validate()
    with pytest.raises(ValidationError):
        Endpoint("a:1", tls=TLSFiles(ca_file="ca.pem")).validate()
    with pytest.raises(ValidationError):
        Endpoint("a:1", SecurityProfile.TLS, tls=TLSFiles(cert_file="c.pem")).validate()
    Endpoint("a:1", SecurityProfile.TLS, tls=TLSFiles(ca_file="ca.pem")).validate()


def test_endpoint_dict_round_trip():
    ep = Endpoint("a:1", SecurityProfile.TLS_SKIP_VERIFY, timeout=5.0)
    assert ep.to_dict() == {"address": "a:1", "use_tls": True, "insecure": True, "timeout": 5.0}
    assert Endpoint.from_dict(ep.to_dict()) == ep


def test_stream_type_of():
    assert StreamType.of(False, False) == StreamType.UNARY
    assert StreamType.of(False, True) == StreamType.SERVER_STREAM
    assert StreamType.of(True, False) == StreamType.CLIENT_STREAM
    assert StreamType.of(True, True) == StreamType.BIDI_STREAM


def test_formatters():
    assert format_duration(12.4) == "12ms"
    assert format_byte_size(512) == "512 B"
    assert format_byte_size(2048) == "2.0 KB"
    assert format_byte_size(3 * 1024 * 1024) == "3.0 MB"
