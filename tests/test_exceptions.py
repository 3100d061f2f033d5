"""Tests for the exception hierarchy."""

import pytest

from modsync.exceptions import (
    APIError,
    APINotFoundError,
    APIRateLimitError,
    APIUnreachableError,
    ChecksumUnavailableError,
    ConfigError,
    ConfigParseError,
    ConfigValidationError,
    DownloadError,
    InstallError,
    InstallFailedError,
    IntegrityViolationError,
    LockfileError,
    ModSyncError,
    NoCompatibleVersionError,
    ResolutionError,
    UnresolvableConflictError,
)


@pytest.mark.parametrize(
    "cls, code, parent",
    [
        (ConfigError, "E100", ModSyncError),
        (ConfigParseError, "E101", ConfigError),
        (ConfigValidationError, "E102", ConfigError),
        (APIError, "E200", ModSyncError),
        (APINotFoundError, "E404", APIError),
        (APIRateLimitError, "E429", APIError),
        (APIUnreachableError, "E503", APIError),
        (ResolutionError, "E600", ModSyncError),
        (NoCompatibleVersionError, "E601", ResolutionError),
        (UnresolvableConflictError, "E602", ResolutionError),
        (DownloadError, "E300", ModSyncError),
        (IntegrityViolationError, "E302", DownloadError),
        (ChecksumUnavailableError, "E304", DownloadError),
        (InstallError, "E400", ModSyncError),
        (InstallFailedError, "E401", InstallError),
        (LockfileError, "E402", InstallError),
    ],
)
def test_default_codes(cls, code, parent):
    error = cls("boom")
    assert error.code == code
    assert isinstance(error, parent)
    assert str(error) == f"[{code}] boom"


def test_transient_flags():
    assert APIRateLimitError("x").transient
    assert APIUnreachableError("x").transient
    assert not APINotFoundError("x").transient
    assert not APIError("x").transient


def test_to_dict_carries_context():
    error = IntegrityViolationError("mismatch", context={"reference": "modrinth:sodium"})

    data = error.to_dict()

    assert data["code"] == "E302"
    assert data["type"] == "IntegrityViolationError"
    assert data["context"] == {"reference": "modrinth:sodium"}


def test_conflict_chain_is_rendered():
    error = UnresolvableConflictError("conflict", chain=["a 依赖 b", "b 要求 c <2"])

    assert error.context["chain"] == ["a 依赖 b", "b 要求 c <2"]
    assert str(error) == "[E602] conflict\n  a 依赖 b\n  b 要求 c <2"


def test_rate_limit_hint():
    error = APIRateLimitError("slow", retry_after=3.5)

    assert error.retry_after == 3.5
    assert error.context["retry_after"] == 3.5
