from pathlib import Path

import pytest

from storybatch import Bounded, DependencyPolicy, RuntimeSettings, Unbounded, parse_iteration_cap

_ENV_VARS = (
    "STORYBATCH_STATE_DIR",
    "STORYBATCH_SPEC_FILENAME",
    "STORYBATCH_MAX_ITERATIONS",
    "STORYBATCH_MAX_CONCURRENCY",
    "STORYBATCH_DEPENDENCY_POLICY",
    "STORYBATCH_SESSION_TIMEOUT_S",
    "STORYBATCH_RECURSION_LIMIT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_runtime_settings_defaults() -> None:
    settings = RuntimeSettings.from_env()

    assert settings.iteration_cap == Bounded(50)
    assert settings.policy == DependencyPolicy.OPTIMISTIC
    assert settings.max_concurrency == 0
    assert settings.session_timeout_s == 0
    assert settings.spec_path(Path("/work")) == Path("/work/.storybatch/spec.json")


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORYBATCH_STATE_DIR", "/var/lib/storybatch")
    monkeypatch.setenv("STORYBATCH_MAX_ITERATIONS", " Unbounded ")
    monkeypatch.setenv("STORYBATCH_MAX_CONCURRENCY", "4")
    monkeypatch.setenv("STORYBATCH_DEPENDENCY_POLICY", "BLOCKING")
    monkeypatch.setenv("STORYBATCH_SESSION_TIMEOUT_S", "1800")

    settings = RuntimeSettings.from_env()

    assert settings.iteration_cap == Unbounded()
    assert settings.max_concurrency == 4
    assert settings.policy == DependencyPolicy.BLOCKING
    assert settings.session_timeout_s == 1800
    assert settings.state_path(Path("/ignored")) == Path("/var/lib/storybatch")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("STORYBATCH_MAX_ITERATIONS", "0"),
        ("STORYBATCH_MAX_ITERATIONS", "lots"),
        ("STORYBATCH_MAX_CONCURRENCY", "-1"),
        ("STORYBATCH_DEPENDENCY_POLICY", "pessimistic"),
        ("STORYBATCH_SESSION_TIMEOUT_S", "soon"),
        ("STORYBATCH_SPEC_FILENAME", " "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_parse_iteration_cap() -> None:
    assert parse_iteration_cap(None) == Unbounded()
    assert parse_iteration_cap("unbounded") == Unbounded()
    assert parse_iteration_cap(7) == Bounded(7)
    assert parse_iteration_cap(" 12 ") == Bounded(12)
    assert Bounded(3).reached(3) is True
    assert Bounded(3).reached(2) is False
    assert Unbounded().reached(10_000) is False
    for bad in (0, -4, True, "many"):
        with pytest.raises(ValueError):
            parse_iteration_cap(bad)
