import pytest

from fineguard.service import runtime as runtime_module
from fineguard.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from fineguard.storage.memory import MemoryIdentityStore, MemoryRevocationList


def test_runtime_uses_memory_backends_in_test_mode():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryIdentityStore)
    assert isinstance(runtime.revocations, MemoryRevocationList)
    assert runtime.auth.credentials.store is runtime.store
    assert get_runtime() is runtime


def test_reset_builds_a_fresh_runtime():
    first = get_runtime()
    second = reset_runtime_for_tests()
    assert second is not first
    assert get_runtime() is second


def test_redis_required_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    monkeypatch.delenv("REDIS_URL", raising=False)
    runtime_module.reset_settings_cache()

    with pytest.raises(RuntimeError):
        runtime_module.Runtime()
    runtime_module.reset_settings_cache()


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:s3cret@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db:5432/fines", "postgresql://app:***@db:5432/fines"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
