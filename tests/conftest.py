import asyncio
import inspect
import io
import os
import tempfile

# Environment must be in place before anything imports the runtime or app
_test_tmp_dir = tempfile.mkdtemp(prefix="fraudwatch_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("UPLOAD_ROOT", os.path.join(_test_tmp_dir, "uploads"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Per-process buckets only; a shared Redis would leak limits between tests
os.environ["REDIS_URL"] = ""
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "10000")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")

import pytest  # noqa: E402
from PIL import Image  # noqa: E402

from fraudwatch.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from fraudwatch.storage.models import AdminRole  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    counter = {"n": 0}

    def _make(email=None, name="Test User"):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        return runtime.store.create_user(email, name, google_id=f"google-{email}")

    return _make


@pytest.fixture
def make_admin(runtime):
    def _make(username="moderator", password="moderator-pass", role=AdminRole.MODERATOR):
        return runtime.store.create_admin(
            username, runtime.auth._hash_password(password), role=role
        )

    return _make


def png_bytes(size=(32, 32), color=(200, 30, 30), mode="RGB", fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    return png_bytes


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
