import threading
import time

import pytest

from common.errors import UploadError
from common.storage import UploadResult
from common.store import OrderStore


class FakeUploader:
    """Records every upload; raises UploadError for payloads listed in `fail_on`."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, content: bytes, key: str) -> UploadResult:
        with self._lock:
            self.calls.append(content)
        if content in self.fail_on:
            raise UploadError(f"upload of {key} rejected")
        return UploadResult(key, f"https://cdn.example.com/{key}")


def no_mirror(order_id, public_urls, completed):
    return False


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store(tmp_path):
    return OrderStore(tmp_path / "orders.json")


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def photo_files(tmp_path):
    """Factory writing small fake photo files; each has distinct bytes."""
    def make(count, prefix="photo"):
        paths = []
        for i in range(count):
            path = tmp_path / f"{prefix}{i}.jpg"
            path.write_bytes(f"{prefix}-{i}".encode())
            paths.append(path)
        return paths
    return make
