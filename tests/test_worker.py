import queue
import threading

from conftest import FakeUploader, no_mirror

from common.errors import MirrorSyncError
from common.messages import (
    OrderResult,
    OrderResultMessage,
    ProcessOrderMessage,
    ReadyMessage,
    WorkerErrorMessage,
)
from common.order_schema import OrderStatus
from worker.worker import OrderProcessor, Worker


def make_processor(store, upload, mirror=no_mirror):
    return OrderProcessor(store, upload=upload, mirror=mirror, worker_id=1)


# -------------------- OrderProcessor --------------------

def test_all_photos_uploaded_completes_order(store, uploader, photo_files):
    store.create_order("o1", file_paths=photo_files(2))

    result = make_processor(store, uploader).process("o1")

    order = store.get_order("o1")
    assert result.success is True
    assert order.status == OrderStatus.COMPLETED
    assert order.error is None
    assert order.retry_count == 1
    assert all(p.public_url for p in order.photos)
    assert all(p.file_path.startswith("orders/") for p in order.photos)
    assert sorted(result.public_urls) == sorted(p.public_url for p in order.photos)
    assert len(uploader.calls) == 2


def test_partial_failure_fails_order_and_retry_resets(store, photo_files):
    files = photo_files(2)
    store.create_order("o2", file_paths=files)
    uploader = FakeUploader(fail_on={files[1].read_bytes()})

    result = make_processor(store, uploader).process("o2")

    order = store.get_order("o2")
    assert result.success is False
    assert result.partial is True
    assert order.status == OrderStatus.FAILED
    assert "1 photos failed to process. 1 photos were processed successfully." in order.error

    order = store.retry_order("o2")
    assert order.status == OrderStatus.QUEUED
    assert order.error is None


def test_error_counts_failed_and_succeeded(store, photo_files):
    files = photo_files(3)
    store.create_order("o3", file_paths=files)
    uploader = FakeUploader(fail_on={files[0].read_bytes()})

    make_processor(store, uploader).process("o3")

    assert store.get_order("o3").error == (
        "1 photos failed to process. 2 photos were processed successfully."
    )


def test_reprocessing_skips_already_uploaded_photos(store, photo_files):
    files = photo_files(2)
    store.create_order("o2", file_paths=files)
    make_processor(store, FakeUploader(fail_on={files[1].read_bytes()})).process("o2")
    store.retry_order("o2")

    second = FakeUploader()
    result = make_processor(store, second).process("o2")

    order = store.get_order("o2")
    assert result.success is True
    assert second.calls == [files[1].read_bytes()]
    assert order.status == OrderStatus.COMPLETED
    assert order.retry_count == 2
    assert sum(p.skipped for p in result.processed_photos) == 1


def test_photo_with_public_url_is_never_uploaded(store, uploader):
    store.create_order("o1")
    store.add_photo("o1", "/does/not/exist.jpg", public_url="https://cdn.example.com/done.jpg")

    result = make_processor(store, uploader).process("o1")

    assert result.success is True
    assert uploader.calls == []
    assert result.public_urls == ["https://cdn.example.com/done.jpg"]


def test_missing_local_file_fails_that_photo(store, uploader, photo_files):
    store.create_order("o1", file_paths=[*photo_files(1), "/does/not/exist.jpg"])

    result = make_processor(store, uploader).process("o1")

    assert result.success is False
    assert store.get_order("o1").status == OrderStatus.FAILED


def test_uploads_run_concurrently(store, photo_files):
    store.create_order("o1", file_paths=photo_files(2))
    barrier = threading.Barrier(2, timeout=5)
    inner = FakeUploader()

    def upload(content, key):
        barrier.wait()      # only passes if both uploads are in flight together
        return inner(content, key)

    result = make_processor(store, upload).process("o1")

    assert result.success is True


def test_missing_order_reports_failure(store, uploader):
    result = make_processor(store, uploader).process("ghost")

    assert result.success is False
    assert result.order_id == "ghost"
    assert "not found" in result.error


def test_order_not_queued_is_left_alone(store, uploader):
    store.create_order("o1")
    store.update_order_status("o1", OrderStatus.PROCESSING)
    store.update_order_status("o1", OrderStatus.COMPLETED)

    result = make_processor(store, uploader).process("o1")

    assert result.success is False
    assert store.get_order("o1").status == OrderStatus.COMPLETED
    assert store.get_order("o1").retry_count == 1


def test_mirror_receives_urls_and_completion(store, uploader, photo_files):
    store.create_order("o1", file_paths=photo_files(2))
    calls = []

    def mirror(order_id, public_urls, completed):
        calls.append((order_id, len(public_urls), completed))

    make_processor(store, uploader, mirror=mirror).process("o1")

    assert calls == [("o1", 2, True)]


def test_mirror_failure_fails_order_even_when_uploads_succeed(store, uploader, photo_files):
    store.create_order("o1", file_paths=photo_files(1))

    def mirror(order_id, public_urls, completed):
        raise MirrorSyncError("Failed update order. Cant connect to record mirror")

    result = make_processor(store, uploader, mirror=mirror).process("o1")

    order = store.get_order("o1")
    assert result.success is False
    assert order.status == OrderStatus.FAILED
    assert order.error == "Failed update order. Cant connect to record mirror"
    assert all(p.public_url for p in order.photos)


def test_unexpected_error_marks_order_failed(store, uploader, photo_files):
    store.create_order("o1", file_paths=photo_files(1))

    def mirror(order_id, public_urls, completed):
        raise RuntimeError("mirror exploded")

    result = make_processor(store, uploader, mirror=mirror).process("o1")

    assert result.success is False
    assert result.error == "mirror exploded"
    order = store.get_order("o1")
    assert order.status == OrderStatus.FAILED
    assert order.error == "mirror exploded"


def test_result_from_reclaimed_attempt_is_discarded(store, uploader, photo_files):
    store.create_order("o1", file_paths=photo_files(1))

    def mirror(order_id, public_urls, completed):
        # the stuck-order sweep takes the order away mid-flight
        store.retry_order(order_id, expected_status=OrderStatus.PROCESSING)

    result = make_processor(store, uploader, mirror=mirror).process("o1")

    order = store.get_order("o1")
    assert result.success is False
    assert "stale" in result.error
    assert order.status == OrderStatus.QUEUED
    assert order.error is None


def test_reclaimed_attempt_skips_record_sync(store, photo_files):
    store.create_order("o1", file_paths=photo_files(1))
    inner = FakeUploader()
    mirrored = []

    def upload(content, key):
        # the stuck-order sweep requeues the order while photos upload
        store.retry_order("o1", expected_status=OrderStatus.PROCESSING)
        return inner(content, key)

    def mirror(order_id, public_urls, completed):
        mirrored.append(order_id)

    result = make_processor(store, upload, mirror=mirror).process("o1")

    assert result.success is False
    assert "stale" in result.error
    assert mirrored == []
    assert store.get_order("o1").status == OrderStatus.QUEUED


# -------------------- Worker thread --------------------

def _get(outbox):
    return outbox.get(timeout=5)


def test_worker_reports_ready_and_results():
    outbox = queue.Queue()
    worker = Worker(3, outbox, lambda order_id: OrderResult(success=True, order_id=order_id), generation=2)
    worker.start()
    try:
        ready = _get(outbox)
        assert isinstance(ready, ReadyMessage)
        assert (ready.worker_id, ready.generation) == (3, 2)

        worker.send(ProcessOrderMessage(order_id="o1"))
        message = _get(outbox)
        assert isinstance(message, OrderResultMessage)
        assert message.result.order_id == "o1"
        assert message.result.success is True
        assert worker.status()["state"] == "IDLE"
    finally:
        worker.stop(timeout=5)
    assert not worker.is_alive()
    assert worker.status()["state"] == "STOPPED"


def test_worker_crash_reports_error_and_exits():
    outbox = queue.Queue()

    def process(order_id):
        raise RuntimeError("segfault-ish")

    worker = Worker(0, outbox, process)
    worker.start()
    assert isinstance(_get(outbox), ReadyMessage)

    worker.send(ProcessOrderMessage(order_id="o1"))
    message = _get(outbox)

    assert isinstance(message, WorkerErrorMessage)
    assert message.error == "segfault-ish"
    worker._thread.join(5)
    assert not worker.is_alive()
    assert worker.status()["state"] == "CRASHED"
