import base64
import io
import time
from datetime import date

import pytest
from PIL import Image
from botocore.exceptions import ClientError

from app.batch_service import service
from app.batch_service.models import BatchFile, UploadRequest
from app.settings import settings
from app.exceptions import (
    BatchNotFoundException,
    DeleteFailedException,
    DynamoDBException,
    FileTooLargeException,
    FileTypeInvalidException,
    ImageNotFoundException,
    InvalidRequestException,
    TooManyFilesException,
    UploadFailedException,
)


def make_png_bytes():
    """Generate a simple valid PNG in-memory."""
    img = Image.new("RGB", (10, 10), color="red")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_files(n, mime="image/png"):
    return [BatchFile(name=f"f{i}.png", data=b"x" * (i + 1), size=i + 1, mime=mime) for i in range(n)]


def client_error(op="PutObject"):
    return ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, op)


@pytest.fixture
def allocator(mocker):
    allocator = mocker.Mock()
    allocator.reserve.return_value = 41
    return allocator


# ------------------------------
# validate_image_bytes / decode_upload
# ------------------------------

def test_validate_png_bytes_ok():
    assert service.validate_image_bytes(make_png_bytes(), "image/png") == "image/png"


def test_validate_invalid_bytes_raises():
    with pytest.raises(FileTypeInvalidException):
        service.validate_image_bytes(b"notanimage", "image/png")


def test_validate_non_image_type():
    with pytest.raises(FileTypeInvalidException):
        service.validate_image_bytes(b"fake", "application/pdf")


def test_decode_upload_strips_data_url_header():
    png = make_png_bytes()
    encoded = base64.b64encode(png).decode()
    request = UploadRequest(
        batchTitle="  Holiday  ",
        files=[
            {"name": "a.png", "data": f"data:image/png;base64,{encoded}", "size": 1, "type": "image/png"},
            {"name": "b.png", "data": encoded, "size": len(png), "type": "image/png"},
        ],
    )

    title, files = service.decode_upload(request)

    assert title == "Holiday"
    assert [f.data for f in files] == [png, png]
    # the recorded size is the decoded payload length
    assert files[0].size == len(png)


def test_decode_upload_accepts_line_wrapped_base64():
    png = make_png_bytes()
    wrapped = base64.encodebytes(png).decode()
    assert "\n" in wrapped
    request = UploadRequest(batchTitle="t", files=[{"name": "a.png", "data": wrapped, "type": "image/png"}])

    _, files = service.decode_upload(request)

    assert files[0].data == png


def test_decode_upload_invalid_base64():
    request = UploadRequest(batchTitle="t", files=[{"name": "a", "data": "@@not-base64@@", "type": "image/png"}])
    with pytest.raises(InvalidRequestException):
        service.decode_upload(request)


def test_decode_upload_too_large(monkeypatch):
    monkeypatch.setattr(settings, "max_file_bytes", 10)
    encoded = base64.b64encode(make_png_bytes()).decode()
    request = UploadRequest(batchTitle="t", files=[{"name": "a", "data": encoded, "type": "image/png"}])
    with pytest.raises(FileTooLargeException):
        service.decode_upload(request)


def test_decode_upload_without_verification_still_requires_image_type(monkeypatch):
    monkeypatch.setattr(settings, "verify_image_content", False)
    encoded = base64.b64encode(b"plain text").decode()
    request = UploadRequest(batchTitle="t", files=[{"name": "a", "data": encoded, "type": "text/plain"}])
    with pytest.raises(FileTypeInvalidException):
        service.decode_upload(request)


def test_decode_upload_checks_limits_before_decoding(small_batches):
    request = UploadRequest(
        batchTitle="t",
        files=[{"name": "a", "data": "@@", "type": "image/png"}] * (small_batches + 1),
    )
    with pytest.raises(TooManyFilesException):
        service.decode_upload(request)


# ------------------------------
# commit_batch
# ------------------------------

def test_commit_batch_success(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()

    result = service.commit_batch(mock_db, mock_s3, "Test", make_files(3), allocator=allocator)

    allocator.reserve.assert_called_once_with(3)
    assert result.batch.first_id == 41
    assert result.batch.last_id == 43
    assert result.batch.image_count == 3
    assert [img.id for img in result.images] == [41, 42, 43]
    assert [img.filename for img in result.images] == ["00000041.png", "00000042.png", "00000043.png"]
    assert result.images[0].url == "https://img.example.com/00000041.png"
    assert result.images[2].original_filename == "f2.png"
    assert all(img.batch_id == result.batch.id for img in result.images)

    batch_item = mock_db.insert_batch.call_args.args[0]
    assert batch_item["first_id"] == 41
    assert isinstance(batch_item["uploaded_at"], str)
    assert mock_db.insert_image.call_count == 3
    uploaded = sorted(c.args for c in mock_s3.put.call_args_list)
    assert uploaded == [
        ("00000041.png", b"x", "image/png"),
        ("00000042.png", b"xx", "image/png"),
        ("00000043.png", b"xxx", "image/png"),
    ]


def test_commit_batch_writes_rows_before_blobs(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    calls = mocker.Mock()
    calls.attach_mock(mock_db.insert_batch, "insert_batch")
    calls.attach_mock(mock_db.insert_image, "insert_image")
    calls.attach_mock(mock_s3.put, "put")

    service.commit_batch(mock_db, mock_s3, "Test", make_files(4), allocator=allocator)

    names = [c[0] for c in calls.mock_calls]
    assert names[0] == "insert_batch"
    assert names[1:5] == ["insert_image"] * 4
    assert names[5:] == ["put"] * 4


def test_commit_empty_batch_does_not_allocate(mocker, allocator):
    mock_db = mocker.Mock()
    with pytest.raises(InvalidRequestException):
        service.commit_batch(mock_db, mocker.Mock(), "Test", [], allocator=allocator)
    allocator.reserve.assert_not_called()
    mock_db.insert_batch.assert_not_called()


def test_commit_blank_title_does_not_allocate(mocker, allocator):
    with pytest.raises(InvalidRequestException):
        service.commit_batch(mocker.Mock(), mocker.Mock(), "   ", make_files(1), allocator=allocator)
    allocator.reserve.assert_not_called()


def test_commit_too_many_files_does_not_allocate(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    with pytest.raises(TooManyFilesException):
        service.commit_batch(mock_db, mock_s3, "Test", make_files(501), max_files=500, allocator=allocator)
    allocator.reserve.assert_not_called()
    mock_s3.put.assert_not_called()


def test_commit_batch_insert_failure_loses_range(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.insert_batch.side_effect = client_error("PutItem")

    with pytest.raises(DynamoDBException):
        service.commit_batch(mock_db, mock_s3, "Test", make_files(2), allocator=allocator)
    allocator.reserve.assert_called_once_with(2)
    mock_db.insert_image.assert_not_called()
    mock_s3.put.assert_not_called()


def test_commit_image_insert_failure_uploads_nothing(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.insert_image.side_effect = [None, client_error("PutItem")]

    with pytest.raises(UploadFailedException):
        service.commit_batch(mock_db, mock_s3, "Test", make_files(3), allocator=allocator)
    mock_s3.put.assert_not_called()


def test_commit_blob_failure_is_not_rolled_back(mocker, allocator):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()

    def put(key, data, content_type):
        if key == "00000042.png":
            raise client_error()

    mock_s3.put.side_effect = put

    with pytest.raises(UploadFailedException):
        service.commit_batch(mock_db, mock_s3, "Test", make_files(3), allocator=allocator)
    # every upload was attempted and nothing was deleted
    assert mock_s3.put.call_count == 3
    mock_s3.delete.assert_not_called()
    mock_db.delete_batch.assert_not_called()
    mock_db.delete_image.assert_not_called()


def test_commit_timeout_is_reported_not_retried(mocker, allocator, monkeypatch):
    monkeypatch.setattr(settings, "commit_timeout_seconds", 0.05)
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_s3.put.side_effect = lambda *args: time.sleep(0.5)

    with pytest.raises(UploadFailedException) as exc:
        service.commit_batch(mock_db, mock_s3, "Test", make_files(1), allocator=allocator)
    assert "timed out" in exc.value.detail
    allocator.reserve.assert_called_once()


# ------------------------------
# queries
# ------------------------------

def batch_item(batch_id, title, uploaded_at, first_id=1, count=2):
    return {
        "id": batch_id,
        "title": title,
        "uploaded_at": uploaded_at,
        "image_count": count,
        "first_id": first_id,
        "last_id": first_id + count - 1,
        "created_at": uploaded_at,
    }


def image_item(image_id, batch_id, size=10):
    filename = f"{image_id:08d}.png"
    return {
        "id": image_id,
        "batch_id": batch_id,
        "filename": filename,
        "url": f"https://img.example.com/{filename}",
        "original_filename": None,
        "bytes": size,
        "mime": "image/png",
        "uploaded_at": "2026-01-02T00:00:00+00:00",
    }


def test_fetch_batches_filters_and_orders(mocker):
    mock_db = mocker.Mock()
    mock_db.scan_batches.return_value = [
        batch_item("a", "Spring trip", "2026-03-01T10:00:00+00:00", 1),
        batch_item("b", "Summer TRIP", "2026-06-01T10:00:00+00:00", 3),
        batch_item("c", "Receipts", "2026-06-02T10:00:00+00:00", 5),
    ]
    mock_db.list_images.side_effect = lambda batch_id: {
        "a": [image_item(1, "a"), image_item(2, "a")],
        "b": [image_item(3, "b", 5), image_item(4, "b", 7)],
    }.get(batch_id, [])

    resp = service.fetch_batches(mock_db, search="trip")
    assert [b.id for b in resp.batches] == ["b", "a"]
    assert resp.count == 2
    assert resp.batches[0].first_filename == "00000003.png"
    assert resp.batches[0].last_filename == "00000004.png"
    assert resp.batches[0].total_bytes == 12

    resp = service.fetch_batches(mock_db, date_from=date(2026, 6, 1), date_to=date(2026, 6, 1))
    assert [b.id for b in resp.batches] == ["b"]


def test_fetch_batches_summary_without_images(mocker):
    mock_db = mocker.Mock()
    mock_db.scan_batches.return_value = [batch_item("c", "Receipts", "2026-06-02T10:00:00+00:00")]
    mock_db.list_images.return_value = []

    summary = service.fetch_batches(mock_db).batches[0]
    assert summary.first_filename is None
    assert summary.total_bytes == 0


def test_get_batch_detail_not_found(mocker):
    mock_db = mocker.Mock()
    mock_db.get_batch.return_value = None
    with pytest.raises(BatchNotFoundException):
        service.get_batch_detail(mock_db, "missing")


def test_build_markdown(mocker):
    mock_db = mocker.Mock()
    mock_db.get_batch.return_value = batch_item("a", "Spring trip", "2026-03-01T10:00:00+00:00")
    mock_db.list_images.return_value = [image_item(1, "a"), image_item(2, "a")]

    resp = service.build_markdown(mock_db, "a")
    assert resp.markdown == (
        "<!-- Spring trip (2枚) -->\n"
        "![](https://img.example.com/00000001.png)\n"
        "![](https://img.example.com/00000002.png)\n"
    )


# ------------------------------
# remove_batch / remove_image
# ------------------------------

def test_remove_batch_deletes_blobs_then_rows(mocker):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.get_batch.return_value = batch_item("a", "t", "2026-03-01T10:00:00+00:00")
    mock_db.list_images.return_value = [image_item(1, "a"), image_item(2, "a")]
    mock_db.delete_batch.return_value = 2

    resp = service.remove_batch(mock_db, mock_s3, "a")

    assert resp.deleted == 2
    assert resp.failed_blobs == []
    assert sorted(c.args[0] for c in mock_s3.delete.call_args_list) == ["00000001.png", "00000002.png"]
    mock_db.delete_batch.assert_called_once_with("a")


def test_remove_batch_blob_failure_is_best_effort(mocker):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.get_batch.return_value = batch_item("a", "t", "2026-03-01T10:00:00+00:00", count=3)
    mock_db.list_images.return_value = [image_item(i, "a") for i in (1, 2, 3)]
    mock_db.delete_batch.return_value = 3

    def delete(key):
        if key == "00000002.png":
            raise client_error("DeleteObject")

    mock_s3.delete.side_effect = delete

    resp = service.remove_batch(mock_db, mock_s3, "a")
    assert resp.deleted == 3
    assert resp.failed_blobs == ["00000002.png"]
    assert mock_s3.delete.call_count == 3
    mock_db.delete_batch.assert_called_once_with("a")


def test_remove_batch_not_found(mocker):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.get_batch.return_value = None
    with pytest.raises(BatchNotFoundException):
        service.remove_batch(mock_db, mock_s3, "missing")
    mock_s3.delete.assert_not_called()
    mock_db.delete_batch.assert_not_called()


def test_remove_batch_metadata_failure(mocker):
    mock_db = mocker.Mock()
    mock_db.get_batch.return_value = batch_item("a", "t", "2026-03-01T10:00:00+00:00")
    mock_db.list_images.return_value = []
    mock_db.delete_batch.side_effect = client_error("DeleteItem")
    with pytest.raises(DeleteFailedException):
        service.remove_batch(mock_db, mocker.Mock(), "a")


def test_remove_image_success_keeps_image_count(mocker):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.get_image.return_value = image_item(7, "a")

    resp = service.remove_image(mock_db, mock_s3, "00000007.png")

    assert resp.filename == "00000007.png"
    assert resp.batch_id == "a"
    mock_db.get_image.assert_called_once_with(7)
    mock_s3.delete.assert_called_once_with("00000007.png")
    mock_db.delete_image.assert_called_once_with(7)
    mock_db.insert_batch.assert_not_called()


def test_remove_image_blob_failure_still_deletes_row(mocker):
    mock_db = mocker.Mock()
    mock_s3 = mocker.Mock()
    mock_db.get_image.return_value = image_item(7, "a")
    mock_s3.delete.side_effect = client_error("DeleteObject")

    service.remove_image(mock_db, mock_s3, "00000007.png")
    mock_db.delete_image.assert_called_once_with(7)


@pytest.mark.parametrize("filename", ["nope", "00000007.jpg"])
def test_remove_image_not_found(mocker, filename):
    mock_db = mocker.Mock()
    mock_db.get_image.return_value = image_item(7, "a")
    with pytest.raises(ImageNotFoundException):
        service.remove_image(mock_db, mocker.Mock(), filename)
    mock_db.delete_image.assert_not_called()
