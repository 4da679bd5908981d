import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

TEST_SECRET = "test-secret-with-enough-length-for-hs256"

# Reload modules so configuration changes take effect cleanly.
# datadrop.models is never reloaded: its tables are registered once on SQLModel.metadata.
MODULE_ORDER = [
    "datadrop.config",
    "datadrop.core.metrics",
    "datadrop.core.tokens",
    "datadrop.core.identity",
    "datadrop.core.auth",
    "datadrop.core.rate_limit",
    "datadrop.db",
    "datadrop.storage",
    "datadrop.records",
    "datadrop.deletion",
    "datadrop.uploads",
    "datadrop.multipart",
    "datadrop.sharing",
    "datadrop.downloads",
    "datadrop.cleaner",
    "datadrop.api.routes",
    "datadrop.api.auth",
    "datadrop.main",
]


class StubStorage:
    """Records every object storage call instead of talking to S3."""

    def __init__(self):
        self.calls = []
        self.deleted = []
        self.aborted = []
        self.completed = []
        self.sizes = {}
        self.reject_completion = None
        self.fail_deletes = False
        self.fail_keys = set()

    def presign_put(self, bucket, key, content_type, content_length, expires_in):
        self.calls.append(("presign_put", bucket, key, content_type, content_length))
        return f"https://s3.test/{bucket}/{key}?op=put"

    def presign_get(self, bucket, key, filename, expires_in):
        self.calls.append(("presign_get", bucket, key, filename))
        return f"https://s3.test/{bucket}/{key}?op=get"

    def presign_upload_part(self, bucket, key, upload_id, part_number, expires_in):
        self.calls.append(("presign_upload_part", bucket, key, upload_id, part_number))
        return f"https://s3.test/{bucket}/{key}?uploadId={upload_id}&partNumber={part_number}"

    def create_multipart_upload(self, bucket, key, content_type):
        self.calls.append(("create_multipart_upload", bucket, key, content_type))
        return "upload-1"

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        if self.reject_completion:
            from datadrop.core.exceptions import MultipartRejected

            raise MultipartRejected("rejected", self.reject_completion)
        self.completed.append((bucket, key, upload_id, list(parts)))

    def abort_multipart_upload(self, bucket, key, upload_id):
        self.aborted.append((bucket, key, upload_id))

    def object_size(self, bucket, key):
        return self.sizes.get(key)

    def delete_object(self, bucket, key):
        if self.fail_deletes or key in self.fail_keys:
            from datadrop.core.exceptions import StorageError

            raise StorageError("delete failed", "InternalError")
        self.deleted.append((bucket, key))


class StubInvalidator:
    def __init__(self):
        self.invalidations = []
        self.fail = False

    def invalidate(self, paths, reference):
        if self.fail:
            raise RuntimeError("cloudfront unavailable")
        self.invalidations.append((list(paths), reference))
        return "INV-1"


def _prepare_client(tmp_path, monkeypatch, *, rate_limit="1000", verify_uploads="false"):
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)

    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("ENABLE_CLEANER", "false")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", rate_limit)
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("FRONTEND_URL", "drop.example.com")
    monkeypatch.setenv("CDN_URL", "https://cdn.example.com/cdn")
    monkeypatch.setenv("BUCKET_NAME", "private-bucket")
    monkeypatch.setenv("CDN_BUCKET_NAME", "cdn-bucket")
    monkeypatch.setenv("CLOUDFRONT_DISTRIBUTION_ID", "")
    monkeypatch.setenv("VERIFY_UPLOADS_ON_CONFIRM", verify_uploads)
    monkeypatch.setenv("OIDC_ISSUER", "")

    for module_name in MODULE_ORDER:
        module = importlib.import_module(module_name)
        importlib.reload(module)

    main = sys.modules["datadrop.main"]
    storage_module = sys.modules["datadrop.storage"]

    stub_storage = StubStorage()
    stub_invalidator = StubInvalidator()
    monkeypatch.setattr(storage_module, "_object_storage", stub_storage)
    monkeypatch.setattr(storage_module, "_cdn_invalidator", stub_invalidator)

    test_client = TestClient(main.app)
    test_client.storage = stub_storage  # type: ignore[attr-defined]
    test_client.invalidator = stub_invalidator  # type: ignore[attr-defined]
    test_client.engine = sys.modules["datadrop.db"].engine  # type: ignore[attr-defined]
    test_client.deletion_queue = storage_module.get_deletion_queue()  # type: ignore[attr-defined]
    return test_client


@pytest.fixture
def client(tmp_path, monkeypatch):
    test_client = _prepare_client(tmp_path, monkeypatch)
    with test_client as c:
        yield c


@pytest.fixture
def make_client(tmp_path, monkeypatch):
    """For tests that need non-default configuration."""

    def factory(**options):
        return _prepare_client(tmp_path, monkeypatch, **options)

    return factory


@pytest.fixture
def auth_headers():
    def build(roles=("fileUser",), user_id="user-1", email="user@example.com"):
        tokens = sys.modules["datadrop.core.tokens"]
        token = tokens.create_identity_token(user_id, email, "Test User", list(roles))
        return {"Authorization": f"Bearer {token}"}

    return build
