"""Shared fixtures: a temporary SQLite store, an in-memory S3 client and a scripted git runner."""

import asyncio
import sys
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from okr_sync.config.settings import GitConfig, S3Config  # noqa: E402
from okr_sync.store.base import EntityKind  # noqa: E402
from okr_sync.store.sqlite_store import SQLiteLocalStore  # noqa: E402
from okr_sync.sync.git_transport import GitCommandError, GitFailureKind, GitResult  # noqa: E402


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """Subset of the boto3 S3 client backed by a dict."""

    def __init__(self, bucket: str = "okr-backups", page_size: int = 3):
        self.bucket = bucket
        self.page_size = page_size
        self.objects = {}
        self.deleted = []
        self.list_error = None
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _check_bucket(self, bucket):
        if bucket != self.bucket:
            raise client_error("NoSuchBucket")

    def _tick(self):
        self._clock += timedelta(minutes=1)
        return self._clock

    def seed(self, key, body=b"old", last_modified=None, metadata=None):
        self.objects[key] = {
            "Body": body,
            "Metadata": metadata or {},
            "ContentType": "application/octet-stream",
            "LastModified": last_modified or self._tick(),
        }

    def put_object(self, Bucket, Key, Body, Metadata=None, ContentType=None):
        self._check_bucket(Bucket)
        self.objects[Key] = {
            "Body": bytes(Body),
            "Metadata": dict(Metadata or {}),
            "ContentType": ContentType,
            "LastModified": self._tick(),
        }
        return {"ETag": '"etag"'}

    def get_object(self, Bucket, Key):
        self._check_bucket(Bucket)
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": BytesIO(self.objects[Key]["Body"])}

    def head_object(self, Bucket, Key):
        self._check_bucket(Bucket)
        if Key not in self.objects:
            raise client_error("404", "HeadObject")
        obj = self.objects[Key]
        return {
            "ContentLength": len(obj["Body"]),
            "LastModified": obj["LastModified"],
            "ContentType": obj["ContentType"],
            "Metadata": obj["Metadata"],
        }

    def delete_object(self, Bucket, Key):
        self._check_bucket(Bucket)
        self.objects.pop(Key, None)
        self.deleted.append(Key)
        return {}

    def list_objects_v2(self, Bucket, Prefix="", MaxKeys=1000):
        self._check_bucket(Bucket)
        if self.list_error:
            raise self.list_error
        contents = self._contents(Prefix)[:MaxKeys]
        return {"Contents": contents, "KeyCount": len(contents)}

    def _contents(self, prefix):
        return [
            {"Key": key, "Size": len(obj["Body"]), "LastModified": obj["LastModified"], "ETag": '"etag"'}
            for key, obj in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        client = self

        class Paginator:
            def paginate(self, Bucket, Prefix=""):
                client._check_bucket(Bucket)
                if client.list_error:
                    raise client.list_error
                contents = client._contents(Prefix)
                if not contents:
                    yield {"KeyCount": 0}
                for start in range(0, len(contents), client.page_size):
                    yield {"Contents": contents[start:start + client.page_size]}

        return Paginator()


class FakeGitRunner:
    """Records git invocations and replays scripted failures per subcommand."""

    def __init__(self):
        self.calls = []
        self.failures = defaultdict(deque)
        self.status_output = ""
        self.gates = {}

    def fail(self, command: str, *kinds: GitFailureKind):
        """Make the next invocations of ``command`` fail with the given kinds, in order."""
        for kind in kinds:
            self.failures[command].append(kind)

    def hold(self, command: str) -> asyncio.Event:
        """Block invocations of ``command`` until the returned event is set."""
        gate = self.gates[command] = asyncio.Event()
        return gate

    def commands(self, name: str):
        return [call for call in self.calls if call["args"][0] == name]

    async def run(self, *args, timeout=None, config=(), env=None, check=True):
        self.calls.append({"args": list(args), "config": list(config), "env": dict(env or {})})
        command = args[0]
        if command in self.gates:
            await self.gates[command].wait()
        if self.failures[command]:
            kind = self.failures[command].popleft()
            if check:
                raise GitCommandError(args, 128, f"simulated {kind.value} failure", kind)
            return GitResult(128, "", "failed")
        if command == "status":
            return GitResult(0, self.status_output, "")
        return GitResult(0, "", "")


@pytest.fixture
def store(tmp_path):
    """Empty SQLite store in a temporary directory."""
    return SQLiteLocalStore(tmp_path / "data.db").ensure_schema()


@pytest.fixture
def seeded_store(store):
    """Store with one record in every collection (and two key results)."""
    store.collection(EntityKind.TODOS).create({"title": "Write report", "priority": "high"})
    okr_id = store.collection(EntityKind.OKRS).create({"title": "Ship v1", "quarter": "Q1", "year": 2024})
    store.collection(EntityKind.KEY_RESULTS).create(
        {"okr_id": okr_id, "title": "Users", "target_value": 50, "current_value": 37}
    )
    store.collection(EntityKind.KEY_RESULTS).create(
        {"okr_id": okr_id, "title": "Revenue", "target_value": 100, "current_value": 20}
    )
    store.collection(EntityKind.TASKS).create({"okr_id": okr_id, "title": "Landing page"})
    store.collection(EntityKind.NOTES).create({"title": "Ideas", "content": "more tests"})
    return store


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def fake_git():
    return FakeGitRunner()


@pytest.fixture
def s3_config():
    return S3Config(
        bucket="okr-backups",
        access_key_id="AKIATEST",
        secret_access_key="secret",
        path_prefix="backups/",
        compression=False,
    )


@pytest.fixture
def git_config():
    return GitConfig(
        remote_url="https://github.com/alice/personal-okr-data",
        auth={"method": "token", "token": "ghp_secret"},
    )
