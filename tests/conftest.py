"""
Shared pytest fixtures for tenant-backup tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- User and bearer token fixtures
- A SQLite tenant database with record sets
- Mock S3 buckets (moto)
- In-memory record and object stores for pipeline tests
"""

import hashlib
import io
import zipfile

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import Column, Integer, MetaData, Numeric, String, Table, create_engine

from tenant_backup import create_app, db as _db
from tenant_backup.auth import hash_password, issue_token
from tenant_backup.backup import executor as executor_module
from tenant_backup.backup.records import SourceUnavailable
from tenant_backup.backup.storage import ListingEntry, StorageError
from tenant_backup.models import User


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    yield app

    # A failed test must not leave its requester marked as busy
    executor_module._running_requesters.clear()


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def admin_user(db):
    """
    Create an admin user.

    Username: admin
    Password: Admin123
    """
    user = User(username='admin', password_hash=hash_password('Admin123'), role='admin')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def staff_user(db):
    """
    Create a non-admin user.

    Username: staff
    Password: Staff123
    """
    user = User(username='staff', password_hash=hash_password('Staff123'), role='staff')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_headers(admin_user):
    return {'Authorization': f'Bearer {issue_token(admin_user)}'}


@pytest.fixture
def staff_headers(staff_user):
    return {'Authorization': f'Bearer {issue_token(staff_user)}'}


@pytest.fixture
def tenant_db_url(tmp_path):
    """
    SQLite tenant database with a `products` table holding 3 rows and an
    empty `categories` table.

    There is no `customers` table, so exporting it fails.
    """
    url = f"sqlite:///{tmp_path / 'tenant.db'}"
    engine = create_engine(url)
    metadata = MetaData()
    products = Table(
        'products', metadata,
        Column('id', Integer, primary_key=True),
        Column('name', String(80)),
        Column('price', Numeric(10, 2)),
    )
    Table(
        'categories', metadata,
        Column('id', Integer, primary_key=True),
        Column('name', String(80)),
    )
    metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(products.insert(), [
            {'id': 3, 'name': 'Lamp', 'price': '19.90'},
            {'id': 1, 'name': 'Chair', 'price': '49.00'},
            {'id': 2, 'name': 'Table', 'price': '120.50'},
        ])

    engine.dispose()
    return url


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates bucket 'avatars' holding a.png and thumbs/b.png.
    """
    with mock_aws():
        s3 = boto3.client(
            's3',
            region_name='us-east-1',
            aws_access_key_id='testing',
            aws_secret_access_key='testing'
        )
        s3.create_bucket(Bucket='avatars')
        s3.put_object(Bucket='avatars', Key='a.png', Body=b'png-a')
        s3.put_object(Bucket='avatars', Key='thumbs/b.png', Body=b'png-b')

        yield s3


@pytest.fixture
def backup_app(app, db, tenant_db_url, mock_s3):
    """App wired to the tenant database and the mocked 'avatars' bucket."""
    app.config['TENANT_DATABASE_URL'] = tenant_db_url
    return app


def read_archive(data: bytes) -> dict:
    """Open a finished archive and return {entry name: content}."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.testzip() is None
        return {name: archive.read(name) for name in archive.namelist()}


@pytest.fixture
def archive_reader():
    return read_archive


class FakeRecordStore:
    """In-memory record store. Names in `failing` raise SourceUnavailable."""

    def __init__(self, tables=None, failing=()):
        self.tables = tables or {}
        self.failing = set(failing)
        self.calls = []
        self.closed = False

    def select_all(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise SourceUnavailable(f"Failed to read record set {name}: connection lost")
        if name not in self.tables:
            raise SourceUnavailable(f"Record set does not exist: {name}")
        return list(self.tables[name])

    def close(self):
        self.closed = True


class FakeObjectStore:
    """
    In-memory object store keyed by full object key.

    Keys ending in '/' are folder placeholders. Prefixes in `failing_lists` raise on
    listing, keys in `missing` raise on download and keys in `broken` fail after the
    first chunk.
    """

    def __init__(self, containers=None, failing_lists=(), missing=(), broken=()):
        self.containers = containers or {}
        self.failing_lists = set(failing_lists)
        self.missing = set(missing)
        self.broken = set(broken)
        self.downloads = []
        self.closed = False

    def list_containers(self):
        return sorted(self.containers)

    def list_children(self, container, prefix=''):
        if (container, prefix) in self.failing_lists:
            raise StorageError(f"list failed for {container}/{prefix}")
        if container not in self.containers:
            raise StorageError(f"NoSuchBucket: {container}")

        folders = set()
        entries = []
        for key, data in self.containers[container].items():
            if not key.startswith(prefix) or key == prefix:
                continue
            rest = key[len(prefix):]
            if '/' in rest:
                folders.add(rest.split('/', 1)[0])
            else:
                entries.append(ListingEntry(
                    name=rest,
                    object_id=hashlib.md5(data).hexdigest(),
                    size=len(data)
                ))

        entries.extend(ListingEntry(name=name) for name in folders)
        return sorted(entries, key=lambda entry: entry.name)

    def download(self, container, key, chunk_size):
        self.downloads.append((container, key))
        if key in self.missing:
            raise StorageError(f"NoSuchKey: {container}/{key}")

        data = self.containers[container][key]
        return len(data), self._chunks(key, data, chunk_size)

    def _chunks(self, key, data, chunk_size):
        for offset in range(0, len(data), chunk_size):
            yield data[offset:offset + chunk_size]
            if key in self.broken:
                raise StorageError(f"connection reset while reading {key}")

    def close(self):
        self.closed = True


@pytest.fixture
def record_store():
    """Record store for the reference job: products has 3 rows, customers fails."""
    return FakeRecordStore(
        tables={
            'products': [
                {'id': 1, 'name': 'Chair'},
                {'id': 2, 'name': 'Table'},
                {'id': 3, 'name': 'Lamp'},
            ]
        },
        failing={'customers'}
    )


@pytest.fixture
def object_store():
    """Object store for the reference job: avatars holds a.png and thumbs/b.png."""
    return FakeObjectStore(containers={
        'avatars': {
            'a.png': b'png-a',
            'thumbs/b.png': b'png-b',
        }
    })


@pytest.fixture
def make_record_store():
    return FakeRecordStore


@pytest.fixture
def make_object_store():
    return FakeObjectStore
