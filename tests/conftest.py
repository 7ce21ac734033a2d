import pytest
from cryptography.fernet import Fernet

from mailsync.auth.oauth_manager import OAuth2Manager
from mailsync.auth.token_store import TokenStore
from mailsync.config import AppLimits
from mailsync.models import Folder, FolderType
from mailsync.storage.cache_repo import CacheRepo
from mailsync.storage.db import init_db
from mailsync.storage.encryption import SecretBox
from tests.helpers import FakeBrowser, FakeClock, FakeOAuthProvider, RecordingSink


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "mailsync.db"
    init_db(path)
    return path


@pytest.fixture
def secret_box():
    return SecretBox(key=Fernet.generate_key())


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cache(db_path, secret_box, sink):
    return CacheRepo(db_path, secret_box, sink)


@pytest.fixture
def token_store(db_path, secret_box):
    return TokenStore(db_path, secret_box)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeOAuthProvider()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def oauth(token_store, provider, browser, clock):
    return OAuth2Manager(token_store, provider_factory=lambda account: provider,
                         open_url=browser, clock=clock, timeout=5)


@pytest.fixture
def limits():
    return AppLimits(max_messages_per_folder=50, network_timeout=5)


@pytest.fixture
def inbox(cache):
    return cache.upsert_folder(Folder(account_id="acc1", role=FolderType.INBOX,
                                      server_name="INBOX", local_name="Inbox"))
