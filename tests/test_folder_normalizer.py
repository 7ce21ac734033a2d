import pytest

from mailsync.core.folder_normalizer import FolderNormalizer, display_name
from mailsync.models import FolderMapping, FolderType
from mailsync.network.backend import RemoteFolder
from mailsync.utils.errors import ConfigError, FolderNotConfiguredError
from tests.helpers import make_account


def _gmail_style_account(**overrides):
    account = make_account(**overrides)
    account.imap.folders = [
        FolderMapping(FolderType.INBOX, "INBOX", "Inbox"),
        FolderMapping(FolderType.SENT, "[Gmail]/Sent Mail", "Sent"),
        FolderMapping(FolderType.TRASH, "[Gmail]/Trash", "Trash"),
    ]
    return account


@pytest.mark.parametrize("server_name,expected", [
    ("INBOX", "Inbox"),
    ("inbox", "Inbox"),
    ("[Gmail]/All Mail", "All Mail"),
    ("[Google Mail]/Starred", "Starred"),
    ("Work/Projects", "Projects"),
    ("Receipts", "Receipts"),
])
def test_display_name(server_name, expected):
    assert display_name(server_name) == expected


def test_display_name_uses_server_delimiter():
    assert display_name("Work.Projects", ".") == "Projects"


def test_roles_map_both_ways():
    normalizer = FolderNormalizer(_gmail_style_account())

    assert normalizer.server_name(FolderType.SENT) == "[Gmail]/Sent Mail"
    assert normalizer.role_for("[Gmail]/Sent Mail") is FolderType.SENT
    assert normalizer.role_for("inbox") is FolderType.INBOX
    assert normalizer.role_for("Receipts") is FolderType.CUSTOM
    assert normalizer.local_name("[Gmail]/Sent Mail") == "Sent"


def test_unmapped_role_is_never_guessed():
    normalizer = FolderNormalizer(_gmail_style_account())

    with pytest.raises(FolderNotConfiguredError):
        normalizer.server_name(FolderType.DRAFTS)
    assert normalizer.role_for("Drafts") is FolderType.CUSTOM


def test_mapping_to_folder_missing_on_server_stays_unmapped():
    remote = [RemoteFolder("INBOX"), RemoteFolder("[Gmail]/Sent Mail")]
    normalizer = FolderNormalizer(_gmail_style_account(), remote)

    assert normalizer.mapped_roles() == [FolderType.INBOX, FolderType.SENT]
    with pytest.raises(FolderNotConfiguredError):
        normalizer.server_name(FolderType.TRASH)


def test_duplicate_role_is_a_config_error():
    account = make_account()
    account.imap.folders.append(FolderMapping(FolderType.SENT, "Sent Items"))

    with pytest.raises(ConfigError):
        FolderNormalizer(account)


def test_sync_targets_put_inbox_first_and_skip_custom_by_default():
    remote = [
        RemoteFolder("Archive"),
        RemoteFolder("[Gmail]/Trash"),
        RemoteFolder("[Gmail]", attributes={"\\Noselect"}),
        RemoteFolder("[Gmail]/Sent Mail"),
        RemoteFolder("INBOX"),
    ]
    normalizer = FolderNormalizer(_gmail_style_account(), remote)

    targets = normalizer.sync_targets(remote)

    assert [f.server_name for f in targets] == ["INBOX", "[Gmail]/Sent Mail", "[Gmail]/Trash"]
    assert [f.role for f in targets] == [FolderType.INBOX, FolderType.SENT, FolderType.TRASH]


def test_sync_targets_include_selectable_custom_folders_when_asked():
    remote = [
        RemoteFolder("Zeta"),
        RemoteFolder("INBOX"),
        RemoteFolder("Alpha"),
        RemoteFolder("[Gmail]", attributes={"\\Noselect"}),
    ]
    account = _gmail_style_account(sync_all_folders=True)

    targets = FolderNormalizer(account, remote).sync_targets(remote)

    assert [f.server_name for f in targets] == ["INBOX", "Alpha", "Zeta"]
    assert targets[1].role is FolderType.CUSTOM
    assert targets[1].local_name == "Alpha"


def test_backend_mappings_replace_account_mappings():
    mappings = [FolderMapping(FolderType.INBOX, "INBOX"), FolderMapping(FolderType.SPAM, "SPAM", "Spam")]

    normalizer = FolderNormalizer(make_account(), mappings=mappings)

    assert normalizer.server_name(FolderType.SPAM) == "SPAM"
    with pytest.raises(FolderNotConfiguredError):
        normalizer.server_name(FolderType.SENT)
