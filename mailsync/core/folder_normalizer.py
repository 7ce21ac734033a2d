"""
Folder normalization.

Maps canonical roles (Inbox, Sent, Drafts, Trash, ...) to the server's folder
names for one account and back. The mapping comes from the account's
configuration only; a role the configuration does not map, or whose folder
the server does not have, stays unmapped and is never guessed.
"""
import logging
from typing import Dict, Iterable, List, Optional

from mailsync.models import ROLE_SYNC_ORDER, Account, Folder, FolderMapping, FolderType
from mailsync.network.backend import RemoteFolder
from mailsync.utils.errors import ConfigError, FolderNotConfiguredError

logger = logging.getLogger(__name__)

_PROVIDER_PREFIXES = ("[Gmail]/", "[Google Mail]/")


def _key(server_name: str) -> str:
    # INBOX is case-insensitive in IMAP, every other name is not
    return "INBOX" if server_name.upper() == "INBOX" else server_name


def display_name(server_name: str, delimiter: str = "/") -> str:
    """
    User-facing name for an unmapped folder.

    "INBOX" -> "Inbox", "[Gmail]/All Mail" -> "All Mail", "Work/Projects" -> "Projects".
    """
    if _key(server_name) == "INBOX":
        return "Inbox"
    name = server_name
    for prefix in _PROVIDER_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
    if delimiter and delimiter in name:
        name = name.rsplit(delimiter, 1)[-1]
    return name or server_name


class FolderNormalizer:
    """
    Args:
        account: The account whose folder mappings are used.
        remote_folders: Folders the server actually has. When given, mappings
            to folders the server lacks are left unmapped.
        mappings: Mappings to use instead of the account's (a backend with
            fixed folder names supplies its own).

    Raises:
        ConfigError: If a canonical role is mapped more than once.
    """

    def __init__(self, account: Account, remote_folders: Optional[Iterable[RemoteFolder]] = None,
                 mappings: Optional[Iterable[FolderMapping]] = None):
        self.account = account
        self._by_role: Dict[FolderType, FolderMapping] = {}
        self._by_server: Dict[str, FolderMapping] = {}
        self._remote: Optional[Dict[str, RemoteFolder]] = None
        if remote_folders is not None:
            self._remote = {_key(f.server_name): f for f in remote_folders}

        for mapping in (account.imap.folders if mappings is None else mappings):
            if mapping.folder_type.is_canonical:
                if mapping.folder_type in self._by_role:
                    raise ConfigError(
                        f"Account {account.id}: more than one folder mapped to {mapping.folder_type.value}"
                    )
                if self._remote is not None and _key(mapping.server_name) not in self._remote:
                    logger.info(
                        f"Account {account.id}: server has no {mapping.server_name!r}, "
                        f"{mapping.folder_type.value} stays unmapped"
                    )
                    continue
                self._by_role[mapping.folder_type] = mapping
            self._by_server[_key(mapping.server_name)] = mapping

    def server_name(self, role: FolderType) -> str:
        """
        Server name of a canonical role.

        Raises:
            FolderNotConfiguredError: If the role is unmapped.
        """
        mapping = self._by_role.get(role)
        if mapping is None:
            raise FolderNotConfiguredError(f"Account {self.account.id} has no {role.value} folder")
        return mapping.server_name

    def role_for(self, server_name: str) -> FolderType:
        mapping = self._by_server.get(_key(server_name))
        if mapping is None or mapping.folder_type not in self._by_role:
            return FolderType.CUSTOM
        return mapping.folder_type

    def local_name(self, server_name: str) -> str:
        mapping = self._by_server.get(_key(server_name))
        if mapping is not None and mapping.local_name:
            return mapping.local_name
        delimiter = "/"
        if self._remote is not None and _key(server_name) in self._remote:
            delimiter = self._remote[_key(server_name)].delimiter or "/"
        return display_name(server_name, delimiter)

    def mapped_roles(self) -> List[FolderType]:
        return [role for role in ROLE_SYNC_ORDER if role in self._by_role]

    def to_folder(self, server_name: str) -> Folder:
        return Folder(
            account_id=self.account.id,
            role=self.role_for(server_name),
            server_name=server_name,
            local_name=self.local_name(server_name),
        )

    def sync_targets(self, remote_folders: Iterable[RemoteFolder]) -> List[Folder]:
        """
        Folders to synchronize, canonical roles first in sync order.

        Custom folders are included only when the account syncs all folders.
        """
        selectable = {_key(f.server_name): f for f in remote_folders if f.selectable}
        targets = []
        for role in self.mapped_roles():
            name = self._by_role[role].server_name
            if _key(name) in selectable:
                targets.append(self.to_folder(selectable[_key(name)].server_name))
        if self.account.sync_all_folders:
            chosen = {_key(f.server_name) for f in targets}
            for key, remote in sorted(selectable.items()):
                if key not in chosen:
                    targets.append(self.to_folder(remote.server_name))
        return targets
