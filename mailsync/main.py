"""
Engine entry point.

Wires the shared services (cache, token store, OAuth2 manager, search index)
and runs the account supervisor until cancelled.
"""
import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from mailsync import config
from mailsync.auth.oauth_manager import OAuth2Manager
from mailsync.auth.token_store import TokenStore
from mailsync.config import AppLimits, load_env
from mailsync.core.search import CacheSearchIndex
from mailsync.core.supervisor import AccountSupervisor
from mailsync.models import Account
from mailsync.storage.cache_repo import CacheRepo
from mailsync.storage.db import init_db
from mailsync.storage.encryption import SecretBox
from mailsync.utils.logging_cfg import setup_logging

logger = logging.getLogger(__name__)


def build_supervisor(accounts: Iterable[Account], limits: AppLimits,
                     db_path: Union[str, Path], key_file: Optional[Path] = None) -> AccountSupervisor:
    """Create the shared services over one database and a supervisor using them."""
    secret_box = SecretBox(key_file=key_file)
    index = CacheSearchIndex(db_path)
    cache = CacheRepo(db_path, secret_box, index)
    oauth = OAuth2Manager(TokenStore(db_path, secret_box))
    return AccountSupervisor(accounts, cache, oauth, limits, index)


async def run(accounts: Iterable[Account], limits: Optional[AppLimits] = None,
              db_path: Optional[Union[str, Path]] = None, debug: bool = False) -> None:
    """
    Run the engine for `accounts` until the task is cancelled.

    Raises:
        ConfigError: An account or the limits are malformed.
    """
    load_env()
    setup_logging(debug=debug, level=config.LOG_LEVEL)

    accounts = list(accounts)
    limits = limits or AppLimits()
    limits.validate()
    for account in accounts:
        account.validate()

    db_path = db_path or config.SQLITE_DB_PATH
    init_db(db_path)
    supervisor = build_supervisor(accounts, limits, db_path, config.SECRET_KEY_FILE)

    await supervisor.start()
    try:
        await asyncio.Event().wait()
    finally:
        await supervisor.stop()
