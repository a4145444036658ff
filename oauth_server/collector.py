"""
Expired token garbage collection and the triggers that run it.
"""

import threading
import time
from typing import Callable, Iterable, List, Optional, Union

from loguru import logger

from oauth_server.config import OAuthSettings, get_settings
from oauth_server.models import Account, Consumer, Token
from oauth_server.repository import OAuthRepository


class ExpiredCollector:
    """Finds and deletes tokens that are expired, revoked or orphaned"""

    def __init__(self, repository: OAuthRepository, clock: Callable[[], float] = time.time):
        self.repository = repository
        self._clock = clock

    def collect(self, limit: int = 0) -> List[Token]:
        """Expired or revoked tokens, oldest expiry first. limit=0 means all of them."""
        return self.repository.find_expired_tokens(int(self._clock()), limit)

    def collect_for_account(self, account: Union[Account, str]) -> List[Token]:
        user_id = account.user_id if isinstance(account, Account) else account
        return self.repository.find_tokens_by_account(user_id)

    def collect_for_client(self, client: Union[Consumer, str]) -> List[Token]:
        client_id = client.client_id if isinstance(client, Consumer) else client
        return self.repository.find_tokens_by_client(client_id)

    def delete_multiple_tokens(self, tokens: Iterable[Token]) -> int:
        tokens = list(tokens)
        if not tokens:
            return 0
        return self.repository.delete(tokens)


class TokenExpiryTriggerHandler:
    """Scheduler and upstream-event entry points for token cleanup"""

    def __init__(self, collector: ExpiredCollector, settings: Optional[OAuthSettings] = None):
        self.collector = collector
        self.settings = settings or get_settings()
        self._cron_lock = threading.Lock()

    def handle_cron(self) -> int:
        batch_size = self.settings.token_cron_batch_size
        # 0 disables cron cleanup; collect(0) would mean "everything".
        if batch_size <= 0:
            logger.debug("[CRON] Token cron batch size is 0, skipping")
            return 0

        if not self._cron_lock.acquire(blocking=False):
            logger.debug("[CRON] Previous run still in progress, skipping")
            return 0
        try:
            tokens = self.collector.collect(batch_size)
            deleted = self.collector.delete_multiple_tokens(tokens)
        finally:
            self._cron_lock.release()
        logger.info(f"[CRON] Deleted {deleted} expired tokens")
        return deleted

    def handle_user_update(self, account: Union[Account, str]) -> int:
        deleted = self.collector.delete_multiple_tokens(self.collector.collect_for_account(account))
        user_id = account.user_id if isinstance(account, Account) else account
        logger.info(f"[EVENTS] Deleted {deleted} tokens of account {user_id}")
        return deleted

    def handle_consumer_update(self, consumer: Union[Consumer, str]) -> int:
        deleted = self.collector.delete_multiple_tokens(self.collector.collect_for_client(consumer))
        client_id = consumer.client_id if isinstance(consumer, Consumer) else consumer
        logger.info(f"[EVENTS] Deleted {deleted} tokens of client {client_id}")
        return deleted
