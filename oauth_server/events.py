"""
Session listeners that clear tokens when accounts or consumers change or are deleted.

Updated entities are recorded at flush and handed to the trigger handler only
once the transaction commits, so a rolled back update leaves tokens alone.
"""

from sqlalchemy import event
from loguru import logger

from oauth_server.collector import TokenExpiryTriggerHandler
from oauth_server.models import Account, Consumer

PENDING_ACCOUNTS = "oauth_updated_accounts"
PENDING_CONSUMERS = "oauth_updated_consumers"


def register_lifecycle_listeners(session_factory, handler: TokenExpiryTriggerHandler):
    """Attach listeners to every session made by ``session_factory``"""

    @event.listens_for(session_factory, "after_flush")
    def receive_after_flush(session, flush_context):
        updated = [instance for instance in session.dirty if session.is_modified(instance)]
        for instance in updated + list(session.deleted):
            if isinstance(instance, Account):
                session.info.setdefault(PENDING_ACCOUNTS, set()).add(instance.user_id)
            elif isinstance(instance, Consumer):
                session.info.setdefault(PENDING_CONSUMERS, set()).add(instance.client_id)

    @event.listens_for(session_factory, "after_commit")
    def receive_after_commit(session):
        accounts = session.info.pop(PENDING_ACCOUNTS, set())
        consumers = session.info.pop(PENDING_CONSUMERS, set())
        for user_id in sorted(accounts):
            handler.handle_user_update(user_id)
        for client_id in sorted(consumers):
            handler.handle_consumer_update(client_id)

    @event.listens_for(session_factory, "after_rollback")
    def receive_after_rollback(session):
        session.info.pop(PENDING_ACCOUNTS, None)
        session.info.pop(PENDING_CONSUMERS, None)

    logger.info("[EVENTS] Token lifecycle listeners registered")
    return receive_after_flush, receive_after_commit, receive_after_rollback
