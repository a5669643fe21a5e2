import logging

from tubegate.core.errors import PersistenceError
from tubegate.core.keys import constant_time_equals, hash_secret
from tubegate.core.store import KeyStore
from tubegate.models.api_key import ApiKey

logger = logging.getLogger(__name__)

_MISSING_KEY_HASH = "0" * 64


async def verify_api_key(store: KeyStore, key_id: str, key_secret: str) -> ApiKey | None:
    """
    Resolve an active key by ``key_id`` and check its secret.

    Unknown, deactivated and wrong-secret keys all come back as None, and so
    does any storage failure: a database outage never grants access.
    """
    try:
        api_key = await store.find_active_by_key_id(key_id)
    except PersistenceError:
        logger.exception("api_key_lookup_failed", extra={"key_id": key_id})
        return None

    presented = hash_secret(key_secret)
    if api_key is None:
        # same digest work as a real miss
        constant_time_equals(presented, _MISSING_KEY_HASH)
        return None

    if not constant_time_equals(presented, api_key.key_hash):
        return None

    return api_key
