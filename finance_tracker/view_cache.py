import logging
import threading
from collections import OrderedDict

logger = logging.getLogger(__name__)

TRANSACTIONS_VIEW = "transactions"
DASHBOARD_VIEW = "dashboard"
DEFAULT_MAX_ENTRIES = 512


class ViewCache:
    """Per-user memo of read-heavy pages, dropped whenever the user's ledger changes.

    At most ``max_entries`` results are kept; the least recently used one is
    evicted first.
    """

    def __init__(self, max_entries=DEFAULT_MAX_ENTRIES):
        self.max_entries = max(int(max_entries), 1)
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    def get_or_compute(self, user_id, view, key, compute):
        cache_key = (str(user_id), view, key)
        with self._lock:
            if cache_key in self._entries:
                self._entries.move_to_end(cache_key)
                return self._entries[cache_key]
        value = compute()
        with self._lock:
            self._entries[cache_key] = value
            self._entries.move_to_end(cache_key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return value

    def invalidate(self, user_id, views=(TRANSACTIONS_VIEW, DASHBOARD_VIEW)):
        user_key = str(user_id)
        with self._lock:
            stale = [key for key in self._entries if key[0] == user_key and key[1] in views]
            for key in stale:
                del self._entries[key]
        logger.debug("Invalidated %s cached views for user %s", len(stale), user_id)

    def __len__(self):
        return len(self._entries)
