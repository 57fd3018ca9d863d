"""
Durable set of VRF subscription IDs already observed funded.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Set, Union

import structlog

from kuri_automation.core.exceptions import PersistenceError


logger = structlog.get_logger(__name__)


class FundedSubscriptionStore:
    """
    JSON-backed funded-set.

    Loaded once at construction and rewritten in full on every addition as
    ``{"fundedSubscriptions": [...], "lastUpdated": "<ISO-8601>"}``. IDs are
    kept as decimal strings. Entries are never removed.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = logger.bind(service="funded_subscriptions", path=str(self.path))
        self._ids: Set[str] = self._load()
        self.writes = 0

    def _load(self) -> Set[str]:
        if not self.path.exists():
            self.logger.info("No funded subscriptions file, starting empty")
            return set()

        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            ids = data.get("fundedSubscriptions", []) if isinstance(data, dict) else []
            loaded = {str(item) for item in ids}
        except (OSError, ValueError) as e:
            self.logger.error("Error loading funded subscriptions, starting empty", error=str(e))
            return set()

        self.logger.info("Loaded funded subscriptions", count=len(loaded))
        return loaded

    def __contains__(self, subscription_id) -> bool:
        return str(subscription_id) in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._ids))

    @property
    def ids(self) -> List[str]:
        return sorted(self._ids)

    def add(self, subscription_id) -> bool:
        """
        Mark ``subscription_id`` funded and persist the set.

        Returns False if it was already present. A failed write is logged and
        the in-memory set keeps the new ID.
        """
        key = str(subscription_id)
        if key in self._ids:
            return False

        self._ids.add(key)
        try:
            self._save()
        except PersistenceError as e:
            self.logger.error("Error saving funded subscriptions", error=e.message, subscription_id=key)
        return True

    def _save(self):
        payload = {
            "fundedSubscriptions": sorted(self._ids),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".funded-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}", {"path": str(self.path)}) from e

        self.writes += 1
        self.logger.debug("Saved funded subscriptions", count=len(self._ids))
