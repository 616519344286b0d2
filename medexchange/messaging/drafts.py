"""
Compose drafts.

Other screens (a medication request or offer) can prefill the message box
and pick the hospital to write to.  Both values are consumed once: reading
them also removes them, so a reload does not prefill again.
"""

from __future__ import annotations

from medexchange.messaging.ledger import KeyValueStore, MemoryKeyValueStore


class DraftStore:

    DRAFT_KEY = "messageDraft"
    TARGET_KEY = "messageTarget"

    def __init__(self, hospital_id: str, store: KeyValueStore | None = None) -> None:
        self._hospital_id = hospital_id
        self._store = store or MemoryKeyValueStore()

    def rebind(self, hospital_id: str) -> None:
        if hospital_id:
            self._hospital_id = hospital_id

    def _key(self, name: str) -> str:
        return f"{self._hospital_id}:{name}"

    def _consume(self, name: str) -> str | None:
        value = self._store.get(self._key(name))
        if value:
            self._store.delete(self._key(name))
        return value or None

    def set_draft(self, text: str) -> None:
        self._store.set(self._key(self.DRAFT_KEY), text)

    def consume_draft(self) -> str:
        return self._consume(self.DRAFT_KEY) or ""

    def set_target(self, hospital_id: str) -> None:
        self._store.set(self._key(self.TARGET_KEY), hospital_id)

    def consume_target(self) -> str | None:
        return self._consume(self.TARGET_KEY)
