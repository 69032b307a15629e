"""
Firestore access for entitlement state.
All writes are merge-upserts keyed by document id; nothing here deletes.
"""
from datetime import datetime
from typing import Optional
from core.config import logger, ENTITLEMENTS_COLLECTION, EVENTS_COLLECTION
from utils.eduzz import UpstreamDependencyError


class FirestoreEntitlementStore:
    def __init__(self, db=None):
        if db is None:
            from core.auth import fb_fs
            db = fb_fs
        self.db = db

    def _collection(self, name: str):
        if self.db is None:
            raise UpstreamDependencyError("document store unavailable")
        return self.db.collection(name)

    def get_entitlement(self, uid: str) -> Optional[dict]:
        try:
            snap = self._collection(ENTITLEMENTS_COLLECTION).document(uid).get()
        except UpstreamDependencyError:
            raise
        except Exception as ex:
            raise UpstreamDependencyError(f"entitlement read failed: {ex}") from ex
        return snap.to_dict() if snap.exists else None

    def merge_entitlement(self, uid: str, fields: dict) -> None:
        self._merge(ENTITLEMENTS_COLLECTION, uid, fields)

    def merge_event(self, event_id: str, fields: dict, received_at: Optional[datetime] = None) -> None:
        """Upsert eduzz_events/{event_id}. receivedAt is stamped on first write only."""
        if received_at is not None:
            try:
                snap = self._collection(EVENTS_COLLECTION).document(event_id).get()
            except UpstreamDependencyError:
                raise
            except Exception as ex:
                raise UpstreamDependencyError(f"{EVENTS_COLLECTION} read failed: {ex}") from ex
            if not snap.exists:
                fields = {**fields, "receivedAt": received_at}
        self._merge(EVENTS_COLLECTION, event_id, fields)

    def _merge(self, collection: str, doc_id: str, fields: dict) -> None:
        try:
            self._collection(collection).document(doc_id).set(fields, merge=True)
        except UpstreamDependencyError:
            raise
        except Exception as ex:
            logger.warning(f"[store] merge into {collection}/{doc_id} failed: {ex}")
            raise UpstreamDependencyError(f"{collection} write failed: {ex}") from ex


_store: Optional[FirestoreEntitlementStore] = None


def get_store() -> FirestoreEntitlementStore:
    """
    Dependency for FastAPI routes to get the entitlement store
    Usage:
        @router.post("/items")
        def handler(store: FirestoreEntitlementStore = Depends(get_store)):
            ...
    """
    global _store
    if _store is None:
        _store = FirestoreEntitlementStore()
    return _store
