from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings

SIMULATION_FIELDS = (
    "case_id",
    "client_id",
    "conversation_id",
    "stage",
    "agent_id",
    "event_type",
    "status",
    "transcript",
    "score",
    "score_reason",
    "full_analysis",
    "turn_scores",
    "scoring_error",
    "call_duration_secs",
    "transcript_summary",
    "call_summary_title",
    "stage_status",
    "recording_key",
    "body_analysis",
)


class SimulationStore(ABC):
    @abstractmethod
    def find_or_create(
        self,
        *,
        case_id: str,
        conversation_id: str | None,
        created_after: datetime,
        require_unanalyzed: bool = True,
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """Resolves the session for a conversation in one atomic step.

        Lookup order: the session already tagged with ``conversation_id``;
        the newest session for ``case_id`` created at or after
        ``created_after`` whose conversation id is unset or equal (and, when
        ``require_unanalyzed`` is set, with no ``full_analysis``), which is
        tagged with ``conversation_id`` as it is claimed; otherwise a new
        session built from ``defaults``. Returns ``(record, created)``.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, simulation_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, simulation_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_by_case(self, case_id: str, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemorySimulationStore(SimulationStore):
    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def find_or_create(
        self,
        *,
        case_id: str,
        conversation_id: str | None,
        created_after: datetime,
        require_unanalyzed: bool = True,
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            if conversation_id:
                existing = self._find_by_conversation_id(conversation_id)
                if existing:
                    return dict(existing), False

            for record in sorted(self._records, key=lambda item: item["created_at"], reverse=True):
                if record.get("case_id") != case_id:
                    continue
                if record["created_at"] < created_after:
                    continue
                if require_unanalyzed and record.get("full_analysis"):
                    continue
                if conversation_id and record.get("conversation_id") not in (None, conversation_id):
                    continue
                record["updated_at"] = datetime.now(UTC)
                if conversation_id:
                    record["conversation_id"] = conversation_id
                return dict(record), False

            record = build_simulation_document(
                case_id=case_id,
                conversation_id=conversation_id,
                values=defaults,
            )
            record["_id"] = uuid4().hex
            self._records.append(record)
            return dict(record), True

    def update(self, simulation_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records:
                if record["_id"] != simulation_id:
                    continue
                record.update(dict(updates))
                record["updated_at"] = datetime.now(UTC)
                return dict(record)
        return None

    def get_by_id(self, simulation_id: str) -> dict[str, Any] | None:
        for record in self._records:
            if record["_id"] == simulation_id:
                return dict(record)
        return None

    def list_by_case(self, case_id: str, limit: int) -> list[dict[str, Any]]:
        matching = [dict(record) for record in self._records if record.get("case_id") == case_id]
        matching.sort(key=lambda item: item["created_at"], reverse=True)
        return matching[:limit]

    def _find_by_conversation_id(self, conversation_id: str) -> dict[str, Any] | None:
        for record in self._records:
            if record.get("conversation_id") == conversation_id:
                return record
        return None


class MongoSimulationStore(SimulationStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("case_id", 1), ("created_at", self._desc)])
        self._collection.create_index(
            [("conversation_id", 1)],
            unique=True,
            partialFilterExpression={"conversation_id": {"$exists": True, "$type": "string"}},
        )

    def find_or_create(
        self,
        *,
        case_id: str,
        conversation_id: str | None,
        created_after: datetime,
        require_unanalyzed: bool = True,
        defaults: Mapping[str, Any] | None = None,
    ) -> tuple[dict[str, Any], bool]:
        from pymongo import ReturnDocument
        from pymongo.errors import DuplicateKeyError

        if conversation_id:
            existing = self._collection.find_one({"conversation_id": conversation_id})
            if existing:
                return existing, False

        stub_filter: dict[str, Any] = {
            "case_id": case_id,
            "created_at": {"$gte": created_after},
        }
        if require_unanalyzed:
            stub_filter["full_analysis"] = {"$in": [None, ""]}
        if conversation_id:
            stub_filter["conversation_id"] = {"$in": [None, conversation_id]}
        claim: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        if conversation_id:
            claim["conversation_id"] = conversation_id
        stub = self._collection.find_one_and_update(
            stub_filter,
            {"$set": claim},
            sort=[("created_at", self._desc)],
            return_document=ReturnDocument.AFTER,
        )
        if stub:
            return stub, False

        document = build_simulation_document(
            case_id=case_id,
            conversation_id=conversation_id,
            values=defaults,
        )
        try:
            insert_result = self._collection.insert_one(document)
        except DuplicateKeyError:
            if not conversation_id:
                raise
            existing = self._collection.find_one({"conversation_id": conversation_id})
            if not existing:
                raise
            return existing, False
        document["_id"] = insert_result.inserted_id
        return document, True

    def update(self, simulation_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        from pymongo import ReturnDocument

        object_id = _to_object_id(simulation_id)
        if object_id is None:
            return None
        payload = dict(updates)
        payload["updated_at"] = datetime.now(UTC)
        return self._collection.find_one_and_update(
            {"_id": object_id},
            {"$set": payload},
            return_document=ReturnDocument.AFTER,
        )

    def get_by_id(self, simulation_id: str) -> dict[str, Any] | None:
        object_id = _to_object_id(simulation_id)
        if object_id is None:
            return None
        return self._collection.find_one({"_id": object_id})

    def list_by_case(self, case_id: str, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find({"case_id": case_id}).sort("created_at", self._desc).limit(limit)
        return list(cursor)


def _to_object_id(value: str) -> Any:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def create_simulation_store(settings: Settings) -> SimulationStore:
    return _create_simulation_store_cached(
        store_name=settings.simulations_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_simulations_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_simulation_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> SimulationStore:
    if store_name == "mongodb":
        return MongoSimulationStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemorySimulationStore()


def clear_simulation_store_cache() -> None:
    _create_simulation_store_cached.cache_clear()


def build_simulation_document(
    *,
    case_id: str,
    conversation_id: str | None,
    values: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    document: dict[str, Any] = {field_name: None for field_name in SIMULATION_FIELDS}
    document["turn_scores"] = []
    for field_name, value in (values or {}).items():
        if field_name in SIMULATION_FIELDS:
            document[field_name] = value
    document["case_id"] = case_id
    document["conversation_id"] = conversation_id
    document["created_at"] = now
    document["updated_at"] = now
    return document
