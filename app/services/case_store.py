from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class CaseStore(ABC):
    @abstractmethod
    def get_case(self, case_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def touch_last_activity(self, case_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create_case(
        self,
        *,
        case_id: str | None = None,
        organization_id: str | None = None,
        case_number: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError


class ScorePromptStore(ABC):
    @abstractmethod
    def get_active_score_prompt(self, organization_id: str | None) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def save_score_prompt(self, organization_id: str | None, content: str) -> None:
        raise NotImplementedError


class InMemoryCaseStore(CaseStore):
    def __init__(self) -> None:
        self._cases: dict[str, dict[str, Any]] = {}

    def get_case(self, case_id: str) -> dict[str, Any] | None:
        case = self._cases.get(case_id)
        return dict(case) if case else None

    def touch_last_activity(self, case_id: str) -> bool:
        case = self._cases.get(case_id)
        if not case:
            return False
        case["updated_at"] = datetime.now(UTC)
        return True

    def create_case(
        self,
        *,
        case_id: str | None = None,
        organization_id: str | None = None,
        case_number: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        case = {
            "_id": case_id or uuid4().hex,
            "organization_id": organization_id,
            "case_number": case_number,
            "client_id": client_id,
            "created_at": now,
            "updated_at": now,
        }
        self._cases[case["_id"]] = case
        return dict(case)


class InMemoryScorePromptStore(ScorePromptStore):
    def __init__(self) -> None:
        self._prompts: dict[str | None, str] = {}

    def get_active_score_prompt(self, organization_id: str | None) -> str | None:
        prompt = self._prompts.get(organization_id)
        if prompt is None and organization_id is not None:
            prompt = self._prompts.get(None)
        return prompt

    def save_score_prompt(self, organization_id: str | None, content: str) -> None:
        self._prompts[organization_id] = content


class MongoCaseStore(CaseStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]

    def get_case(self, case_id: str) -> dict[str, Any] | None:
        return self._collection.find_one({"_id": case_id})

    def touch_last_activity(self, case_id: str) -> bool:
        result = self._collection.update_one(
            {"_id": case_id},
            {"$set": {"updated_at": datetime.now(UTC)}},
        )
        return result.matched_count > 0

    def create_case(
        self,
        *,
        case_id: str | None = None,
        organization_id: str | None = None,
        case_number: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        case = {
            "_id": case_id or uuid4().hex,
            "organization_id": organization_id,
            "case_number": case_number,
            "client_id": client_id,
            "created_at": now,
            "updated_at": now,
        }
        self._collection.insert_one(case)
        return case


class MongoScorePromptStore(ScorePromptStore):
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
        self._collection.create_index([("organization_id", 1), ("updated_at", self._desc)])

    def get_active_score_prompt(self, organization_id: str | None) -> str | None:
        scopes = [organization_id, None] if organization_id is not None else [None]
        for scope in scopes:
            document = self._collection.find_one(
                {"organization_id": scope, "is_active": True},
                sort=[("updated_at", self._desc)],
            )
            if document and isinstance(document.get("content"), str):
                return document["content"]
        return None

    def save_score_prompt(self, organization_id: str | None, content: str) -> None:
        self._collection.update_many(
            {"organization_id": organization_id, "is_active": True},
            {"$set": {"is_active": False}},
        )
        self._collection.insert_one(
            {
                "organization_id": organization_id,
                "content": content,
                "is_active": True,
                "updated_at": datetime.now(UTC),
            },
        )


def create_case_store(settings: Settings) -> CaseStore:
    return _create_case_store_cached(
        store_name=settings.simulations_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_cases_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


def create_score_prompt_store(settings: Settings) -> ScorePromptStore:
    return _create_score_prompt_store_cached(
        store_name=settings.simulations_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_prompts_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_case_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> CaseStore:
    if store_name == "mongodb":
        return MongoCaseStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryCaseStore()


@lru_cache
def _create_score_prompt_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> ScorePromptStore:
    if store_name == "mongodb":
        return MongoScorePromptStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryScorePromptStore()


def clear_case_store_cache() -> None:
    _create_case_store_cached.cache_clear()
    _create_score_prompt_store_cached.cache_clear()
