"""
Tests for service.rule_service: retrieval and two-phase writes.

Every test using the ``service`` fixture runs against both the SQLite and
the in-memory index.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from vector_rules.errors import (
    DimensionMismatch,
    EmbeddingFailed,
    InvalidInput,
    OperationCancelled,
    RuleNotFound,
    RuleTypeNotFound,
    StorageUnavailable,
)
from vector_rules.rag.embedding_provider import MockEmbeddingProvider
from vector_rules.rag.vector_store import InMemoryVectorStore, SQLiteVectorStore
from vector_rules.service.rule_service import RuleService, content_to_text

# Must match the dimension of the conftest fixtures.
DIM = 64

RULES = {
    "security": [
        "Rotate API keys every 90 days",
        "Require MFA for administrator accounts",
        "Encrypt backups at rest",
    ],
    "billing": [
        "Refunds over 500 EUR need manager approval",
        "Invoices are issued on the first business day",
    ],
}


class _FailingProvider(MockEmbeddingProvider):
    def embed(self, text):
        raise EmbeddingFailed("provider down")


class _CrashingProvider(MockEmbeddingProvider):
    def embed(self, text):
        raise RuntimeError("model crashed")


class _CancellingProvider(MockEmbeddingProvider):
    """Sets the caller's cancel event while embedding."""

    def __init__(self, event: threading.Event) -> None:
        super().__init__(dim=DIM)
        self._event = event

    def embed(self, text):
        self._event.set()
        return super().embed(text)


class _FailingIndex(InMemoryVectorStore):
    """In-memory index whose writes can be made to fail."""

    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self.fail_writes = False

    def upsert(self, entity_id, vector, category=None):
        if self.fail_writes:
            raise StorageUnavailable("index down")
        super().upsert(entity_id, vector, category)

    def remove(self, entity_id):
        if self.fail_writes:
            raise StorageUnavailable("index down")
        super().remove(entity_id)


class _CancelAfterWriteIndex(InMemoryVectorStore):
    """Sets ``event`` right after each successful index write."""

    def __init__(self, dimension: int, event: threading.Event) -> None:
        super().__init__(dimension)
        self.event = event
        self.armed = False

    def upsert(self, entity_id, vector, category=None):
        super().upsert(entity_id, vector, category)
        if self.armed:
            self.event.set()

    def remove(self, entity_id):
        super().remove(entity_id)
        if self.armed:
            self.event.set()


class _AfterUpsertHook:
    """Calls ``after_upsert`` once each index upsert has landed."""

    after_upsert = None

    def upsert(self, entity_id, vector, category=None):
        super().upsert(entity_id, vector, category)
        if self.after_upsert is not None:
            self.after_upsert()


class _HookedMemoryIndex(_AfterUpsertHook, InMemoryVectorStore):
    pass


class _HookedSQLiteIndex(_AfterUpsertHook, SQLiteVectorStore):
    pass


@pytest.fixture(params=["memory", "sqlite"])
def hooked_index(request, database):
    if request.param == "sqlite":
        return _HookedSQLiteIndex(database, dimension=DIM)
    return _HookedMemoryIndex(DIM)


def _populate(service):
    created = {}
    for rule_type, texts in RULES.items():
        for text in texts:
            created[text] = service.create_rule(rule_type, text)
    return created


class TestRetrieveSimilar:
    def test_own_content_ranks_first(self, service, seeded):
        created = _populate(service)
        text = "Require MFA for administrator accounts"
        matches = service.retrieve_similar([text], n=3)
        assert matches[0].id == created[text].id
        assert matches[0].score == pytest.approx(1.0, abs=1e-6)
        assert matches[0].content == text
        assert matches[0].ruleTypeName == "security"

    def test_bounded_and_sorted(self, service, seeded):
        _populate(service)
        matches = service.retrieve_similar(["keys"], n=3)
        assert len(matches) == 3
        assert len({m.id for m in matches}) == 3
        scores = [m.score for m in matches]
        assert scores == sorted(scores, reverse=True)

    def test_fewer_rules_than_n(self, service, seeded):
        _populate(service)
        assert len(service.retrieve_similar(["anything"], n=50)) == 5

    def test_empty_store(self, service, seeded):
        assert service.retrieve_similar(["anything"], n=5) == []

    def test_type_filter(self, service, seeded):
        _populate(service)
        matches = service.retrieve_similar(["Rotate API keys every 90 days"], rule_type="billing", n=10)
        assert len(matches) == 2
        assert all(m.ruleTypeId == seeded["billing"].id for m in matches)

    def test_unknown_type_filter_is_empty(self, service, seeded):
        _populate(service)
        assert service.retrieve_similar(["keys"], rule_type="nonexistent", n=5) == []

    def test_duplicate_queries_do_not_change_ranking(self, service, seeded):
        _populate(service)
        single = service.retrieve_similar(["encryption"], n=5)
        doubled = service.retrieve_similar(["encryption", "encryption"], n=5)
        assert [m.id for m in doubled] == [m.id for m in single]
        assert [m.score for m in doubled] == pytest.approx([m.score for m in single])

    def test_deterministic(self, service, seeded):
        _populate(service)
        first = service.retrieve_similar(["refunds", "approval"], n=5)
        second = service.retrieve_similar(["refunds", "approval"], n=5)
        assert [(m.id, m.score) for m in first] == [(m.id, m.score) for m in second]

    def test_deleted_rule_never_returned(self, service, seeded):
        created = _populate(service)
        text = "Encrypt backups at rest"
        service.delete_rule(created[text].id)
        assert created[text].id not in {m.id for m in service.retrieve_similar([text], n=10)}

    def test_match_serialization_hides_embedding(self, service, seeded):
        _populate(service)
        payload = service.retrieve_similar(["keys"], n=1)[0].model_dump(mode="json")
        assert "embedding" not in payload
        assert {"id", "ruleTypeId", "content", "score", "createdAt"} <= set(payload)

    @pytest.mark.parametrize("n", [0, -3, 101, True, "5"])
    def test_n_out_of_range(self, service, seeded, n):
        with pytest.raises(InvalidInput):
            service.retrieve_similar(["keys"], n=n)

    @pytest.mark.parametrize("queries", [[], "a single string", ["ok", ""], ["   "]])
    def test_bad_queries(self, service, seeded, queries):
        with pytest.raises(InvalidInput):
            service.retrieve_similar(queries, n=5)

    def test_custom_max_results(self, store, index, provider, seeded):
        service = RuleService(store, index, provider, max_results=5)
        with pytest.raises(InvalidInput):
            service.retrieve_similar(["keys"], n=6)

    def test_embedding_failure_propagates(self, store, index, seeded):
        service = RuleService(store, index, _FailingProvider(dim=DIM))
        with pytest.raises(EmbeddingFailed) as info:
            service.retrieve_similar(["a", "b"], n=5)
        assert info.value.index == 0

    def test_stale_index_hit_is_dropped(self, store, provider, seeded):
        index = InMemoryVectorStore(dimension=DIM)
        service = RuleService(store, index, provider)
        rule = service.create_rule("security", "real rule")
        index.upsert(999, provider.embed("ghost"), category=seeded["security"].id)

        matches = service.retrieve_similar(["ghost"], n=10)
        assert [m.id for m in matches] == [rule.id]

    def test_rename_keeps_filter_working(self, service, rule_types, seeded):
        created = _populate(service)
        rule_types.update_rule_type(seeded["security"].id, "infosec")
        matches = service.retrieve_similar(["Encrypt backups at rest"], rule_type="infosec", n=10)
        assert matches[0].id == created["Encrypt backups at rest"].id
        assert matches[0].ruleTypeName == "infosec"
        assert service.retrieve_similar(["keys"], rule_type="security", n=10) == []


class TestCreateRule:
    def test_persists_row_and_vector(self, service, index, seeded):
        rule = service.create_rule("security", {"description": "Rotate keys", "days": 90})
        assert rule.ruleTypeId == seeded["security"].id
        assert rule.content == {"description": "Rotate keys", "days": 90}
        assert service.get_rule(rule.id).embedding is not None
        assert index.ids() == {rule.id}

    def test_json_content_embeds_canonically(self, service, seeded):
        rule = service.create_rule("security", {"b": 2, "a": 1})
        matches = service.retrieve_similar(['{"a":1,"b":2}'], n=1)
        assert matches[0].id == rule.id
        assert matches[0].score == pytest.approx(1.0, abs=1e-6)

    def test_unknown_type_persists_nothing(self, service, store, index, seeded):
        with pytest.raises(RuleTypeNotFound):
            service.create_rule("nonexistent", "text")
        assert store.list_rules() == []
        assert index.count() == 0

    def test_missing_content(self, service, seeded):
        with pytest.raises(InvalidInput):
            service.create_rule("security", None)

    def test_embedding_failure_persists_nothing(self, store, index, seeded):
        service = RuleService(store, index, _FailingProvider(dim=DIM))
        with pytest.raises(EmbeddingFailed):
            service.create_rule("security", "text")
        assert store.list_rules() == []
        assert index.count() == 0

    def test_unexpected_provider_error_is_typed(self, store, index, seeded):
        service = RuleService(store, index, _CrashingProvider(dim=DIM))
        with pytest.raises(EmbeddingFailed) as info:
            service.create_rule("security", "text")
        assert isinstance(info.value.__cause__, RuntimeError)
        with pytest.raises(EmbeddingFailed):
            service.retrieve_similar(["text"], n=1)
        assert store.list_rules() == []
        assert index.count() == 0

    def test_index_failure_rolls_back_row(self, store, provider, seeded):
        index = _FailingIndex(DIM)
        service = RuleService(store, index, provider)
        index.fail_writes = True
        with pytest.raises(StorageUnavailable):
            service.create_rule("security", "text")
        assert store.list_rules() == []
        assert index.count() == 0

    def test_provider_index_dimension_mismatch(self, store, seeded):
        with pytest.raises(DimensionMismatch):
            RuleService(store, InMemoryVectorStore(dimension=DIM), MockEmbeddingProvider(dim=DIM + 1))

    def test_concurrent_creates(self, service, index, seeded):
        texts = [f"rule number {i}" for i in range(20)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            rules = list(pool.map(lambda t: service.create_rule("billing", t), texts))
        assert len({r.id for r in rules}) == 20
        assert index.count() == 20
        for text, rule in zip(texts[:3], rules[:3]):
            assert service.retrieve_similar([text], n=1)[0].id == rule.id


class TestUpdateRule:
    def test_replaces_content_and_vector(self, service, seeded):
        rule = service.create_rule("security", "old wording")
        updated = service.update_rule(rule.id, "billing", "new wording")
        assert updated.content == "new wording"
        assert updated.ruleTypeId == seeded["billing"].id

        top = service.retrieve_similar(["new wording"], n=1)[0]
        assert top.id == rule.id
        assert top.score == pytest.approx(1.0, abs=1e-6)
        assert service.retrieve_similar(["old wording"], rule_type="security", n=5) == []

    def test_missing_rule(self, service, seeded):
        with pytest.raises(RuleNotFound):
            service.update_rule(404, "security", "text")

    def test_unknown_type(self, service, seeded):
        rule = service.create_rule("security", "text")
        with pytest.raises(RuleTypeNotFound):
            service.update_rule(rule.id, "nonexistent", "other")
        assert service.get_rule(rule.id).content == "text"

    def test_index_failure_keeps_old_state(self, store, provider, seeded):
        index = _FailingIndex(DIM)
        service = RuleService(store, index, provider)
        rule = service.create_rule("security", "original")
        index.fail_writes = True

        with pytest.raises(StorageUnavailable):
            service.update_rule(rule.id, "billing", "replacement")

        index.fail_writes = False
        kept = service.get_rule(rule.id)
        assert kept.content == "original"
        assert kept.ruleTypeId == seeded["security"].id
        top = service.retrieve_similar(["original"], n=1)[0]
        assert top.id == rule.id
        assert top.score == pytest.approx(1.0, abs=1e-6)


class TestDeleteRule:
    def test_removes_row_and_vector(self, service, index, seeded):
        rule = service.create_rule("security", "text")
        service.delete_rule(rule.id)
        with pytest.raises(RuleNotFound):
            service.get_rule(rule.id)
        assert index.count() == 0

    def test_missing(self, service, seeded):
        with pytest.raises(RuleNotFound):
            service.delete_rule(404)

    def test_frees_rule_type(self, service, rule_types, seeded):
        rule = service.create_rule("billing", "text")
        with pytest.raises(InvalidInput):
            rule_types.delete_rule_type(seeded["billing"].id)
        service.delete_rule(rule.id)
        rule_types.delete_rule_type(seeded["billing"].id)


class TestCancellation:
    def test_cancelled_before_start(self, service, index, store, seeded):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            service.create_rule("security", "text", cancel=cancel)
        with pytest.raises(OperationCancelled):
            service.retrieve_similar(["text"], n=1, cancel=cancel)
        assert store.list_rules() == []
        assert index.count() == 0

    def test_cancelled_during_embedding(self, store, index, seeded):
        cancel = threading.Event()
        service = RuleService(store, index, _CancellingProvider(cancel))
        with pytest.raises(OperationCancelled):
            service.create_rule("security", "text", cancel=cancel)
        assert store.list_rules() == []
        assert index.count() == 0

    def test_create_cancelled_after_index_write(self, store, provider, seeded):
        cancel = threading.Event()
        index = _CancelAfterWriteIndex(DIM, cancel)
        service = RuleService(store, index, provider)
        index.armed = True

        with pytest.raises(OperationCancelled):
            service.create_rule("security", "text", cancel=cancel)
        assert store.list_rules() == []
        assert index.count() == 0

    def test_update_cancelled_after_index_write(self, store, provider, seeded):
        cancel = threading.Event()
        index = _CancelAfterWriteIndex(DIM, cancel)
        service = RuleService(store, index, provider)
        rule = service.create_rule("security", "original")
        index.armed = True

        with pytest.raises(OperationCancelled):
            service.update_rule(rule.id, "security", "replacement", cancel=cancel)

        index.armed = False
        assert service.get_rule(rule.id).content == "original"
        top = service.retrieve_similar(["original"], n=1)[0]
        assert top.id == rule.id
        assert top.score == pytest.approx(1.0, abs=1e-6)

    def test_delete_cancelled_after_index_write(self, store, provider, seeded):
        cancel = threading.Event()
        index = _CancelAfterWriteIndex(DIM, cancel)
        service = RuleService(store, index, provider)
        rule = service.create_rule("security", "survivor")
        index.armed = True

        with pytest.raises(OperationCancelled):
            service.delete_rule(rule.id, cancel=cancel)

        index.armed = False
        assert service.get_rule(rule.id).content == "survivor"
        assert index.ids() == {rule.id}


class TestMaintenance:
    def test_reembed_restores_missing_vector(self, service, store, index, seeded):
        rule = service.create_rule("security", "Rotate API keys")
        store.update_embedding(rule.id, None)
        index.remove(rule.id)
        assert service.retrieve_similar(["Rotate API keys"], n=5) == []

        refreshed = service.reembed_rule(rule.id)
        assert refreshed.embedding is not None
        assert service.retrieve_similar(["Rotate API keys"], n=1)[0].id == rule.id

    def test_reembed_missing(self, service, seeded):
        with pytest.raises(RuleNotFound):
            service.reembed_rule(404)

    def test_rebuild_index(self, store, provider, seeded):
        service = RuleService(store, InMemoryVectorStore(dimension=DIM), provider)
        created = _populate(service)

        fresh = InMemoryVectorStore(dimension=DIM)
        fresh.upsert(999, provider.embed("stale"), category=None)
        rebuilt = RuleService(store, fresh, provider)

        assert rebuilt.rebuild_index() == 5
        assert fresh.ids() == {r.id for r in created.values()}
        text = "Invoices are issued on the first business day"
        assert rebuilt.retrieve_similar([text], n=1)[0].id == created[text].id


class TestListRules:
    def test_pagination(self, service, seeded):
        _populate(service)
        page = service.list_rules(limit=2, offset=0)
        rest = service.list_rules(limit=10, offset=2)
        assert len(page) == 2
        assert len(rest) == 3
        assert not {r.id for r in page} & {r.id for r in rest}

    def test_filter_by_type(self, service, seeded):
        _populate(service)
        assert {r.ruleTypeName for r in service.list_rules(rule_type="billing")} == {"billing"}

    @pytest.mark.parametrize("limit, offset", [(0, 0), (101, 0), (10, -1)])
    def test_bad_page(self, service, seeded, limit, offset):
        with pytest.raises(InvalidInput):
            service.list_rules(limit=limit, offset=offset)


class TestContentToText:
    def test_string_unchanged(self):
        assert content_to_text("  as is ") == "  as is "

    def test_canonical_json(self):
        assert content_to_text({"b": [1, 2], "a": "é"}) == '{"a":"é","b":[1,2]}'
        assert content_to_text({"b": 1, "a": 2}) == content_to_text({"a": 2, "b": 1})

    def test_scalars(self):
        assert content_to_text(42) == "42"
        assert content_to_text(False) == "false"

    def test_none_rejected(self):
        with pytest.raises(InvalidInput):
            content_to_text(None)


class TestConcurrentReaders:
    """A reader started while a write is in flight sees it fully or not at all."""

    def _reader(self, service, query):
        results = []
        errors = []

        def read():
            try:
                results.extend(service.retrieve_similar([query], n=5))
            except Exception as exc:
                errors.append(exc)

        return threading.Thread(target=read), results, errors

    def _start_during_write(self, index, reader, cancel=None):
        def during_write():
            index.after_upsert = None
            reader.start()
            # Let the reader embed and reach the database lock.
            time.sleep(0.1)
            if cancel is not None:
                cancel.set()

        index.after_upsert = during_write

    def test_rolled_back_update_is_never_ranked(self, store, hooked_index, provider, seeded):
        service = RuleService(store, hooked_index, provider)
        rule = service.create_rule("security", "original")
        cancel = threading.Event()
        reader, results, errors = self._reader(service, "replacement")
        self._start_during_write(hooked_index, reader, cancel)

        with pytest.raises(OperationCancelled):
            service.update_rule(rule.id, "security", "replacement", cancel=cancel)
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert errors == []
        assert [m.content for m in results] == ["original"]
        assert results[0].score < 0.99

    def test_rolled_back_create_is_never_returned(self, store, hooked_index, provider, seeded):
        service = RuleService(store, hooked_index, provider)
        cancel = threading.Event()
        reader, results, errors = self._reader(service, "fresh rule")
        self._start_during_write(hooked_index, reader, cancel)

        with pytest.raises(OperationCancelled):
            service.create_rule("security", "fresh rule", cancel=cancel)
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert errors == []
        assert results == []
        assert hooked_index.count() == 0

    def test_committed_update_is_seen_whole(self, store, hooked_index, provider, seeded):
        service = RuleService(store, hooked_index, provider)
        rule = service.create_rule("security", "original")
        reader, results, errors = self._reader(service, "replacement")
        self._start_during_write(hooked_index, reader)

        service.update_rule(rule.id, "security", "replacement")
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert errors == []
        assert [m.content for m in results] == ["replacement"]
        assert results[0].score == pytest.approx(1.0, abs=1e-6)
