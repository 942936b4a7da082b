"""
Tests for the Sequence State Manager.

Covers:
- initialize / load / get_state / get_skill_context
- merge_skill_result for success, partial, failed and malformed results
- Token budget accounting and compaction triggers
- Reference archival (best-effort and strict)
- Checkpoint records and persistence failures
- Entity, finding, output and approval operations
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from context_engine.config.schema import CompactionTriggers, EngineRules, TokenBudgets
from context_engine.contracts import (
    Reference,
    ReferenceType,
    SequenceTrigger,
    create_failed_skill_result,
    create_skill_result,
    estimate_tokens,
)
from context_engine.exceptions import CheckpointError, StateNotInitializedError
from context_engine.persistence import ARCHIVE_TABLE, EXECUTIONS_TABLE, SupabaseCheckpointStore
from context_engine.state_manager import (
    MALFORMED_RESULT_ERROR,
    SequenceStateManager,
    create_sequence_state_manager,
)


def _manager(store, rules=None) -> SequenceStateManager:
    return SequenceStateManager(store, "org-1", "user-1", rules=rules)


async def _started(store, total_steps=3, rules=None, **kwargs) -> SequenceStateManager:
    manager = _manager(store, rules)
    await manager.initialize(
        "post-meeting-v1",
        "post_meeting_intelligence",
        SequenceTrigger(type="meeting_ended", params={"meeting_id": "m-1"}),
        total_steps=total_steps,
        **kwargs,
    )
    return manager


def _transcript_result(quotes=("We need SOC2", "Budget is approved", "Go-live in Q3")):
    return create_skill_result(
        "transcription",
        "45 min call with Jane Doe (VP Sales).",
        {
            "speakers": [
                {"name": "Jane Doe", "role": "VP Sales"},
                {"name": "Tom Lee", "role": "CTO"},
            ],
            "key_quotes": list(quotes),
            "company": {"name": "Acme"},
        },
        references=[Reference(type=ReferenceType.TRANSCRIPT, location="supabase://skill-outputs/t.json")],
    )


def _checkpoint(fake_client, instance_id):
    rows = [r for r in fake_client.rows(EXECUTIONS_TABLE) if r["id"] == instance_id]
    assert len(rows) == 1
    return rows[0]


# ─── Lifecycle ────────────────────────────────────────────────────────


class TestInitialize:

    @pytest.mark.asyncio
    async def test_initialize_persists_pending_checkpoint(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store, pending_skills=["transcription", "analysis"])

        assert manager.instance_id.startswith("post_meeting_intelligence-")
        assert manager.status == "pending"
        assert manager.state.execution.pending_skills == ["transcription", "analysis"]

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["sequence_key"] == "post-meeting-v1"
        assert row["sequence_type"] == "post_meeting_intelligence"
        assert row["organization_id"] == "org-1"
        assert row["user_id"] == "user-1"
        assert row["status"] == "pending"
        assert row["input_context"] == {"meeting_id": "m-1"}
        assert row["step_results"] == []
        assert row["final_output"] is None
        assert row["waiting_for_hitl"] is False
        assert row["is_simulation"] is False
        assert row["state_snapshot"]["instance_id"] == manager.instance_id

    @pytest.mark.asyncio
    async def test_trigger_may_be_a_dict(self, checkpoint_store):
        manager = _manager(checkpoint_store)
        state = await manager.initialize("s", "custom", {"type": "manual"}, total_steps=1)
        assert state.trigger.source == "manual"

    @pytest.mark.asyncio
    async def test_operations_require_state(self, checkpoint_store):
        manager = _manager(checkpoint_store)
        assert manager.instance_id is None
        with pytest.raises(StateNotInitializedError):
            manager.get_state()
        with pytest.raises(StateNotInitializedError):
            manager.get_skill_context()
        with pytest.raises(StateNotInitializedError):
            manager.add_key_fact("fact")
        with pytest.raises(StateNotInitializedError):
            _ = manager.status
        with pytest.raises(StateNotInitializedError):
            await manager.merge_skill_result("x", _transcript_result())
        with pytest.raises(StateNotInitializedError):
            await manager.persist()

    @pytest.mark.asyncio
    async def test_get_state_is_a_deep_copy(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        copy = manager.get_state()
        copy.context.findings.key_facts.append("not in the real state")
        assert manager.state.context.findings.key_facts == []


class TestLoad:

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, checkpoint_store):
        original = await _started(checkpoint_store)
        await original.merge_skill_result("transcription", _transcript_result())
        original.add_risk({"type": "budget", "description": "No budget yet"})
        await original.persist()

        restored = _manager(checkpoint_store)
        loaded = await restored.load(original.instance_id)

        assert loaded.model_dump(mode="json") == original.get_state().model_dump(mode="json")
        assert restored.status == "running"

    @pytest.mark.asyncio
    async def test_loaded_manager_continues(self, fake_client, checkpoint_store):
        original = await _started(checkpoint_store, total_steps=2)
        await original.merge_skill_result("transcription", _transcript_result())

        restored = _manager(checkpoint_store)
        await restored.load(original.instance_id)
        await restored.merge_skill_result("analysis", create_skill_result("analysis", "ok", {}))

        assert restored.state.execution.current_step == 2
        assert _checkpoint(fake_client, original.instance_id)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_missing_checkpoint(self, checkpoint_store):
        assert await _manager(checkpoint_store).load("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_rebuilds_rows_without_snapshot(self, fake_client, checkpoint_store):
        fake_client.tables[EXECUTIONS_TABLE] = [{
            "id": "old-1",
            "sequence_key": "seq-old",
            "sequence_type": "pre_meeting_prep",
            "status": "failed",
            "input_context": {"deal_id": "d-1"},
            "step_results": [
                {"step_index": 0, "skill_key": "a", "status": "completed",
                 "error": None, "completed_at": "2024-05-01T10:00:00+00:00"},
                {"step_index": 1, "skill_key": "b", "status": "failed",
                 "error": "boom", "completed_at": "2024-05-01T10:01:00+00:00"},
            ],
            "started_at": "2024-05-01T09:59:00+00:00",
            "state_snapshot": {"not": "a state"},
        }]
        manager = _manager(checkpoint_store)
        state = await manager.load("old-1")

        assert state.instance_id == "old-1"
        assert state.sequence_id == "seq-old"
        assert state.sequence_type.value == "pre_meeting_prep"
        assert state.trigger.params == {"deal_id": "d-1"}
        assert state.execution.current_step == 2
        assert state.execution.completed_skills == ["a", "b"]
        assert state.execution.failed_skills[0].error == "boom"
        assert manager.status == "failed"

    @pytest.mark.asyncio
    async def test_load_failure_propagates(self, fake_client, checkpoint_store):
        fake_client.broken_tables.add(EXECUTIONS_TABLE)
        with pytest.raises(CheckpointError):
            await _manager(checkpoint_store).load("seq-1")


# ─── Merging ──────────────────────────────────────────────────────────


class TestMergeSkillResult:

    @pytest.mark.asyncio
    async def test_success_merges_data(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store, pending_skills=["transcription", "analysis"])
        await manager.merge_skill_result("transcription", _transcript_result())

        state = manager.state
        assert state.execution.current_step == 1
        assert state.execution.completed_skills == ["transcription"]
        assert state.execution.pending_skills == ["analysis"]
        assert len(state.context.findings.key_facts) == 3
        assert [c.id for c in state.context.entities.contacts] == ["speaker-jane-doe", "speaker-tom-lee"]
        assert state.context.entities.companies[0].id == "company-acme"
        assert len(state.context.references) == 1

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["status"] == "running"
        assert row["step_results"][0]["skill_key"] == "transcription"
        assert row["step_results"][0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_result_short_circuits(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        await manager.merge_skill_result("transcription", _transcript_result())
        entities_before = manager.state.context.entities.model_dump()
        findings_before = manager.state.context.findings.model_dump()
        references_before = list(manager.state.context.references)

        failed = {
            "status": "failed",
            "error": "CRM unreachable",
            "summary": "Skill analysis failed",
            "data": {
                "key_quotes": ["should not merge"],
                "speakers": [{"name": "Ghost", "role": "CEO"}],
            },
            "references": [{"type": "analysis", "location": "db://t/ghost.json"}],
            "meta": {"skill_id": "analysis", "skill_version": "1.0.0", "execution_time_ms": 5},
        }
        await manager.merge_skill_result("analysis", failed)

        state = manager.state
        assert state.execution.current_step == 2
        assert state.context.entities.model_dump() == entities_before
        assert state.context.findings.model_dump() == findings_before
        assert state.context.references == references_before
        assert state.execution.failed_skills[-1].recoverable is False
        assert manager.status == "failed"

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["status"] == "failed"
        assert row["error_message"] == "CRM unreachable"
        assert row["failed_step_index"] == 1
        assert row["step_results"][1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_partial_result_is_merged_and_recoverable(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        partial = create_failed_skill_result(
            "analysis", "rate limited", partial_data={"key_quotes": ["Partial insight"]}
        )
        await manager.merge_skill_result("analysis", partial)

        state = manager.state
        assert state.context.findings.key_facts == ["Partial insight"]
        assert state.execution.failed_skills[0].recoverable is True
        assert manager.status == "running"

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["step_results"][0]["status"] == "partial"
        assert row["failed_step_index"] == 0
        assert row["error_message"] == "rate limited"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("malformed", [
        {"status": "weird"},
        "not even a mapping",
        {
            "status": "success", "summary": "s", "data": {},
            "references": [{"type": "video", "location": "x://a/b"}],
            "meta": {"skill_id": "x", "skill_version": "1", "execution_time_ms": 1},
        },
    ])
    async def test_malformed_contract_recorded_as_failure(self, checkpoint_store, malformed):
        manager = await _started(checkpoint_store)
        await manager.merge_skill_result("broken_skill", malformed)

        state = manager.state
        assert state.execution.current_step == 1
        assert state.execution.failed_skills[0].error == MALFORMED_RESULT_ERROR
        assert state.context.references == []
        assert manager.status == "failed"

    @pytest.mark.asyncio
    async def test_extraction_errors_never_abort(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        with patch("context_engine.state_manager.extract_entities", side_effect=RuntimeError("bad")):
            await manager.merge_skill_result("transcription", _transcript_result())

        assert manager.state.execution.current_step == 1
        assert len(manager.state.context.references) == 1

    @pytest.mark.asyncio
    async def test_persist_error_propagates_after_merge(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        fake_client.broken_tables.add(EXECUTIONS_TABLE)

        with pytest.raises(CheckpointError):
            await manager.merge_skill_result("transcription", _transcript_result())
        assert manager.state.execution.current_step == 1

        fake_client.broken_tables.clear()
        await manager.persist()
        assert _checkpoint(fake_client, manager.instance_id)["status"] == "running"

    @pytest.mark.asyncio
    async def test_completion_timestamp_set_once(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store, total_steps=1)
        await manager.merge_skill_result("transcription", _transcript_result())
        completed_at = manager.state.execution.completed_at
        assert completed_at is not None

        await manager.merge_skill_result("extra", create_skill_result("extra", "ok", {}))
        assert manager.state.execution.completed_at == completed_at

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["completed_at"] == completed_at
        assert row["final_output"]["findings"]["key_facts"]


# ─── Token budget & compaction ────────────────────────────────────────


class TestTokenBudget:

    @pytest.mark.asyncio
    async def test_budget_accounting(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        await manager.merge_skill_result("transcription", _transcript_result())

        budget = manager.state.token_budget
        assert budget.state_tokens == estimate_tokens(manager.state.context)
        assert budget.skill_result_tokens == 300
        assert budget.total_used == 2000 + budget.state_tokens + 300
        assert budget.per_step_ceiling == 3800
        assert budget.over_budget is False

    @pytest.mark.asyncio
    async def test_key_facts_at_max_warning(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        quotes = [f"fact number {i}" for i in range(10)]
        await manager.merge_skill_result("transcription", _transcript_result(quotes))

        assert "Key facts at maximum - new facts will replace old" in manager.state.token_budget.warnings

    @pytest.mark.asyncio
    async def test_over_budget_triggers_compaction(self, checkpoint_store):
        rules = EngineRules(token_budgets=TokenBudgets(sequence_state=10))
        manager = await _started(checkpoint_store, rules=rules)
        manager.add_action_item({"task": "Already done", "status": "completed"})
        manager.add_action_item({"task": "Still open"})

        await manager.merge_skill_result("transcription", _transcript_result())

        budget = manager.state.token_budget
        assert budget.over_budget is True
        assert any(w.startswith("State tokens") for w in budget.warnings)
        assert [a.task for a in manager.state.context.findings.action_items] == ["Still open"]

    @pytest.mark.asyncio
    async def test_failed_merge_does_not_compact(self, checkpoint_store):
        rules = EngineRules(token_budgets=TokenBudgets(sequence_state=1))
        manager = await _started(checkpoint_store, rules=rules)
        manager.add_action_item({"task": "Already done", "status": "completed"})

        await manager.merge_skill_result("x", create_failed_skill_result("x", "boom"))
        assert len(manager.state.context.findings.action_items) == 1

    @pytest.mark.asyncio
    async def test_long_sequences_do_not_compact_on_step_count(self, checkpoint_store):
        manager = await _started(checkpoint_store, total_steps=20)
        manager.add_action_item({"task": "Already done", "status": "completed"})

        for i in range(12):
            await manager.merge_skill_result(f"s{i}", create_skill_result(f"s{i}", "ok", {}))

        assert manager.state.token_budget.total_used > 5000
        assert manager.state.token_budget.over_budget is False
        assert [a.task for a in manager.state.context.findings.action_items] == ["Already done"]


class TestReferenceArchival:

    @staticmethod
    def _seed_references(manager, count=25):
        manager.state.context.references.extend(
            Reference(type=ReferenceType.DOCUMENT, location=f"db://docs/ref-{i}.json", size_bytes=i)
            for i in range(count)
        )

    @pytest.mark.asyncio
    async def test_oldest_references_archived_once(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        self._seed_references(manager)

        await manager.merge_skill_result("s1", create_skill_result("s1", "ok", {}))

        references = manager.state.context.references
        assert len(references) == 20
        assert references[0].location == "db://docs/ref-5.json"

        archived = fake_client.rows(ARCHIVE_TABLE)
        assert [r["location"] for r in archived] == [f"db://docs/ref-{i}.json" for i in range(5)]
        assert all(r["sequence_instance_id"] == manager.instance_id for r in archived)
        assert all(r["organization_id"] == "org-1" for r in archived)
        assert archived[0]["reference_type"] == "document"

        await manager.merge_skill_result("s2", create_skill_result("s2", "ok", {}))
        assert len(fake_client.rows(ARCHIVE_TABLE)) == 5

    @pytest.mark.asyncio
    async def test_archive_failure_still_trims(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        self._seed_references(manager)
        fake_client.broken_tables.add(ARCHIVE_TABLE)

        await manager.merge_skill_result("s1", create_skill_result("s1", "ok", {}))
        assert len(manager.state.context.references) == 20

    @pytest.mark.asyncio
    async def test_strict_archive_keeps_references(self, fake_client, checkpoint_store):
        rules = EngineRules(compact_when=CompactionTriggers(strict_archive=True))
        manager = await _started(checkpoint_store, rules=rules)
        self._seed_references(manager)
        fake_client.broken_tables.add(ARCHIVE_TABLE)

        await manager.merge_skill_result("s1", create_skill_result("s1", "ok", {}))
        assert len(manager.state.context.references) == 25
        assert "High number of references - consider compaction" in manager.state.token_budget.warnings

        fake_client.broken_tables.clear()
        await manager.merge_skill_result("s2", create_skill_result("s2", "ok", {}))
        assert len(manager.state.context.references) == 20
        assert len(fake_client.rows(ARCHIVE_TABLE)) == 5

    @pytest.mark.asyncio
    async def test_any_store_error_is_best_effort(self, fake_client):
        class UnreachableArchiveStore(SupabaseCheckpointStore):
            def archive_references(self, records):
                raise ConnectionError("archive down")

        manager = await _started(UnreachableArchiveStore(fake_client))
        self._seed_references(manager)

        await manager.merge_skill_result("s1", create_skill_result("s1", "ok", {}))

        assert len(manager.state.context.references) == 20
        row = _checkpoint(fake_client, manager.instance_id)
        assert row["step_results"][0]["skill_key"] == "s1"
        assert len(row["state_snapshot"]["context"]["references"]) == 20

    @pytest.mark.asyncio
    async def test_any_store_error_keeps_references_when_strict(self, fake_client):
        class UnreachableArchiveStore(SupabaseCheckpointStore):
            def archive_references(self, records):
                raise ConnectionError("archive down")

        rules = EngineRules(compact_when=CompactionTriggers(strict_archive=True))
        manager = await _started(UnreachableArchiveStore(fake_client), rules=rules)
        self._seed_references(manager)

        await manager.merge_skill_result("s1", create_skill_result("s1", "ok", {}))
        assert len(manager.state.context.references) == 25
        assert manager.state.execution.current_step == 1


# ─── Skill context ────────────────────────────────────────────────────


class TestSkillContext:

    @pytest.mark.asyncio
    async def test_most_recent_findings_and_locations(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        await manager.merge_skill_result("transcription", _transcript_result())
        for i in range(8):
            manager.add_key_fact(f"extra fact {i}")
        for i in range(7):
            manager.add_action_item({"task": f"task {i}"})
        for i in range(5):
            manager.add_risk({"type": "r", "description": f"risk {i}"})

        context = manager.get_skill_context()

        assert context["sequence_id"] == "post-meeting-v1"
        assert context["sequence_type"] == "post_meeting_intelligence"
        assert context["key_facts"] == [f"extra fact {i}" for i in range(3, 8)]
        assert [a["task"] for a in context["action_items"]] == [f"task {i}" for i in range(2, 7)]
        assert [r["description"] for r in context["risks"]] == ["risk 2", "risk 3", "risk 4"]
        assert context["reference_locations"] == [
            {"type": "transcript", "location": "supabase://skill-outputs/t.json"}
        ]
        assert len(context["contacts"]) == 2


# ─── Entities, outputs, approval ──────────────────────────────────────


class TestOperations:

    @pytest.mark.asyncio
    async def test_contact_upsert(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        manager.add_contact({"id": "c1", "name": "A"})
        merged = manager.add_contact({"id": "c1", "role": "champion"})

        assert len(manager.state.context.entities.contacts) == 1
        assert merged.name == "A"
        assert merged.role == "champion"

    @pytest.mark.asyncio
    async def test_company_and_deal(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        manager.add_company({"id": "co-1", "name": "Acme"})
        manager.add_deal({"id": "d-1", "name": "Acme renewal", "value": 40000})
        manager.add_deal({"id": "d-1", "stage": "negotiation"})

        entities = manager.state.context.entities
        assert entities.companies[0].name == "Acme"
        assert entities.deals[0].value == 40000
        assert entities.deals[0].stage == "negotiation"

    @pytest.mark.asyncio
    async def test_outputs(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        manager.add_draft({"type": "email", "reference": "supabase://b/d.json", "summary": "Follow-up"})
        manager.add_notification({"channel": "slack", "recipient": "#deals", "message_ref": "db://t/m"})
        manager.add_crm_update({"entity_type": "deal", "entity_id": "d-1", "fields_updated": ["stage"]})
        manager.add_task({"id": "t-1", "title": "Send deck", "due_date": "2024-06-01", "assigned_to": "u-1"})

        assert manager.update_crm_status("d-1", "applied") is True
        assert manager.update_crm_status("missing", "applied") is False

        outputs = manager.state.outputs
        assert outputs.drafts[0].status == "draft"
        assert outputs.notifications[0].status == "pending"
        assert outputs.crm_updates[0].status == "applied"
        assert outputs.tasks_created[0].title == "Send deck"

    @pytest.mark.asyncio
    async def test_approval_gate_is_checkpointed(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        await manager.require_approval("slack")

        assert manager.status == "waiting_hitl"
        row = _checkpoint(fake_client, manager.instance_id)
        assert row["waiting_for_hitl"] is True
        assert row["status"] == "waiting_hitl"

        await manager.record_approval("modified", modifications="Softer tone")
        approval = manager.state.approval
        assert approval.status.value == "modified"
        assert approval.modifications == "Softer tone"
        assert approval.responded_at is not None
        assert manager.status == "pending"

        row = _checkpoint(fake_client, manager.instance_id)
        assert row["waiting_for_hitl"] is False
        assert row["status"] == "pending"
        assert row["state_snapshot"]["approval"]["status"] == "modified"

    @pytest.mark.asyncio
    async def test_approval_checkpoint_failure_propagates(self, fake_client, checkpoint_store):
        manager = await _started(checkpoint_store)
        fake_client.broken_tables.add(EXECUTIONS_TABLE)
        with pytest.raises(CheckpointError):
            await manager.require_approval("email")
        assert manager.status == "waiting_hitl"

    @pytest.mark.asyncio
    async def test_record_approval_rejects_non_responses(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        with pytest.raises(ValueError):
            await manager.record_approval("pending")

    @pytest.mark.asyncio
    async def test_set_pending_skills(self, checkpoint_store):
        manager = await _started(checkpoint_store)
        manager.set_pending_skills(["a", "b"])
        await manager.merge_skill_result("a", create_skill_result("a", "ok", {}))
        assert manager.state.execution.pending_skills == ["b"]

    def test_factory(self, checkpoint_store):
        manager = create_sequence_state_manager(checkpoint_store, "org-1", "user-1")
        assert isinstance(manager, SequenceStateManager)
        assert manager.rules.findings.max_key_facts == 10
