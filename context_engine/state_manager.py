"""
Sequence State Manager.

Owns the single mutable SequenceState of one sequence execution. Skill
results are merged into it (update, don't append), findings stay bounded,
the token budget is recomputed after every change, oversized state is
compacted, and a checkpoint row is upserted after every merge.

One manager per running instance, never shared. Callers must await one
merge before starting the next, and must hold exclusive ownership of the
instance_id (e.g. a lease in the backing store) while the manager lives:
concurrent writers on the same id resolve as "last upsert wins".

Usage:
    store = SupabaseCheckpointStore(get_supabase_client())
    manager = SequenceStateManager(store, organization_id="org-1", user_id="user-1")

    await manager.initialize(
        "post-meeting-v1",
        SequenceType.POST_MEETING_INTELLIGENCE,
        SequenceTrigger(type="meeting_ended", params={"meeting_id": "m-1"}),
        total_steps=3,
        pending_skills=["transcription", "analysis", "follow_up_draft"],
    )

    await manager.merge_skill_result("transcription", result)
    context = manager.get_skill_context()  # what the next skill needs
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import ValidationError

from context_engine.config.schema import DEFAULT_RULES, EngineRules
from context_engine.contracts import (
    ActionItem,
    ApprovalChannel,
    ApprovalState,
    ApprovalStatus,
    CompanySummary,
    ContactSummary,
    CRMUpdate,
    DealSummary,
    DraftOutput,
    FailedSkill,
    NotificationOutput,
    Opportunity,
    Reference,
    Risk,
    SequenceState,
    SequenceTrigger,
    SequenceType,
    SkillResult,
    SkillStatus,
    StepRecord,
    TaskOutput,
    TokenBudget,
    create_failed_skill_result,
    create_initial_sequence_state,
    estimate_tokens,
    parse_skill_result,
    utc_now_iso,
    validate_skill_result,
)
from context_engine.exceptions import (
    ArchiveError,
    SkillContractError,
    StateNotInitializedError,
)
from context_engine.extraction import extract_entities, extract_findings
from context_engine.findings import (
    add_action_item,
    add_key_fact,
    add_opportunity,
    add_risk,
    drop_completed_action_items,
    most_recent,
    trim_key_facts,
    upsert_entity,
)
from context_engine.observability.logging_config import bind_log_context
from context_engine.persistence import CheckpointStore

logger = logging.getLogger(__name__)

MALFORMED_RESULT_ERROR = "Skill returned a malformed result contract"

# Checkpoint status values
STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_WAITING_HITL = "waiting_hitl"
STATUS_FAILED = "failed"
STATUS_COMPLETED = "completed"

_STEP_STATUS = {
    SkillStatus.SUCCESS: "completed",
    SkillStatus.PARTIAL: "partial",
    SkillStatus.FAILED: "failed",
}


class SequenceStateManager:
    """
    Manages mutable sequence state for one execution.

    Every mutating operation requires initialize() or a successful load()
    first and raises StateNotInitializedError otherwise.
    """

    def __init__(
        self,
        store: CheckpointStore,
        organization_id: str,
        user_id: str,
        *,
        rules: Optional[EngineRules] = None,
        is_simulation: bool = False,
    ):
        self.store = store
        self.organization_id = organization_id
        self.user_id = user_id
        self.rules = rules or DEFAULT_RULES
        self.is_simulation = is_simulation
        self._state: Optional[SequenceState] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(
        self,
        sequence_id: str,
        sequence_type: SequenceType | str,
        trigger: SequenceTrigger | dict[str, Any],
        total_steps: int,
        pending_skills: Optional[list[str]] = None,
    ) -> SequenceState:
        """Create a fresh state and persist its first checkpoint."""
        if not isinstance(trigger, SequenceTrigger):
            trigger = SequenceTrigger.model_validate(trigger)

        state = create_initial_sequence_state(
            sequence_id, sequence_type, trigger, rules=self.rules
        )
        state.execution.total_steps = max(total_steps, 0)
        state.execution.pending_skills = list(pending_skills or [])
        self._state = state
        self._update_token_budget()

        with self._log_context():
            logger.info(
                f"Sequence {sequence_id} initialized with {total_steps} step(s)",
                extra={"sequence_type": state.sequence_type.value},
            )
            await self.persist()

        return self.get_state()

    async def load(self, instance_id: str) -> Optional[SequenceState]:
        """
        Restore a sequence from its checkpoint row.

        Returns None when no checkpoint exists. Raises CheckpointError when
        the store cannot be read.
        """
        row = self.store.load_checkpoint(instance_id)
        if row is None:
            logger.warning(
                f"No checkpoint found for {instance_id}",
                extra={"instance_id": instance_id},
            )
            return None

        snapshot = row.get("state_snapshot")
        state: Optional[SequenceState] = None
        if snapshot:
            try:
                state = SequenceState.model_validate(snapshot)
            except ValidationError as e:
                logger.warning(
                    f"Checkpoint snapshot for {instance_id} is invalid "
                    f"({e.error_count()} error(s)), rebuilding from row",
                    extra={"instance_id": instance_id},
                )
        if state is None:
            state = self._reconstruct_from_row(row)

        self._state = state
        logger.info(
            f"Sequence {state.sequence_id} loaded at step "
            f"{state.execution.current_step}/{state.execution.total_steps}",
            extra={"instance_id": state.instance_id},
        )
        return self.get_state()

    def _reconstruct_from_row(self, row: dict[str, Any]) -> SequenceState:
        """Best-effort state for rows written without a snapshot."""
        try:
            sequence_type = SequenceType(row.get("sequence_type") or SequenceType.CUSTOM)
        except ValueError:
            sequence_type = SequenceType.CUSTOM

        started_at = row.get("started_at") or utc_now_iso()
        state = create_initial_sequence_state(
            row.get("sequence_key") or row["id"],
            sequence_type,
            SequenceTrigger(
                type="database_load",
                timestamp=started_at,
                source="database",
                params=row.get("input_context") or {},
            ),
            rules=self.rules,
            instance_id=row["id"],
        )

        execution = state.execution
        execution.started_at = started_at
        for step in row.get("step_results") or []:
            try:
                record = StepRecord.model_validate(step)
            except ValidationError:
                continue
            execution.step_history.append(record)
            execution.completed_skills.append(record.skill_key)
            if record.status != "completed":
                execution.failed_skills.append(FailedSkill(
                    skill_id=record.skill_key,
                    error=record.error or "Unknown error",
                    recoverable=record.status == "partial",
                    attempted_at=record.completed_at,
                ))
        execution.current_step = len(execution.completed_skills)
        # The row does not carry total_steps; only a completed row pins it down
        if row.get("status") == STATUS_COMPLETED:
            execution.total_steps = execution.current_step
        execution.completed_at = row.get("completed_at")
        if row.get("waiting_for_hitl"):
            state.approval = ApprovalState(required=True, status=ApprovalStatus.PENDING)

        self._state = state
        self._update_token_budget()
        return state

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def _require_state(self) -> SequenceState:
        if self._state is None:
            raise StateNotInitializedError("Sequence state not initialized")
        return self._state

    @property
    def state(self) -> SequenceState:
        """The live state. Treat as read-only; mutate through manager methods."""
        return self._require_state()

    @property
    def instance_id(self) -> Optional[str]:
        return self._state.instance_id if self._state is not None else None

    @property
    def status(self) -> str:
        """Checkpoint status derived from the current state."""
        state = self._require_state()
        execution = state.execution

        if state.approval.status == ApprovalStatus.PENDING:
            return STATUS_WAITING_HITL
        if any(not failed.recoverable for failed in execution.failed_skills):
            return STATUS_FAILED
        if execution.total_steps > 0 and execution.current_step >= execution.total_steps:
            return STATUS_COMPLETED
        if execution.current_step > 0:
            return STATUS_RUNNING
        return STATUS_PENDING

    def get_state(self) -> SequenceState:
        """Deep copy of the current state."""
        return self._require_state().model_copy(deep=True)

    def get_skill_context(self) -> dict[str, Any]:
        """
        The compact slice of state the next skill needs: identity, entities,
        the most recent findings and reference locations (never payloads).
        """
        state = self._require_state()
        findings = state.context.findings
        entities = state.context.entities
        rules = self.rules

        return {
            "sequence_id": state.sequence_id,
            "sequence_type": state.sequence_type.value,
            "instance_id": state.instance_id,
            "current_step": state.execution.current_step,
            "total_steps": state.execution.total_steps,
            "contacts": [c.model_dump(mode="json", exclude_none=True) for c in entities.contacts],
            "companies": [c.model_dump(mode="json", exclude_none=True) for c in entities.companies],
            "deals": [d.model_dump(mode="json", exclude_none=True) for d in entities.deals],
            "key_facts": most_recent(findings.key_facts, rules.skill_context_key_facts),
            "action_items": [
                a.model_dump(mode="json")
                for a in most_recent(findings.action_items, rules.skill_context_action_items)
            ],
            "risks": [
                r.model_dump(mode="json", exclude_none=True)
                for r in most_recent(findings.risks, rules.skill_context_risks)
            ],
            "reference_locations": [
                {"type": ref.type.value, "location": ref.location}
                for ref in state.context.references
            ],
        }

    # ------------------------------------------------------------------
    # Skill result merging
    # ------------------------------------------------------------------

    async def merge_skill_result(
        self,
        skill_id: str,
        result: SkillResult | Mapping[str, Any],
    ) -> None:
        """
        Merge one skill result into the state and checkpoint it.

        A result that does not follow the contract is recorded as a failed
        step and never merged. Raises CheckpointError when the checkpoint
        cannot be written; the in-memory merge has already happened then.
        """
        state = self._require_state()
        result = self._coerce_result(skill_id, result)

        with self._log_context():
            execution = state.execution
            step_index = execution.current_step
            execution.current_step += 1
            execution.completed_skills.append(skill_id)
            execution.pending_skills = [s for s in execution.pending_skills if s != skill_id]
            execution.step_history.append(StepRecord(
                step_index=step_index,
                skill_key=skill_id,
                status=_STEP_STATUS[result.status],
                error=result.error if result.status != SkillStatus.SUCCESS else None,
            ))

            if result.status != SkillStatus.SUCCESS:
                execution.failed_skills.append(FailedSkill(
                    skill_id=skill_id,
                    error=result.error or "Unknown error",
                    recoverable=result.status == SkillStatus.PARTIAL,
                ))
                logger.warning(
                    f"Skill {skill_id} returned {result.status.value}: {result.error}",
                    extra={"skill_id": skill_id, "step": step_index, "status": result.status.value},
                )

            if result.status != SkillStatus.FAILED:
                state.context.references.extend(result.references)
                self._apply_extraction(skill_id, result)

            self._mark_completed()
            self._update_token_budget()

            if result.status != SkillStatus.FAILED and self._should_compact():
                await self._compact()

            logger.info(
                f"Merged {skill_id} (step {execution.current_step}/{execution.total_steps})",
                extra={
                    "skill_id": skill_id,
                    "step": step_index,
                    "status": self.status,
                    "total_used": state.token_budget.total_used,
                },
            )
            await self.persist()

    def _coerce_result(
        self, skill_id: str, result: SkillResult | Mapping[str, Any]
    ) -> SkillResult:
        if not validate_skill_result(result):
            logger.warning(
                f"Skill {skill_id} returned a malformed result contract",
                extra={"skill_id": skill_id},
            )
            return create_failed_skill_result(skill_id, MALFORMED_RESULT_ERROR)
        try:
            return parse_skill_result(result)
        except SkillContractError as e:
            logger.warning(
                f"Skill {skill_id} result rejected: {e}",
                extra={"skill_id": skill_id, "errors": e.details.get("errors")},
            )
            return create_failed_skill_result(skill_id, MALFORMED_RESULT_ERROR)

    def _apply_extraction(self, skill_id: str, result: SkillResult) -> None:
        # Heuristic extraction must never abort a merge
        try:
            entities = extract_entities(result.data)
            found = extract_findings(result.data, result.hints)
        except Exception as e:
            logger.warning(
                f"Extraction failed for {skill_id}: {e}",
                extra={"skill_id": skill_id},
            )
            return

        for contact in entities.contacts:
            self.add_contact(contact)
        for company in entities.companies:
            self.add_company(company)
        for deal in entities.deals:
            self.add_deal(deal)
        for fact in found.key_facts:
            self.add_key_fact(fact)
        for item in found.action_items:
            self.add_action_item(item)
        for risk in found.risks:
            self.add_risk(risk)
        for opportunity in found.opportunities:
            self.add_opportunity(opportunity)

    def _mark_completed(self) -> None:
        execution = self._require_state().execution
        if (
            execution.completed_at is None
            and execution.total_steps > 0
            and execution.current_step >= execution.total_steps
        ):
            execution.completed_at = utc_now_iso()

    def set_pending_skills(self, skill_ids: list[str]) -> None:
        self._require_state().execution.pending_skills = list(skill_ids)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def add_contact(self, contact: ContactSummary | dict[str, Any]) -> ContactSummary:
        entities = self._require_state().context.entities
        return upsert_entity(entities.contacts, contact, ContactSummary)

    def add_company(self, company: CompanySummary | dict[str, Any]) -> CompanySummary:
        entities = self._require_state().context.entities
        return upsert_entity(entities.companies, company, CompanySummary)

    def add_deal(self, deal: DealSummary | dict[str, Any]) -> DealSummary:
        entities = self._require_state().context.entities
        return upsert_entity(entities.deals, deal, DealSummary)

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    def add_key_fact(self, fact: str) -> bool:
        findings = self._require_state().context.findings
        return add_key_fact(findings, fact, self.rules.findings)

    def add_action_item(self, item: ActionItem | dict[str, Any]) -> bool:
        findings = self._require_state().context.findings
        return add_action_item(findings, item, self.rules.findings)

    def add_risk(self, risk: Risk | dict[str, Any]) -> bool:
        findings = self._require_state().context.findings
        return add_risk(findings, risk, self.rules.findings)

    def add_opportunity(self, opportunity: Opportunity | dict[str, Any]) -> bool:
        findings = self._require_state().context.findings
        return add_opportunity(findings, opportunity, self.rules.findings)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def add_draft(self, draft: DraftOutput | dict[str, Any]) -> None:
        outputs = self._require_state().outputs
        outputs.drafts.append(DraftOutput.model_validate(draft))

    def add_notification(self, notification: NotificationOutput | dict[str, Any]) -> None:
        outputs = self._require_state().outputs
        outputs.notifications.append(NotificationOutput.model_validate(notification))

    def add_crm_update(self, update: CRMUpdate | dict[str, Any]) -> None:
        outputs = self._require_state().outputs
        outputs.crm_updates.append(CRMUpdate.model_validate(update))

    def update_crm_status(self, entity_id: str, status: str) -> bool:
        """Set the status of the first CRM update for entity_id."""
        outputs = self._require_state().outputs
        for index, update in enumerate(outputs.crm_updates):
            if update.entity_id == entity_id:
                outputs.crm_updates[index] = CRMUpdate.model_validate(
                    {**update.model_dump(), "status": status}
                )
                return True
        return False

    def add_task(self, task: TaskOutput | dict[str, Any]) -> None:
        outputs = self._require_state().outputs
        outputs.tasks_created.append(TaskOutput.model_validate(task))

    # ------------------------------------------------------------------
    # Approval gate
    # ------------------------------------------------------------------

    async def require_approval(self, channel: ApprovalChannel | str) -> None:
        """
        Pause the sequence at a human approval gate and checkpoint it.

        Raises:
            CheckpointError: If the checkpoint cannot be written.
        """
        state = self._require_state()
        state.approval = ApprovalState(
            required=True,
            status=ApprovalStatus.PENDING,
            requested_at=utc_now_iso(),
            channel=ApprovalChannel(channel),
        )
        with self._log_context():
            logger.info(
                f"Approval requested via {state.approval.channel.value}",
                extra={"status": STATUS_WAITING_HITL},
            )
            await self.persist()

    async def record_approval(
        self,
        status: ApprovalStatus | str,
        modifications: Optional[str] = None,
    ) -> None:
        """
        Record the human response to a pending approval and checkpoint it.

        Raises:
            ValueError: If status is not approved, rejected or modified.
            CheckpointError: If the checkpoint cannot be written.
        """
        status = ApprovalStatus(status)
        if status not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.MODIFIED):
            raise ValueError(f"Not an approval response: {status.value}")

        approval = self._require_state().approval
        approval.status = status
        approval.responded_at = utc_now_iso()
        if modifications:
            approval.modifications = modifications

        with self._log_context():
            logger.info(f"Approval {status.value}", extra={"status": self.status})
            await self.persist()

    # ------------------------------------------------------------------
    # Token budget
    # ------------------------------------------------------------------

    def _update_token_budget(self) -> None:
        state = self._require_state()
        budgets = self.rules.token_budgets

        state_tokens = estimate_tokens(state.context)
        result_tokens = len(state.execution.completed_skills) * budgets.skill_result

        state.token_budget = TokenBudget(
            system_prompt=budgets.system_prompt,
            state_tokens=state_tokens,
            skill_result_tokens=result_tokens,
            total_used=budgets.system_prompt + state_tokens + result_tokens,
            per_step_ceiling=budgets.per_step_ceiling,
            over_budget=state_tokens > budgets.sequence_state * 2,
            warnings=self._token_warnings(state_tokens),
        )

    def _token_warnings(self, state_tokens: int) -> list[str]:
        state = self._require_state()
        budget = self.rules.token_budgets.sequence_state
        warnings: list[str] = []

        if state_tokens > budget:
            warnings.append(f"State tokens ({state_tokens}) exceed budget ({budget})")
        if len(state.context.findings.key_facts) >= self.rules.findings.max_key_facts:
            warnings.append("Key facts at maximum - new facts will replace old")
        if len(state.context.references) > self.rules.compact_when.references_exceed:
            warnings.append("High number of references - consider compaction")

        return warnings

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def _should_compact(self) -> bool:
        state = self._require_state()
        triggers = self.rules.compact_when
        return (
            state.token_budget.over_budget
            or len(state.context.findings.key_facts) > triggers.key_facts_exceed
            or len(state.context.references) > triggers.references_exceed
        )

    async def _compact(self) -> None:
        """Trim key facts, archive old references, drop completed action items."""
        state = self._require_state()
        findings = state.context.findings
        references = state.context.references
        keep = self.rules.compact_when.references_exceed

        trimmed_facts = trim_key_facts(findings, self.rules.findings.max_key_facts)

        archived = 0
        overflow = len(references) - keep
        if overflow > 0:
            archived_ok = self._archive_references(references[:overflow])
            if archived_ok or not self.rules.compact_when.strict_archive:
                del references[:overflow]
                archived = overflow

        dropped_items = drop_completed_action_items(findings)
        self._update_token_budget()

        logger.info(
            "State compacted",
            extra={
                "key_facts": len(findings.key_facts),
                "trimmed_facts": trimmed_facts,
                "references": len(references),
                "archived_references": archived,
                "dropped_action_items": dropped_items,
                "state_tokens": state.token_budget.state_tokens,
            },
        )

    def _archive_references(self, references: list[Reference]) -> bool:
        """Write references to the archive; failures are logged, not raised."""
        state = self._require_state()
        archived_at = utc_now_iso()
        records = [
            {
                "sequence_instance_id": state.instance_id,
                "organization_id": self.organization_id,
                "reference_type": ref.type.value,
                "location": ref.location,
                "summary": ref.summary,
                "size_bytes": ref.size_bytes,
                "archived_at": archived_at,
            }
            for ref in references
        ]
        # Archival is best-effort for any store, not only ones raising ArchiveError
        try:
            self.store.archive_references(records)
        except Exception as e:
            logger.error(
                f"Failed to archive {len(records)} reference(s): {e}",
                extra={"strict_archive": self.rules.compact_when.strict_archive},
                exc_info=not isinstance(e, ArchiveError),
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def build_checkpoint_record(self) -> dict[str, Any]:
        """The sequence_executions row for the current state."""
        state = self._require_state()
        execution = state.execution
        done = execution.total_steps > 0 and execution.current_step >= execution.total_steps

        failed_steps = [s for s in execution.step_history if s.status != "completed"]
        error_message = execution.failed_skills[-1].error if execution.failed_skills else None

        return {
            "id": state.instance_id,
            "sequence_key": state.sequence_id,
            "sequence_type": state.sequence_type.value,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "status": self.status,
            "input_context": state.trigger.params,
            "step_results": [s.model_dump(mode="json") for s in execution.step_history],
            "final_output": {
                "findings": state.context.findings.model_dump(mode="json", exclude_none=True),
                "outputs": state.outputs.model_dump(mode="json", exclude_none=True),
            } if done else None,
            "error_message": error_message,
            "failed_step_index": failed_steps[-1].step_index if failed_steps else None,
            "is_simulation": self.is_simulation,
            "waiting_for_hitl": state.approval.status == ApprovalStatus.PENDING,
            "started_at": execution.started_at,
            "completed_at": execution.completed_at,
            "updated_at": utc_now_iso(),
            "state_snapshot": state.model_dump(mode="json"),
        }

    async def persist(self) -> None:
        """
        Upsert the checkpoint row (idempotent on instance id).

        Raises:
            CheckpointError: If the store rejects the write.
        """
        record = self.build_checkpoint_record()
        self.store.upsert_checkpoint(record)
        logger.debug(
            f"Checkpoint saved ({record['status']})",
            extra={"instance_id": record["id"], "status": record["status"]},
        )

    def _log_context(self):
        return bind_log_context(
            instance_id=self.instance_id,
            organization_id=self.organization_id,
        )


def create_sequence_state_manager(
    store: CheckpointStore,
    organization_id: str,
    user_id: str,
    rules: Optional[EngineRules] = None,
) -> SequenceStateManager:
    return SequenceStateManager(store, organization_id, user_id, rules=rules)
