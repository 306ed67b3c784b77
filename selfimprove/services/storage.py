"""
Persistence of loop state: baselines, diagnoses, action records, effectiveness
aggregates and the circuit breaker summary.

`InMemoryStorage` keeps everything in process. `JsonlStorage` adds
JSON Lines files (one per collection) and replays them on `initialize()`; the
last line written for an id wins. Every failure surfaces as `StorageError`.
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from selfimprove.config import StorageConfig
from selfimprove.domain.errors import StorageError
from selfimprove.domain.models import (
    ActionEffectivenessRecord,
    ActionId,
    ActionKind,
    ActionOutcome,
    ActionRecord,
    BaselinesSnapshot,
    CircuitBreakerSummary,
    DiagnosisId,
    DiagnosisStatus,
    SelfDiagnosis,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Storage(Protocol):
    async def initialize(self) -> None: ...

    async def save_baselines(self, snapshot: BaselinesSnapshot) -> None: ...

    async def load_baselines(self) -> BaselinesSnapshot | None: ...

    async def save_diagnosis(self, diagnosis: SelfDiagnosis) -> None: ...

    async def get_diagnosis(self, diagnosis_id: DiagnosisId) -> SelfDiagnosis | None: ...

    async def list_diagnoses(
        self, status: DiagnosisStatus | None = None, limit: int | None = None
    ) -> list[SelfDiagnosis]: ...

    async def update_diagnosis_status(
        self, diagnosis_id: DiagnosisId, status: DiagnosisStatus
    ) -> SelfDiagnosis: ...

    async def save_action(self, record: ActionRecord) -> None: ...

    async def get_action(self, action_id: ActionId) -> ActionRecord | None: ...

    async def list_actions(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[ActionRecord]: ...

    async def update_effectiveness(
        self, record: ActionRecord, success: bool
    ) -> ActionEffectivenessRecord: ...

    async def get_effectiveness(self, signature: str) -> ActionEffectivenessRecord | None: ...

    async def list_effectiveness(self) -> list[ActionEffectivenessRecord]: ...

    async def save_breaker(self, summary: CircuitBreakerSummary) -> None: ...

    async def load_breaker(self) -> CircuitBreakerSummary | None: ...


def accumulate_effectiveness(
    existing: ActionEffectivenessRecord | None,
    kind: ActionKind,
    signature: str,
    reward: float,
    success: bool,
    rolled_back: bool,
    at: datetime | None = None,
) -> ActionEffectivenessRecord:
    """Fold one attempt into the running aggregate of a signature."""
    at = at or datetime.now(UTC)
    if existing is None:
        existing = ActionEffectivenessRecord(
            action_kind=kind, signature=signature, first_attempt=at, last_attempt=at
        )

    total = existing.total_attempts + 1
    successful = existing.successful_attempts + (1 if success else 0)
    avg = (existing.avg_reward * existing.total_attempts + reward) / total
    max_reward = reward if existing.max_reward is None else max(existing.max_reward, reward)
    min_reward = reward if existing.min_reward is None else min(existing.min_reward, reward)
    success_rate = successful / total

    return existing.model_copy(
        update={
            "total_attempts": total,
            "successful_attempts": successful,
            "failed_attempts": existing.failed_attempts
            + (1 if not success and not rolled_back else 0),
            "rolled_back_attempts": existing.rolled_back_attempts + (1 if rolled_back else 0),
            "avg_reward": avg,
            "max_reward": max_reward,
            "min_reward": min_reward,
            "effectiveness_score": success_rate * 0.7 + (avg + 1.0) / 2.0 * 0.3,
            "last_attempt": at,
        }
    )


class InMemoryStorage:
    def __init__(self) -> None:
        self._baselines: BaselinesSnapshot | None = None
        self._diagnoses: dict[DiagnosisId, SelfDiagnosis] = {}
        self._actions: dict[ActionId, ActionRecord] = {}
        self._effectiveness: dict[str, ActionEffectivenessRecord] = {}
        self._breaker: CircuitBreakerSummary | None = None
        self.logger = logger.bind(component="storage")

    async def initialize(self) -> None:
        return None

    async def _persist(self, collection: str, model: BaseModel) -> None:
        return None

    # Baselines

    async def save_baselines(self, snapshot: BaselinesSnapshot) -> None:
        self._baselines = snapshot
        await self._persist("baselines", snapshot)

    async def load_baselines(self) -> BaselinesSnapshot | None:
        return self._baselines

    # Diagnoses

    async def save_diagnosis(self, diagnosis: SelfDiagnosis) -> None:
        self._diagnoses[diagnosis.id] = diagnosis
        await self._persist("diagnoses", diagnosis)

    async def get_diagnosis(self, diagnosis_id: DiagnosisId) -> SelfDiagnosis | None:
        return self._diagnoses.get(diagnosis_id)

    async def list_diagnoses(
        self, status: DiagnosisStatus | None = None, limit: int | None = None
    ) -> list[SelfDiagnosis]:
        """Oldest first."""
        diagnoses = sorted(self._diagnoses.values(), key=lambda d: d.created_at)
        if status is not None:
            diagnoses = [d for d in diagnoses if d.status is status]
        return diagnoses[-limit:] if limit else diagnoses

    async def update_diagnosis_status(
        self, diagnosis_id: DiagnosisId, status: DiagnosisStatus
    ) -> SelfDiagnosis:
        current = self._diagnoses.get(diagnosis_id)
        if current is None:
            raise StorageError(f"Diagnosis {diagnosis_id} not found")
        if current.status is status:
            return current
        updated = current.with_status(status)
        await self.save_diagnosis(updated)
        return updated

    # Actions

    async def save_action(self, record: ActionRecord) -> None:
        self._actions[record.id] = record
        await self._persist("actions", record)

    async def get_action(self, action_id: ActionId) -> ActionRecord | None:
        return self._actions.get(action_id)

    async def list_actions(
        self, limit: int | None = None, since: datetime | None = None
    ) -> list[ActionRecord]:
        """Oldest first."""
        actions = sorted(self._actions.values(), key=lambda a: a.executed_at)
        if since is not None:
            actions = [a for a in actions if a.executed_at >= since]
        return actions[-limit:] if limit else actions

    # Effectiveness

    async def update_effectiveness(
        self, record: ActionRecord, success: bool
    ) -> ActionEffectivenessRecord:
        signature = record.action.signature()
        reward = record.reward.value if record.reward is not None else 0.0
        updated = accumulate_effectiveness(
            self._effectiveness.get(signature),
            record.action_kind,
            signature,
            reward,
            success,
            rolled_back=record.outcome is ActionOutcome.ROLLED_BACK,
        )
        self._effectiveness[signature] = updated
        await self._persist("effectiveness", updated)
        return updated

    async def get_effectiveness(self, signature: str) -> ActionEffectivenessRecord | None:
        return self._effectiveness.get(signature)

    async def list_effectiveness(self) -> list[ActionEffectivenessRecord]:
        return sorted(
            self._effectiveness.values(), key=lambda r: r.effectiveness_score, reverse=True
        )

    # Circuit breaker

    async def save_breaker(self, summary: CircuitBreakerSummary) -> None:
        self._breaker = summary
        await self._persist("circuit_breaker", summary)

    async def load_breaker(self) -> CircuitBreakerSummary | None:
        return self._breaker


# Collections holding only their latest value; rewritten instead of appended
_SINGLETONS = frozenset({"baselines", "circuit_breaker"})


class JsonlStorage(InMemoryStorage):
    """File-backed storage: one `.jsonl` file per collection.

    Keyed collections are append-only and compacted to one line per id on
    `initialize()`. Baselines and the breaker summary are rewritten in place.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _file(self, collection: str) -> Path:
        return self.path / f"{collection}.jsonl"

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self.path.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.path}: {e}") from e

        baselines = await self._replay("baselines", BaselinesSnapshot)
        if baselines:
            self._baselines = baselines[-1]
            await self._compact("baselines", [self._baselines], len(baselines))

        diagnoses = await self._replay("diagnoses", SelfDiagnosis)
        for diagnosis in diagnoses:
            self._diagnoses[diagnosis.id] = diagnosis
        await self._compact("diagnoses", list(self._diagnoses.values()), len(diagnoses))

        records = await self._replay("actions", ActionRecord)
        for record in records:
            self._actions[record.id] = record
        await self._compact("actions", list(self._actions.values()), len(records))

        aggregates = await self._replay("effectiveness", ActionEffectivenessRecord)
        for aggregate in aggregates:
            self._effectiveness[aggregate.signature] = aggregate
        await self._compact(
            "effectiveness", list(self._effectiveness.values()), len(aggregates)
        )

        summaries = await self._replay("circuit_breaker", CircuitBreakerSummary)
        if summaries:
            self._breaker = summaries[-1]
            await self._compact("circuit_breaker", [self._breaker], len(summaries))

        self.logger.info(
            "storage_loaded",
            path=str(self.path),
            diagnoses=len(self._diagnoses),
            actions=len(self._actions),
            signatures=len(self._effectiveness),
        )

    async def _replay(self, collection: str, model: type[ModelT]) -> list[ModelT]:
        path = self._file(collection)
        try:
            lines = await asyncio.to_thread(self._read_lines, path)
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

        items: list[ModelT] = []
        for number, line in enumerate(lines, start=1):
            try:
                items.append(model.model_validate_json(line))
            except ValidationError as e:
                raise StorageError(f"Corrupt record at {path}:{number}: {e}") from e
        return items

    async def _compact(
        self, collection: str, latest: Sequence[BaseModel], replayed: int
    ) -> None:
        if replayed <= len(latest):
            return
        path = self._file(collection)
        try:
            await asyncio.to_thread(
                self._replace_lines, path, [m.model_dump_json() for m in latest]
            )
        except OSError as e:
            raise StorageError(f"Cannot compact {path}: {e}") from e
        self.logger.info(
            "storage_compacted", collection=collection, lines_before=replayed, lines=len(latest)
        )

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        if not path.exists():
            return []
        with path.open(encoding="utf-8") as f:
            return [line for line in (raw.strip() for raw in f) if line]

    @staticmethod
    def _append_line(path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    @staticmethod
    def _replace_lines(path: Path, lines: list[str]) -> None:
        staging = path.with_suffix(".jsonl.tmp")
        with staging.open("w", encoding="utf-8") as f:
            f.writelines(line + "\n" for line in lines)
        staging.replace(path)

    async def _persist(self, collection: str, model: BaseModel) -> None:
        path = self._file(collection)
        line = model.model_dump_json()
        try:
            if collection in _SINGLETONS:
                await asyncio.to_thread(self._replace_lines, path, [line])
            else:
                await asyncio.to_thread(self._append_line, path, line)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e


def create_storage(config: StorageConfig) -> InMemoryStorage:
    if config.backend == "jsonl":
        return JsonlStorage(config.path)
    return InMemoryStorage()
