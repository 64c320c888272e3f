"""Background reconciliation of local state against the authoritative store.

A validation pass fetches one snapshot and compares it, field by field, with
the local view of every tracked entity. Entities with a live operation are in
flux and skipped. Findings fall into two classes:

- an overlay entry whose operation is gone (a lost update); repaired per
  ``OverlayPolicy`` by resubmitting the local value or discarding it
- confirmed local state that no longer matches the store (an external change);
  always repaired by adopting the remote value

Repairs go back through the update manager. A failed repair is recorded in the
report and the pass moves on to the next entity.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING, Final

from optisync.domain.model import (
    ConsistencyReport,
    DivergenceKind,
    Inconsistency,
    Intent,
    OperationKind,
    OverlayPolicy,
    ValidationStats,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from optisync.domain.model import Clock, EntityKey, Payload
    from optisync.domain.overlay import OverlayEntry
    from optisync.domain.ports import SnapshotSource
    from optisync.domain.updates import OptimisticUpdateManager

log = getLogger(__name__)

DEFAULT_EXCLUDE_FIELDS: Final[frozenset[str]] = frozenset(
    {"lastModified", "syncTimestamp", "last_modified", "sync_timestamp"}
)
DEFAULT_VALIDATION_INTERVAL: Final[timedelta] = timedelta(minutes=30)
DEFAULT_HISTORY_SIZE: Final[int] = 10

_MISSING: Final = object()


@dataclass(frozen=True, slots=True)
class ValidationSettings:
    auto_fix: bool = True
    overlay_policy: OverlayPolicy = OverlayPolicy.TRUST_LOCAL
    exclude_fields: frozenset[str] = DEFAULT_EXCLUDE_FIELDS
    history_size: int = DEFAULT_HISTORY_SIZE
    interval: timedelta = DEFAULT_VALIDATION_INTERVAL


class DataConsistencyValidator:
    """Detects and repairs divergence between local and authoritative state."""

    def __init__(
        self,
        manager: OptimisticUpdateManager,
        source: SnapshotSource,
        *,
        settings: ValidationSettings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._manager = manager
        self._source = source
        self._settings = settings or ValidationSettings()
        self._clock = clock
        self._history: deque[ConsistencyReport] = deque(maxlen=self._settings.history_size)
        self._validating = False
        self._last_validation_time: datetime | None = None
        self._total_validations = 0
        self._total_inconsistencies = 0
        self._total_fixed = 0

    @property
    def settings(self) -> ValidationSettings:
        return self._settings

    @property
    def is_validating(self) -> bool:
        return self._validating

    async def validate_consistency(self) -> ConsistencyReport:
        """Run one validation pass.

        Only one pass runs at a time; a call made while a pass is running
        returns the most recent finished report instead of starting another.
        """

        if self._validating:
            log.info("Consistency validation already running; returning the previous report")
            return self.get_last_report() or ConsistencyReport(timestamp=self._clock())

        self._validating = True
        started = self._clock()
        self._last_validation_time = started
        try:
            report = await self._run(started)
        finally:
            self._validating = False

        self._record(report)
        log.info(
            "Consistency validation finished: checked=%s, inconsistent=%s, fixed=%s, errors=%s",
            report.total_checked,
            len(report.inconsistent_items),
            report.fixed_count,
            len(report.errors),
        )
        return report

    def get_last_report(self) -> ConsistencyReport | None:
        return self._history[0] if self._history else None

    def get_history(self) -> list[ConsistencyReport]:
        return list(self._history)

    def get_validation_stats(self) -> ValidationStats:
        total = self._total_validations
        last = self.get_last_report()
        return ValidationStats(
            total_validations=total,
            average_inconsistencies=self._total_inconsistencies / total if total else 0.0,
            total_fixed=self._total_fixed,
            last_validation_time=self._last_validation_time,
            is_validating=self._validating,
            store_healthy=last is None or last.snapshot_available,
        )

    async def _run(self, started: datetime) -> ConsistencyReport:
        try:
            snapshot = dict(await self._source.snapshot())
        except Exception as exc:  # noqa: BLE001
            log.warning("Authoritative snapshot unavailable: %s", exc)
            return ConsistencyReport(
                timestamp=started,
                errors=(f"snapshot unavailable: {exc}",),
                snapshot_available=False,
            )

        confirmed = self._manager.confirmed_state()
        overlay = {entry.key: entry for entry in self._manager.overlay.entries()}
        keys = sorted(set(confirmed) | set(overlay) | set(snapshot))

        findings: list[Inconsistency] = []
        errors: list[str] = []
        fixed = 0
        for key in keys:
            if self._manager.has_live_operation(key):
                continue
            if self._manager.confirmed_since(key, started):
                continue
            entry = overlay.get(key)
            finding = self._inspect(key, confirmed.get(key), entry, snapshot.get(key))
            if finding is None:
                continue
            findings.append(finding)
            log.warning("Divergence for %s (%s): %s", key, finding.kind, finding.description)
            if not self._settings.auto_fix:
                continue
            try:
                if self._repair(finding, entry):
                    fixed += 1
            except Exception as exc:  # noqa: BLE001
                errors.append(f"{key}: {exc}")
                log.warning("Repair of %s failed: %s", key, exc)

        return ConsistencyReport(
            timestamp=started,
            total_checked=len(keys),
            inconsistent_items=tuple(findings),
            fixed_count=fixed,
            errors=tuple(errors),
        )

    def _inspect(
        self,
        key: EntityKey,
        local: Payload | None,
        entry: OverlayEntry | None,
        remote: Payload | None,
    ) -> Inconsistency | None:
        if entry is not None:
            return Inconsistency(
                key=key,
                kind=DivergenceKind.ORPHANED_OVERLAY,
                description=f"overlay entry written by {entry.operation_id} has no live operation",
                local=None if entry.removed else entry.value,
                remote=remote,
            )
        if local is None and remote is None:
            return None
        if remote is None:
            return Inconsistency(
                key=key,
                kind=DivergenceKind.MISSING_REMOTE,
                description="confirmed locally but missing from the store",
                local=local,
            )
        if local is None:
            return Inconsistency(
                key=key,
                kind=DivergenceKind.MISSING_LOCAL,
                description="present in the store but unknown locally",
                remote=remote,
            )
        fields = conflict_fields(local, remote, exclude=self._settings.exclude_fields)
        if not fields:
            return None
        return Inconsistency(
            key=key,
            kind=DivergenceKind.DATA_MISMATCH,
            description=f"fields differ: {', '.join(fields)}",
            local=local,
            remote=remote,
            conflict_fields=fields,
        )

    def _repair(self, finding: Inconsistency, entry: OverlayEntry | None) -> bool:
        if (
            finding.kind is DivergenceKind.ORPHANED_OVERLAY
            and entry is not None
            and self._settings.overlay_policy is OverlayPolicy.TRUST_LOCAL
        ):
            return self._resubmit(entry, finding.remote)
        return self._manager.adopt_remote(finding.key, finding.remote)

    def _resubmit(self, entry: OverlayEntry, remote: Payload | None) -> bool:
        key = entry.key
        if entry.removed:
            if remote is None:
                return self._manager.adopt_remote(key, None)
            intent = Intent(
                type=OperationKind.DELETE,
                entity_kind=key.kind,
                entity_id=key.entity_id,
                original_payload=remote,
            )
        else:
            value = entry.value or {}
            if remote is not None and not conflict_fields(value, remote, exclude=frozenset()):
                return self._manager.adopt_remote(key, remote)
            intent = Intent(
                type=OperationKind.ADD if remote is None else OperationKind.UPDATE,
                entity_kind=key.kind,
                entity_id=key.entity_id,
                payload=value,
                original_payload=remote,
            )
        operation_id = self._manager.submit(intent)
        log.info("Resubmitted local value of %s as %s", key, operation_id)
        return True

    def _record(self, report: ConsistencyReport) -> None:
        self._history.appendleft(report)
        self._total_validations += 1
        self._total_inconsistencies += len(report.inconsistent_items)
        self._total_fixed += report.fixed_count


def conflict_fields(
    local: Mapping[str, object],
    remote: Mapping[str, object],
    *,
    exclude: Iterable[str] = DEFAULT_EXCLUDE_FIELDS,
) -> tuple[str, ...]:
    """Names of the top-level fields whose values differ, ignoring ``exclude``."""

    excluded = set(exclude)
    names = (set(local) | set(remote)) - excluded
    return tuple(
        sorted(name for name in names if local.get(name, _MISSING) != remote.get(name, _MISSING))
    )
