"""
Структурный отчёт о запуске (задача пайплайна / запуск бэкапа).

Назначение:
- никакого «голого» pass/fail для батчевых операций
- по каждой единице: успех, успех после ретраев, постоянный отказ с причиной
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class UnitResult:
    unit: str
    status: str  # succeeded|retried|failed|unreached
    attempts: int = 1
    error_kind: str | None = None  # transient|permanent|partial|fatal|cancelled
    error: str | None = None


@dataclass
class OutcomeReport:
    run_id: str
    kind: str  # pipeline|backup
    units: list[UnitResult] = field(default_factory=list)
    notes: dict[str, Any] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Запись результатов
    # -------------------------------------------------------------------------
    def succeeded(self, unit: str, *, attempts: int = 1) -> None:
        status = "retried" if attempts > 1 else "succeeded"
        self._put(UnitResult(unit=unit, status=status, attempts=attempts))

    def failed(self, unit: str, *, error_kind: str, error: str, attempts: int = 1) -> None:
        self._put(
            UnitResult(unit=unit, status="failed", attempts=attempts, error_kind=error_kind, error=error[:500])
        )

    def unreached(self, unit: str, *, reason: str = "time_budget_exceeded") -> None:
        self._put(UnitResult(unit=unit, status="unreached", attempts=0, error_kind="transient", error=reason))

    def _put(self, result: UnitResult) -> None:
        # одна запись на единицу: последняя побеждает (повторная доставка)
        self.units = [u for u in self.units if u.unit != result.unit]
        self.units.append(result)

    # -------------------------------------------------------------------------
    # Агрегаты
    # -------------------------------------------------------------------------
    @property
    def successes(self) -> list[str]:
        return [u.unit for u in self.units if u.status in {"succeeded", "retried"}]

    @property
    def retried(self) -> list[str]:
        return [u.unit for u in self.units if u.status == "retried"]

    @property
    def failures(self) -> list[UnitResult]:
        return [u for u in self.units if u.status == "failed"]

    @property
    def unreached_units(self) -> list[str]:
        return [u.unit for u in self.units if u.status == "unreached"]

    @property
    def partial(self) -> bool:
        return bool(self.successes) and bool(self.failures or self.unreached_units)

    @property
    def status(self) -> str:
        if not self.failures and not self.unreached_units:
            return "succeeded"
        if self.successes:
            return "partial"
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "status": self.status,
            "successes": self.successes,
            "retried": self.retried,
            "failures": [asdict(u) for u in self.failures],
            "unreached": self.unreached_units,
            "notes": dict(self.notes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutcomeReport:
        report = cls(run_id=str(data.get("run_id", "")), kind=str(data.get("kind", "")))
        retried = set(data.get("retried") or [])
        for unit in data.get("successes") or []:
            report.units.append(UnitResult(unit=unit, status="retried" if unit in retried else "succeeded"))
        for item in data.get("failures") or []:
            report.units.append(UnitResult(**item))
        for unit in data.get("unreached") or []:
            report.unreached(unit)
        report.notes = dict(data.get("notes") or {})
        return report
