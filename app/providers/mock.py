# app/providers/mock.py
from __future__ import annotations

import threading
import uuid
from typing import Optional

from app.providers.base import ProviderResult


class MockRail:
    """
    Dev/test payment rail. Records every call so tests can count transfers.

    withdraw_outcome:
      "success"  -> SUCCESSFUL
      "failed"   -> definitive FAILED (the rail refused)
      "unknown"  -> indeterminate FAILED (timeout-like)
    """

    def __init__(
        self,
        *,
        withdraw_outcome: str = "success",
        collect_outcome: str = "success",
        status_for: Optional[dict[str, str]] = None,
        default_status: str = "PENDING",
    ):
        self.withdraw_outcome = withdraw_outcome
        self.collect_outcome = collect_outcome
        self.status_for = dict(status_for or {})
        self.default_status = default_status
        self.withdrawals: list[dict] = []
        self.collections: list[dict] = []
        self.status_queries: list[str] = []
        self._lock = threading.Lock()

    def collect(self, *, amount: int, phone: str, description: str, external_reference: str) -> ProviderResult:
        with self._lock:
            self.collections.append(
                {"amount": int(amount), "phone": phone, "description": description, "external_reference": external_reference}
            )
        if self.collect_outcome != "success":
            return ProviderResult(status="FAILED", error="MOCK_COLLECT_FAILED", http_status=400)
        return ProviderResult(status="PENDING", reference=f"mock-col-{uuid.uuid4().hex[:12]}", http_status=200)

    def withdraw(self, *, amount: int, phone: str, description: str, external_reference: str) -> ProviderResult:
        with self._lock:
            self.withdrawals.append(
                {"amount": int(amount), "phone": phone, "description": description, "external_reference": external_reference}
            )
        if self.withdraw_outcome == "failed":
            return ProviderResult(status="FAILED", error="MOCK_WITHDRAW_REFUSED", http_status=400)
        if self.withdraw_outcome == "unknown":
            return ProviderResult(status="FAILED", error="TIMEOUT", definitive=False)
        return ProviderResult(
            status="SUCCESSFUL",
            reference=f"mock-wd-{uuid.uuid4().hex[:12]}",
            http_status=200,
            response={"mock": True},
        )

    def transaction_status(self, reference: str) -> ProviderResult:
        with self._lock:
            self.status_queries.append(reference)
        status = self.status_for.get(reference, self.default_status)
        return ProviderResult(status=status, reference=reference, http_status=200)
