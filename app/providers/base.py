# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Literal

RailStatus = Literal["SUCCESSFUL", "PENDING", "FAILED"]

# The rail rejected the request before acting on it; another credential may succeed.
FALLTHROUGH_HTTP = frozenset({401, 403, 429})


@dataclass(frozen=True)
class ProviderResult:
    status: RailStatus
    reference: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    http_status: Optional[int] = None

    # False => we cannot tell whether the rail acted (timeout, 5xx)
    definitive: bool = True

    @property
    def ok(self) -> bool:
        return self.status != "FAILED"

    @property
    def falls_through(self) -> bool:
        return self.status == "FAILED" and self.http_status in FALLTHROUGH_HTTP


class PaymentRail(Protocol):
    def collect(
        self, *, amount: int, phone: str, description: str, external_reference: str
    ) -> ProviderResult: ...

    def withdraw(
        self, *, amount: int, phone: str, description: str, external_reference: str
    ) -> ProviderResult: ...

    def transaction_status(self, reference: str) -> ProviderResult: ...
