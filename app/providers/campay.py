from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests

from app.providers.base import ProviderResult
from app.providers.fallback import first_accepted
from services.redaction import redact_text
from settings import settings


TOKEN_TTL_S = 3600
TOKEN_SAFETY_BUFFER_S = 60
logger = logging.getLogger("escrow.rail")


@dataclass(frozen=True)
class CampayCredential:
    username: str
    password: str


def parse_credentials(raw: str) -> list[CampayCredential]:
    """'user:pass,user2:pass2' -> ordered credentials."""
    out: list[CampayCredential] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        username, password = part.split(":", 1)
        if username.strip() and password.strip():
            out.append(CampayCredential(username.strip(), password.strip()))
    return out


class CampayProvider:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        credentials: Optional[list[CampayCredential]] = None,
        currency: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        base = base_url or settings.CAMPAY_BASE_URL
        self.base_url = base if base.endswith("/") else base + "/"
        self.credentials = credentials if credentials is not None else parse_credentials(settings.CAMPAY_CREDENTIALS)
        self.currency = currency or settings.CURRENCY
        self.timeout_s = timeout_s or settings.CAMPAY_HTTP_TIMEOUT_S
        # username -> (token, expires_at)
        self._tokens: dict[str, tuple[str, float]] = {}

    # ------------------------------------------------------
    # Public rail operations
    # ------------------------------------------------------

    def collect(self, *, amount: int, phone: str, description: str, external_reference: str) -> ProviderResult:
        body = {
            "amount": str(int(amount)),
            "currency": self.currency,
            "from": phone,
            "description": description,
            "external_reference": external_reference,
            "uuid": external_reference,
        }
        return first_accepted(
            self.credentials,
            lambda cred: self._post(cred, "collect/", body, stage="collect", reference=external_reference),
            label="campay collect",
        )

    def withdraw(self, *, amount: int, phone: str, description: str, external_reference: str) -> ProviderResult:
        body = {
            "amount": str(int(amount)),
            "currency": self.currency,
            "to": phone,
            "description": description,
            "external_reference": external_reference,
        }
        return first_accepted(
            self.credentials,
            lambda cred: self._post(cred, "withdraw/", body, stage="withdraw", reference=external_reference),
            label="campay withdraw",
        )

    def transaction_status(self, reference: str) -> ProviderResult:
        return first_accepted(
            self.credentials,
            lambda cred: self._get_status(cred, reference),
            label="campay status",
        )

    # ------------------------------------------------------
    # Auth
    # ------------------------------------------------------

    def get_token(self, cred: CampayCredential) -> tuple[Optional[str], Optional[ProviderResult]]:
        now = time.time()
        cached = self._tokens.get(cred.username)
        if cached and now < cached[1] - TOKEN_SAFETY_BUFFER_S:
            return cached[0], None

        url = f"{self.base_url}token/"
        try:
            resp = requests.post(
                url,
                json={"username": cred.username, "password": cred.password},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("campay token error err=%s", exc)
            return None, ProviderResult(status="FAILED", error="CAMPAY_TOKEN_ERROR", definitive=True)

        payload = _safe_json(resp)
        token = payload.get("token") if isinstance(payload, dict) else None
        if resp.status_code == 200 and token:
            expires_in = int(payload.get("expires_in") or TOKEN_TTL_S)
            self._tokens[cred.username] = (token, now + max(0, expires_in))
            return token, None

        logger.warning("campay token refused status=%s", resp.status_code)
        # Nothing was attempted on the rail yet, so this is always definitive.
        return None, ProviderResult(
            status="FAILED",
            error="CAMPAY_TOKEN_ERROR",
            http_status=resp.status_code,
            response=_response_payload(resp, stage="token"),
        )

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Token {token}", "Content-Type": "application/json"}

    # ------------------------------------------------------
    # HTTP
    # ------------------------------------------------------

    def _post(self, cred: CampayCredential, path: str, body: dict[str, Any], *, stage: str, reference: str) -> ProviderResult:
        token, err = self.get_token(cred)
        if not token:
            return err

        try:
            resp = requests.post(
                f"{self.base_url}{path}",
                json=body,
                headers=self._auth_headers(token),
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            logger.error("campay %s timeout external_reference=%s err=%s", stage, reference, exc)
            return ProviderResult(status="FAILED", error="TIMEOUT", definitive=False)
        except requests.RequestException as exc:
            logger.error("campay %s error external_reference=%s err=%s", stage, reference, exc)
            return ProviderResult(status="FAILED", error=str(exc), definitive=False)

        logger.info(
            "campay %s status=%s external_reference=%s to=%s",
            stage,
            resp.status_code,
            reference,
            redact_text(str(body.get("to") or body.get("from") or "")),
        )
        payload = _safe_json(resp)

        if resp.status_code == 401:
            self._tokens.pop(cred.username, None)

        if 200 <= resp.status_code < 300:
            status = _map_status(payload, default="PENDING")
            return ProviderResult(
                status=status,
                reference=_extract_reference(payload),
                response=_response_payload(resp, stage=stage),
                error=None if status != "FAILED" else _error_message(payload),
                http_status=resp.status_code,
            )

        return ProviderResult(
            status="FAILED",
            response=_response_payload(resp, stage=stage),
            error=_error_message(payload) or f"HTTP {resp.status_code}",
            http_status=resp.status_code,
            definitive=resp.status_code < 500,
        )

    def _get_status(self, cred: CampayCredential, reference: str) -> ProviderResult:
        token, err = self.get_token(cred)
        if not token:
            return err

        try:
            resp = requests.get(
                f"{self.base_url}transaction/{reference}/",
                headers=self._auth_headers(token),
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("campay status error reference=%s err=%s", reference, exc)
            return ProviderResult(status="PENDING", reference=reference, error=str(exc), definitive=False)

        payload = _safe_json(resp)
        if resp.status_code == 401:
            self._tokens.pop(cred.username, None)

        if resp.status_code == 200:
            return ProviderResult(
                status=_map_status(payload, default="PENDING"),
                reference=reference,
                response=_response_payload(resp, stage="status"),
                http_status=200,
            )

        return ProviderResult(
            status="FAILED",
            reference=reference,
            response=_response_payload(resp, stage="status"),
            error=_error_message(payload) or f"HTTP {resp.status_code}",
            http_status=resp.status_code,
            definitive=resp.status_code < 500,
        )


def _safe_json(resp) -> Any:
    try:
        return resp.json()
    except Exception:
        return None


def _response_payload(resp, *, stage: str) -> dict[str, Any]:
    return {
        "stage": stage,
        "http_status": resp.status_code,
        "body": _safe_json(resp),
    }


def _extract_reference(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("reference", "transaction_reference", "operator_reference"):
        value = payload.get(key)
        if value:
            return str(value)
    return None


def _map_status(payload: Any, *, default: str) -> str:
    raw = (payload.get("status") if isinstance(payload, dict) else None) or ""
    raw = str(raw).strip().upper()
    if raw in ("SUCCESSFUL", "SUCCESS", "COMPLETED"):
        return "SUCCESSFUL"
    if raw in ("FAILED", "REJECTED", "CANCELLED", "CANCELED"):
        return "FAILED"
    if raw == "PENDING":
        return "PENDING"
    return default


def _error_message(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("message", "detail", "error", "error_code"):
        value = payload.get(key)
        if value:
            return str(value)
    return None
