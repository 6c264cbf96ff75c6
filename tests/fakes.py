# tests/fakes.py
from __future__ import annotations

import copy
import itertools
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional

from app.providers.mock import MockRail


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeConn:
    """Collects undo steps so a rolled-back block leaves the fake untouched."""

    def __init__(self, ledger: "FakeLedger"):
        self.ledger = ledger
        self._undo: list = []

    def on_rollback(self, fn) -> None:
        self._undo.append(fn)

    def rollback(self) -> None:
        with self.ledger.lock:
            for fn in reversed(self._undo):
                fn()
        self._undo.clear()

    def commit(self) -> None:
        self._undo.clear()


class FakeLedger:
    """
    In-memory stand-in for the app.ledger repository modules. Every
    conditional update and insert-ignore runs under one lock, like a single
    SQL statement would.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self._ids = itertools.count(1)

        self.users: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.milestones: dict[int, dict] = {}
        self.payments: dict[int, dict] = {}
        self.guests: list[dict] = []
        self.codes: dict[int, dict] = {}
        self.markers: set[str] = set()
        self.attempts: dict[int, dict] = {}
        self.payouts: dict[int, dict] = {}
        self.earnings: dict[str, dict] = {}
        self.withdrawals: dict[int, dict] = {}
        self.disputes: dict[int, dict] = {}
        self.chats: dict[str, int] = {}
        self.messages: list[dict] = []
        self.reminders: set[tuple[str, int]] = set()
        self.escalations: set[tuple[str, int]] = set()

        self.fail_next_payout_insert = False

    # ------------------------------------------------------
    # plumbing
    # ------------------------------------------------------

    def next_id(self) -> int:
        return next(self._ids)

    @contextmanager
    def get_conn(self):
        conn = FakeConn(self)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _restore(self, conn, target: dict, snapshot: dict) -> None:
        def undo():
            target.clear()
            target.update(snapshot)

        conn.on_rollback(undo)

    # ------------------------------------------------------
    # seeding
    # ------------------------------------------------------

    def add_user(self, *, name="Seller", email="seller@example.com", phone="237670000001", referred_by=None, role="user", referral_balance=0, referral_code=None) -> dict:
        uid = uuid.uuid4()
        row = {
            "id": uid,
            "email": email,
            "name": name,
            "phone": phone,
            "role": role,
            "referred_by": referred_by,
            "referral_balance": referral_balance,
            "referral_code": referral_code,
        }
        self.users[str(uid)] = row
        return row

    def add_invoice(self, *, seller, amount=50000, status="pending", number=None, payment_type="full", delivered_at=None, currency="XAF") -> dict:
        iid = uuid.uuid4()
        row = {
            "id": iid,
            "invoice_number": number or f"INV-{self.next_id():04d}",
            "seller_id": seller["id"],
            "name": "Logo design",
            "description": None,
            "amount": amount,
            "currency": currency,
            "status": status,
            "payment_type": payment_type,
            "created_at": _now(),
            "expires_at": None,
            "delivered_at": delivered_at,
            "completed_at": None,
        }
        self.invoices[str(iid)] = row
        return row

    def add_milestone(self, *, invoice, number, amount, status="pending", release_token=None, label=None) -> dict:
        mid = self.next_id()
        row = {
            "id": mid,
            "invoice_id": invoice["id"],
            "invoice_number": invoice["invoice_number"],
            "milestone_number": number,
            "label": label or f"Phase {number}",
            "amount": amount,
            "deadline": None,
            "status": status,
            "release_token": release_token,
            "spent_release_token": None,
            "completed_at": None,
            "released_at": None,
        }
        self.milestones[mid] = row
        return row

    def add_payment(self, *, invoice, payment_ref=None, status="pending", gateway_reference=None) -> dict:
        pid = self.next_id()
        row = {
            "id": pid,
            "invoice_id": invoice["id"],
            "provider": "MTN",
            "payment_ref": payment_ref or str(uuid.uuid4()),
            "gateway_reference": gateway_reference,
            "amount": invoice["amount"],
            "currency": invoice["currency"],
            "status": status,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.payments[pid] = row
        return row

    def add_guest(self, *, invoice, email="buyer@example.com", momo_number="237690000002", chat_token=None, created_at=None) -> dict:
        row = {
            "id": self.next_id(),
            "email": email,
            "momo_number": momo_number,
            "user_id": None,
            "invoice_number": invoice["invoice_number"],
            "chat_token": chat_token,
            "created_at": created_at or _now(),
        }
        self.guests.append(row)
        return row

    def add_code(self, *, invoice, code="ABCD2345", token=None, is_used=False) -> dict:
        cid = self.next_id()
        row = {
            "id": cid,
            "invoice_id": invoice["id"],
            "seller_id": invoice["seller_id"],
            "code": code,
            "verification_token": token or uuid.uuid4().hex,
            "is_used": is_used,
            "used_at": None,
            "created_at": _now(),
        }
        self.codes[cid] = row
        return row

    def add_dispute(self, *, invoice, opened_by="buyer", reason="Not delivered", status="open", admin_token=None, created_at=None) -> dict:
        did = self.next_id()
        row = {
            "id": did,
            "invoice_id": invoice["id"],
            "invoice_number": invoice["invoice_number"],
            "opened_by": opened_by,
            "reason": reason,
            "admin_token": admin_token or uuid.uuid4().hex,
            "status": status,
            "resolution_note": None,
            "created_at": created_at or _now(),
            "resolved_at": None,
        }
        self.disputes[did] = row
        return row

    def open_chat_for(self, invoice) -> None:
        self.chats.setdefault(str(invoice["id"]), self.next_id())

    def paid_invoice(self, *, amount=50000, referred_by=None, status="paid", code="ABCD2345", **kw) -> SimpleNamespace:
        """Seller, invoice, paid payment, guest, unused credential and chat."""
        seller = self.add_user(referred_by=referred_by)
        invoice = self.add_invoice(seller=seller, amount=amount, status=status, **kw)
        payment = self.add_payment(invoice=invoice, status="paid")
        guest = self.add_guest(invoice=invoice, chat_token="chat-token-1")
        cred = self.add_code(invoice=invoice, code=code)
        self.open_chat_for(invoice)
        return SimpleNamespace(seller=seller, invoice=invoice, payment=payment, guest=guest, cred=cred)

    # ------------------------------------------------------
    # invoices
    # ------------------------------------------------------

    def get_invoice(self, conn, *, invoice_id):
        with self.lock:
            row = self.invoices.get(str(invoice_id))
            return dict(row) if row else None

    def get_invoice_by_number(self, conn, *, invoice_number):
        with self.lock:
            for row in self.invoices.values():
                if row["invoice_number"] == invoice_number:
                    return dict(row)
            return None

    def update_invoice_status(self, conn, *, invoice_id, new_status, from_statuses):
        with self.lock:
            row = self.invoices.get(str(invoice_id))
            if not row or row["status"] not in list(from_statuses):
                return False
            self._restore(conn, row, dict(row))
            row["status"] = new_status
            if new_status == "delivered":
                row["delivered_at"] = _now()
            if new_status in ("completed", "refunded"):
                row["completed_at"] = _now()
            return True

    def get_milestone(self, conn, *, invoice_id, milestone_number):
        with self.lock:
            for row in self.milestones.values():
                if str(row["invoice_id"]) == str(invoice_id) and row["milestone_number"] == milestone_number:
                    return dict(row)
            return None

    def get_milestone_by_token(self, conn, *, release_token):
        with self.lock:
            for row in self.milestones.values():
                if release_token and release_token in (row["release_token"], row["spent_release_token"]):
                    return dict(row)
            return None

    def list_milestones(self, conn, *, invoice_id, for_update=False):
        with self.lock:
            rows = [dict(m) for m in self.milestones.values() if str(m["invoice_id"]) == str(invoice_id)]
        return sorted(rows, key=lambda m: m["milestone_number"])

    def mark_milestone_completed(self, conn, *, milestone_id, release_token):
        with self.lock:
            row = self.milestones.get(milestone_id)
            if not row or row["status"] != "pending":
                return False
            self._restore(conn, row, dict(row))
            row.update(status="completed", completed_at=_now(), release_token=release_token)
            return True

    def count_unreleased_milestones(self, conn, *, invoice_id):
        with self.lock:
            return sum(
                1 for m in self.milestones.values()
                if str(m["invoice_id"]) == str(invoice_id) and m["status"] != "released"
            )

    def get_user(self, conn, *, user_id):
        with self.lock:
            row = self.users.get(str(user_id))
            return dict(row) if row else None

    def get_guest(self, conn, *, invoice_number):
        with self.lock:
            rows = [g for g in self.guests if g["invoice_number"] == invoice_number]
            if not rows:
                return None
            return dict(max(rows, key=lambda g: g["created_at"]))

    def upsert_guest(self, conn, *, email, momo_number, invoice_number, user_id=None):
        with self.lock:
            for g in self.guests:
                if g["email"] == email and g["invoice_number"] == invoice_number:
                    self._restore(conn, g, dict(g))
                    g.update(momo_number=momo_number, user_id=user_id)
                    return
            row = {
                "id": self.next_id(),
                "email": email,
                "momo_number": momo_number,
                "user_id": user_id,
                "invoice_number": invoice_number,
                "chat_token": None,
                "created_at": _now(),
            }
            self.guests.append(row)
            conn.on_rollback(lambda: self.guests.remove(row))

    def set_guest_chat_token(self, conn, *, guest_id, chat_token):
        with self.lock:
            for g in self.guests:
                if g["id"] == guest_id:
                    self._restore(conn, g, dict(g))
                    g["chat_token"] = chat_token

    def guest_has_chat_token(self, conn, *, invoice_number, chat_token):
        with self.lock:
            return any(g["invoice_number"] == invoice_number and g["chat_token"] == chat_token for g in self.guests)

    # ------------------------------------------------------
    # credentials
    # ------------------------------------------------------

    def get_confirmation_code(self, conn, *, invoice_id):
        with self.lock:
            for row in self.codes.values():
                if str(row["invoice_id"]) == str(invoice_id):
                    return dict(row)
            return None

    def get_confirmation_by_token(self, conn, *, verification_token):
        with self.lock:
            for row in self.codes.values():
                if row["verification_token"] == verification_token:
                    return dict(row)
            return None

    def has_confirmation_code(self, conn, *, invoice_id):
        return self.get_confirmation_code(conn, invoice_id=invoice_id) is not None

    def insert_confirmation_code(self, conn, *, invoice_id, seller_id, code, verification_token):
        with self.lock:
            if any(c["code"] == code for c in self.codes.values()):
                return None
            if any(str(c["invoice_id"]) == str(invoice_id) for c in self.codes.values()):
                raise RuntimeError("duplicate credential for invoice")
            cid = self.next_id()
            row = {
                "id": cid,
                "invoice_id": invoice_id,
                "seller_id": seller_id,
                "code": code,
                "verification_token": verification_token,
                "is_used": False,
                "used_at": None,
                "created_at": _now(),
            }
            self.codes[cid] = row
            conn.on_rollback(lambda: self.codes.pop(cid, None))
            return dict(row)

    def claim_confirmation_code(self, conn, *, code_id):
        with self.lock:
            row = self.codes.get(code_id)
            if not row or row["is_used"]:
                return None
            self._restore(conn, row, dict(row))
            row.update(is_used=True, used_at=_now())
            return {"id": row["id"], "invoice_id": row["invoice_id"], "seller_id": row["seller_id"]}

    def claim_milestone_release(self, conn, *, milestone_id):
        with self.lock:
            row = self.milestones.get(milestone_id)
            if not row or row["status"] != "completed":
                return None
            self._restore(conn, row, dict(row))
            row.update(
                status="released",
                released_at=_now(),
                spent_release_token=row["release_token"],
                release_token=None,
            )
            return {k: row[k] for k in ("id", "invoice_id", "invoice_number", "milestone_number", "label", "amount")}

    # ------------------------------------------------------
    # payments
    # ------------------------------------------------------

    def insert_payment(self, conn, *, invoice_id, provider, payment_ref, amount, currency):
        with self.lock:
            invoice = self.invoices[str(invoice_id)]
            row = self.add_payment(invoice=invoice, payment_ref=payment_ref)
            row.update(provider=provider, amount=int(amount), currency=currency)
            conn.on_rollback(lambda: self.payments.pop(row["id"], None))

    def set_gateway_reference(self, conn, *, payment_ref, gateway_reference):
        with self.lock:
            for row in self.payments.values():
                if row["payment_ref"] == payment_ref:
                    row["gateway_reference"] = gateway_reference

    def get_payment_by_ref(self, conn, *, payment_ref):
        with self.lock:
            for row in self.payments.values():
                if row["payment_ref"] == payment_ref:
                    return dict(row)
            return None

    def get_latest_payment(self, conn, *, invoice_id):
        with self.lock:
            rows = [p for p in self.payments.values() if str(p["invoice_id"]) == str(invoice_id)]
            return dict(max(rows, key=lambda p: (p["created_at"], p["id"]))) if rows else None

    def has_paid_payment(self, conn, *, invoice_id):
        with self.lock:
            return any(str(p["invoice_id"]) == str(invoice_id) and p["status"] == "paid" for p in self.payments.values())

    def mark_payment_paid(self, conn, *, payment_id):
        with self.lock:
            row = self.payments.get(payment_id)
            if not row or row["status"] != "pending":
                return False
            self._restore(conn, row, dict(row))
            row["status"] = "paid"
            return True

    def claim_processed_payment(self, conn, *, payment_ref):
        with self.lock:
            if payment_ref in self.markers:
                return False
            self.markers.add(payment_ref)
            conn.on_rollback(lambda: self.markers.discard(payment_ref))
            return True

    def open_chat(self, conn, *, invoice_id, invoice_number):
        with self.lock:
            if str(invoice_id) not in self.chats:
                self.chats[str(invoice_id)] = self.next_id()
                conn.on_rollback(lambda: self.chats.pop(str(invoice_id), None))

    def insert_chat_message(self, conn, *, invoice_id, sender_type, body):
        with self.lock:
            chat_id = self.chats.get(str(invoice_id))
            if chat_id is None:
                return None
            row = {"id": self.next_id(), "chat_id": chat_id, "sender_type": sender_type, "body": body, "created_at": _now()}
            self.messages.append(row)
            conn.on_rollback(lambda: self.messages.remove(row))
            return row["id"]

    def list_chat_messages(self, conn, *, invoice_id):
        with self.lock:
            chat_id = self.chats.get(str(invoice_id))
            return [
                {k: m[k] for k in ("id", "sender_type", "body", "created_at")}
                for m in self.messages if m["chat_id"] == chat_id
            ]

    # ------------------------------------------------------
    # settlements
    # ------------------------------------------------------

    def open_attempt(self, conn, *, unit_type, unit_ref, invoice_id, invoice_number, amount, recipient_phone, external_reference, plan):
        with self.lock:
            aid = self.next_id()
            row = {
                "id": aid,
                "unit_type": unit_type,
                "unit_ref": unit_ref,
                "invoice_id": invoice_id,
                "invoice_number": invoice_number,
                "status": "CLAIMED",
                "amount": int(amount),
                "recipient_phone": recipient_phone,
                "external_reference": external_reference,
                "plan": copy.deepcopy(plan),
                "gateway_reference": None,
                "last_error": None,
                "attempt_count": 0,
                "created_at": _now(),
                "updated_at": _now(),
            }
            self.attempts[aid] = row
            conn.on_rollback(lambda: self.attempts.pop(aid, None))
            return copy.deepcopy(row)

    def get_attempt(self, conn, *, attempt_id):
        with self.lock:
            row = self.attempts.get(attempt_id)
            return copy.deepcopy(row) if row else None

    def mark_attempt(self, conn, *, attempt_id, new_status, from_status, gateway_reference=None, last_error=None, count_attempt=False):
        with self.lock:
            row = self.attempts.get(attempt_id)
            if not row or row["status"] != from_status:
                return False
            self._restore(conn, row, dict(row))
            row["status"] = new_status
            if gateway_reference is not None:
                row["gateway_reference"] = gateway_reference
            row["last_error"] = last_error
            if count_attempt:
                row["attempt_count"] += 1
            row["updated_at"] = _now()
            return True

    def list_attempts(self, conn, *, statuses, older_than_minutes=0, limit=100):
        cutoff = _now() - timedelta(minutes=older_than_minutes)
        with self.lock:
            rows = [
                copy.deepcopy(a) for a in self.attempts.values()
                if a["status"] in list(statuses) and a["updated_at"] <= cutoff
            ]
        return sorted(rows, key=lambda a: a["updated_at"])[:limit]

    def insert_payout(self, conn, *, settlement_id, user_id, recipient_phone, amount, method, status, invoice_id, invoice_number, milestone_id=None, gateway_reference=None):
        with self.lock:
            if self.fail_next_payout_insert:
                self.fail_next_payout_insert = False
                raise RuntimeError("simulated database outage")
            if settlement_id in self.payouts:
                return False
            self.payouts[settlement_id] = {
                "settlement_id": settlement_id,
                "user_id": user_id,
                "recipient_phone": recipient_phone,
                "amount": int(amount),
                "method": method,
                "status": status,
                "invoice_id": invoice_id,
                "invoice_number": invoice_number,
                "milestone_id": milestone_id,
                "gateway_reference": gateway_reference,
            }
            conn.on_rollback(lambda: self.payouts.pop(settlement_id, None))
            return True

    # ------------------------------------------------------
    # referrals
    # ------------------------------------------------------

    def insert_referral_earning(self, conn, *, referrer_id, referred_id, source_ref, gross_amount, earned_amount):
        with self.lock:
            if source_ref in self.earnings:
                return False
            self.earnings[source_ref] = {
                "referrer_id": referrer_id,
                "referred_id": referred_id,
                "source_ref": source_ref,
                "gross_amount": int(gross_amount),
                "earned_amount": int(earned_amount),
            }
            conn.on_rollback(lambda: self.earnings.pop(source_ref, None))
            return True

    def increment_referral_balance(self, conn, *, user_id, amount):
        with self.lock:
            row = self.users[str(user_id)]
            self._restore(conn, row, dict(row))
            row["referral_balance"] += int(amount)

    def deduct_referral_balance(self, conn, *, user_id, amount):
        with self.lock:
            row = self.users.get(str(user_id))
            pending = any(
                str(w["user_id"]) == str(user_id) and w["status"] == "pending"
                for w in self.withdrawals.values()
            )
            if not row or row["referral_balance"] < int(amount) or pending:
                return None
            self._restore(conn, row, dict(row))
            row["referral_balance"] -= int(amount)
            return row["referral_balance"]

    def insert_withdrawal(self, conn, *, user_id, amount, momo_number):
        with self.lock:
            wid = self.next_id()
            row = {
                "id": wid,
                "user_id": user_id,
                "amount": int(amount),
                "momo_number": momo_number,
                "status": "pending",
                "gateway_reference": None,
                "last_error": None,
                "created_at": _now(),
            }
            self.withdrawals[wid] = row
            conn.on_rollback(lambda: self.withdrawals.pop(wid, None))
            return dict(row)

    def mark_withdrawal(self, conn, *, withdrawal_id, new_status, gateway_reference=None, last_error=None):
        with self.lock:
            row = self.withdrawals.get(withdrawal_id)
            if not row or row["status"] != "pending":
                return False
            self._restore(conn, row, dict(row))
            row.update(status=new_status, gateway_reference=gateway_reference, last_error=last_error)
            return True

    def list_withdrawals(self, conn, *, user_id):
        with self.lock:
            return [dict(w) for w in self.withdrawals.values() if str(w["user_id"]) == str(user_id)]

    def has_pending_withdrawal(self, conn, *, user_id):
        with self.lock:
            return any(str(w["user_id"]) == str(user_id) and w["status"] == "pending" for w in self.withdrawals.values())

    def get_referral_account(self, conn, *, user_id):
        with self.lock:
            row = self.users.get(str(user_id))
            if not row:
                return None
            return {k: row[k] for k in ("id", "referral_code", "referral_balance")}

    def list_referral_earnings(self, conn, *, referrer_id):
        with self.lock:
            return [dict(e) for e in self.earnings.values() if str(e["referrer_id"]) == str(referrer_id)]

    # ------------------------------------------------------
    # disputes
    # ------------------------------------------------------

    def get_dispute_for_invoice(self, conn, *, invoice_id):
        with self.lock:
            for row in self.disputes.values():
                if str(row["invoice_id"]) == str(invoice_id):
                    return dict(row)
            return None

    def get_dispute_by_token(self, conn, *, admin_token):
        with self.lock:
            for row in self.disputes.values():
                if row["admin_token"] == admin_token:
                    return dict(row)
            return None

    def insert_dispute(self, conn, *, invoice_id, invoice_number, opened_by, reason, admin_token):
        with self.lock:
            if any(str(d["invoice_id"]) == str(invoice_id) for d in self.disputes.values()):
                return None
            invoice = self.invoices[str(invoice_id)]
            row = self.add_dispute(invoice=invoice, opened_by=opened_by, reason=reason, admin_token=admin_token)
            conn.on_rollback(lambda: self.disputes.pop(row["id"], None))
            return dict(row)

    def claim_dispute_resolution(self, conn, *, dispute_id, new_status, resolution_note=None):
        with self.lock:
            row = self.disputes.get(dispute_id)
            if not row or row["status"] != "open":
                return None
            self._restore(conn, row, dict(row))
            row.update(status=new_status, resolution_note=resolution_note, resolved_at=_now())
            return dict(row)

    def list_open_disputes(self, conn):
        with self.lock:
            out = []
            for d in self.disputes.values():
                if d["status"] != "open":
                    continue
                invoice = self.invoices[str(d["invoice_id"])]
                out.append(
                    dict(
                        d,
                        invoice_name=invoice["name"],
                        amount=invoice["amount"],
                        currency=invoice["currency"],
                    )
                )
            return sorted(out, key=lambda r: r["created_at"])

    # ------------------------------------------------------
    # scheduled job claims
    # ------------------------------------------------------

    def list_reminder_candidates(self, conn):
        with self.lock:
            latest: dict[str, dict] = {}
            for g in self.guests:
                current = latest.get(g["invoice_number"])
                if current is None or g["created_at"] > current["created_at"]:
                    latest[g["invoice_number"]] = g
            out = []
            for number, g in latest.items():
                invoice = next((i for i in self.invoices.values() if i["invoice_number"] == number), None)
                if not invoice or invoice["status"] != "pending":
                    continue
                out.append(
                    {
                        "invoice_number": number,
                        "buyer_email": g["email"],
                        "attempt_at": g["created_at"],
                        "invoice_name": invoice["name"],
                        "amount": invoice["amount"],
                        "currency": invoice["currency"],
                    }
                )
            return out

    def _claim_pair(self, conn, bucket: set, key) -> bool:
        with self.lock:
            if key in bucket:
                return False
            bucket.add(key)
            conn.on_rollback(lambda: bucket.discard(key))
            return True

    def claim_reminder(self, conn, *, invoice_number, level):
        return self._claim_pair(conn, self.reminders, (invoice_number, level))

    def release_reminder(self, conn, *, invoice_number, level):
        with self.lock:
            self.reminders.discard((invoice_number, level))

    def claim_escalation(self, conn, *, invoice_number, level):
        return self._claim_pair(conn, self.escalations, (invoice_number, level))

    def release_escalation(self, conn, *, invoice_number, level):
        with self.lock:
            self.escalations.discard((invoice_number, level))

    # ------------------------------------------------------
    # module-shaped views
    # ------------------------------------------------------

    def modules(self) -> dict[str, SimpleNamespace]:
        def ns(*names):
            return SimpleNamespace(**{n: getattr(self, n) for n in names})

        return {
            "invoices": ns(
                "get_invoice", "get_invoice_by_number", "update_invoice_status", "get_milestone",
                "get_milestone_by_token", "list_milestones", "mark_milestone_completed",
                "count_unreleased_milestones", "get_user", "get_guest", "upsert_guest",
                "set_guest_chat_token", "guest_has_chat_token",
            ),
            "credentials": ns(
                "get_confirmation_code", "get_confirmation_by_token", "has_confirmation_code",
                "insert_confirmation_code", "claim_confirmation_code", "claim_milestone_release",
            ),
            "payments": ns(
                "insert_payment", "set_gateway_reference", "get_payment_by_ref", "get_latest_payment",
                "has_paid_payment", "mark_payment_paid", "claim_processed_payment", "open_chat",
                "insert_chat_message", "list_chat_messages",
            ),
            "settlements": ns("open_attempt", "get_attempt", "mark_attempt", "list_attempts", "insert_payout"),
            "referrals": ns(
                "insert_referral_earning", "increment_referral_balance", "deduct_referral_balance",
                "insert_withdrawal", "mark_withdrawal", "list_withdrawals", "has_pending_withdrawal",
                "get_referral_account", "list_referral_earnings",
            ),
            "disputes": ns(
                "get_dispute_for_invoice", "get_dispute_by_token", "insert_dispute",
                "claim_dispute_resolution", "list_open_disputes",
            ),
            "jobs": ns(
                "list_reminder_candidates", "claim_reminder", "release_reminder",
                "claim_escalation", "release_escalation",
            ),
        }


class RecordingNotifier:
    """Replaces services.notifications in the service modules."""

    def __init__(self):
        self.lock = threading.Lock()
        self.in_app: list[dict] = []
        self.emails: list[dict] = []
        self.fail_emails = False

    def notify_user(self, user_id, type, title, body, data=None) -> bool:
        with self.lock:
            self.in_app.append({"user_id": user_id, "type": type, "title": title, "body": body, "data": data})
        return True

    def send_email_safe(self, to, subject, html_body, attachments=None) -> bool:
        if not to:
            return False
        if self.fail_emails:
            return False
        with self.lock:
            self.emails.append({"to": to, "subject": subject, "html": html_body, "attachments": attachments})
        return True

    def subjects_to(self, to: str) -> list[str]:
        return [e["subject"] for e in self.emails if e["to"] == to]


def service_modules():
    from app.confirmation import service as confirmation
    from app.delivery import service as delivery
    from app.disputes import service as disputes_service
    from app.jobs import escalation
    from app.payments import collect, poller, processing
    from app.referrals import withdrawals
    from app.settlement import engine, reconcile

    return [engine, reconcile, confirmation, delivery, disputes_service, processing, poller, collect, escalation, withdrawals]


def install(monkeypatch, ledger: Optional[FakeLedger] = None, rail: Optional[Any] = None) -> SimpleNamespace:
    """Point every service module at one fake ledger, rail and notifier."""
    ledger = ledger or FakeLedger()
    rail = rail or MockRail(default_status="PENDING")
    notifier = RecordingNotifier()
    views = ledger.modules()

    for module in service_modules():
        for name, view in views.items():
            if hasattr(module, name) and getattr(getattr(module, name), "__name__", "").startswith("app.ledger."):
                monkeypatch.setattr(module, name, view)
        if hasattr(module, "get_conn"):
            monkeypatch.setattr(module, "get_conn", ledger.get_conn)
        if hasattr(module, "get_rail"):
            monkeypatch.setattr(module, "get_rail", lambda: rail)
        if hasattr(module, "notifications"):
            monkeypatch.setattr(module, "notifications", notifier)

    return SimpleNamespace(ledger=ledger, rail=rail, notifier=notifier)


def auth_headers(user_id, extra: Optional[dict] = None) -> dict:
    from security import create_access_token

    h = {"Authorization": f"Bearer {create_access_token(str(user_id))}"}
    if extra:
        h.update(extra)
    return h
