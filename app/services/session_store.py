from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from app.services.collaborators import ANONYMOUS_IDENTITY, is_anonymous


class SessionStore:
    """File-backed stand-in for the accounts/billing service.

    Layout under ``data_dir``:
    - ``accounts.json``: ``{"accounts": {identity: {...plan fields...}}}``
    - ``sessions/<created>__<id>.json``: one record per finished session
    - ``usage_log.jsonl``: one line per logged cost or charge

    All writes go through one re-entrant lock so concurrent finalizations for
    the same identity cannot lose a balance update.
    """

    DEMO_TOKEN = "demo-token"

    def __init__(self, data_dir: str, *, hourly_rate: float = 2.0) -> None:
        self._data_dir = data_dir
        self._hourly_rate = hourly_rate
        self._lock = threading.RLock()
        self._logger = logging.getLogger("relay.store")
        os.makedirs(self.sessions_dir, exist_ok=True)

    # ── paths ─────────────────────────────────────────────────────────

    @property
    def accounts_path(self) -> str:
        return os.path.join(self._data_dir, "accounts.json")

    @property
    def sessions_dir(self) -> str:
        return os.path.join(self._data_dir, "sessions")

    @property
    def usage_log_path(self) -> str:
        return os.path.join(self._data_dir, "usage_log.jsonl")

    # ── file helpers ──────────────────────────────────────────────────

    def _read_json(self, path: str) -> Optional[dict]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("Failed to read %s error=%s", path, exc)
        return None

    def _write_json(self, path: str, data: dict) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        temp_path = f"{path}.tmp"
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)

    def _load_accounts(self) -> dict:
        data = self._read_json(self.accounts_path) or {}
        accounts = data.get("accounts")
        return accounts if isinstance(accounts, dict) else {}

    def _save_accounts(self, accounts: dict) -> None:
        self._write_json(self.accounts_path, {"accounts": accounts})

    def get_account(self, identity: str) -> Optional[dict]:
        with self._lock:
            account = self._load_accounts().get(identity)
            return dict(account) if isinstance(account, dict) else None

    def upsert_account(self, identity: str, **fields) -> dict:
        with self._lock:
            accounts = self._load_accounts()
            account = accounts.setdefault(identity, {})
            account.update(fields)
            self._save_accounts(accounts)
            return dict(account)

    # ── identity / entitlement ────────────────────────────────────────

    def resolve_identity(self, token: Optional[str]) -> str:
        if not token or token == self.DEMO_TOKEN:
            self._logger.info("Demo mode user")
            return ANONYMOUS_IDENTITY
        with self._lock:
            for identity, account in self._load_accounts().items():
                tokens = account.get("tokens", []) if isinstance(account, dict) else []
                if token in tokens:
                    self._logger.info("Authenticated user: %s", identity)
                    return identity
        self._logger.info("Invalid token provided, falling back to demo mode")
        return ANONYMOUS_IDENTITY

    def has_active_plan(self, identity: str) -> bool:
        if is_anonymous(identity):
            return False
        account = self.get_account(identity)
        if not account:
            return False
        if account.get("is_test_account"):
            return True
        if account.get("subscription_status") == "active" and float(
            account.get("hours_used_this_month", 0.0)
        ) < float(account.get("hours_limit", 0.0)):
            return True
        if account.get("tier") == "payg" and float(account.get("credits_balance", 0.0)) > 0:
            return True
        return account.get("subscription_plan") == "payg"

    def is_export_linked(self, identity: str) -> bool:
        if is_anonymous(identity):
            return False
        account = self.get_account(identity)
        return bool(account and account.get("export_linked"))

    # ── persistence / billing ─────────────────────────────────────────

    def save_session(self, record: dict) -> None:
        created_at = record.get("createdAt") or datetime.now(timezone.utc).isoformat()
        session_id = record.get("id") or uuid.uuid4().hex
        stamp = datetime.fromisoformat(created_at).strftime("%Y%m%dT%H%M%S")
        path = os.path.join(self.sessions_dir, f"{stamp}__{session_id}.json")
        with self._lock:
            self._write_json(path, {**record, "id": session_id, "createdAt": created_at})
            identity = record.get("userId") or ANONYMOUS_IDENTITY
            accounts = self._load_accounts()
            account = accounts.get(identity)
            if isinstance(account, dict):
                account["total_sessions"] = int(account.get("total_sessions", 0)) + 1
                account["total_speech_cost"] = float(account.get("total_speech_cost", 0.0)) + float(
                    record.get("speechCost", 0.0)
                )
                account["total_ai_cost"] = float(account.get("total_ai_cost", 0.0)) + float(
                    record.get("aiCost", 0.0)
                )
                self._save_accounts(accounts)
        self._logger.info("Session saved: id=%s path=%s", session_id, os.path.basename(path))

    def log_usage(
        self,
        identity: str,
        session_id: str,
        service: str,
        operation: str,
        cost: float,
        details: str,
    ) -> None:
        entry = {
            "id": uuid.uuid4().hex,
            "userId": identity,
            "sessionId": session_id,
            "service": service,
            "operation": operation,
            "cost": cost,
            "details": details,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            os.makedirs(os.path.dirname(self.usage_log_path), exist_ok=True)
            with open(self.usage_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def read_usage_log(self) -> list[dict]:
        with self._lock:
            if not os.path.exists(self.usage_log_path):
                return []
            entries = []
            with open(self.usage_log_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        entries.append(json.loads(line))
            return entries

    def debit_usage(self, identity: str, duration_minutes: float, session_id: str) -> None:
        """Charge recorded time against the identity's plan.

        Active subscriptions accumulate hours used this month; pay-as-you-go
        accounts spend credits (in hours). Either way a charge line is logged.
        """
        if is_anonymous(identity):
            return
        hours = duration_minutes / 60.0
        cost = hours * self._hourly_rate
        with self._lock:
            accounts = self._load_accounts()
            account = accounts.get(identity)
            if isinstance(account, dict):
                if account.get("subscription_plan") and account.get("subscription_status") == "active":
                    account["hours_used_this_month"] = float(account.get("hours_used_this_month", 0.0)) + hours
                elif account.get("tier") == "payg":
                    account["credits_balance"] = float(account.get("credits_balance", 0.0)) - hours
                self._save_accounts(accounts)
            else:
                self._logger.warning("Debit for unknown identity=%s session=%s", identity, session_id)
            self.log_usage(
                identity,
                session_id,
                "ClassNotes",
                "Transcription",
                cost,
                json.dumps({"duration_minutes": duration_minutes, "hours_charged": hours}),
            )

    def list_sessions(self, identity: Optional[str] = None) -> list[dict]:
        with self._lock:
            try:
                names = sorted(os.listdir(self.sessions_dir), reverse=True)
            except OSError as exc:
                self._logger.warning("Failed to list sessions dir: %s", exc)
                return []
            sessions = []
            for name in names:
                if not name.endswith(".json"):
                    continue
                record = self._read_json(os.path.join(self.sessions_dir, name))
                if record is None:
                    continue
                if identity is None or record.get("userId") == identity:
                    sessions.append(record)
            return sessions
