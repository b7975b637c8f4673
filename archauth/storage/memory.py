from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from archauth.logging import get_logger
from archauth.storage.errors import ConstraintViolation
from archauth.storage.models import (
    SINGLE_USE_TOKEN_KINDS,
    USER_ROLES,
    OAuthAccount,
    Session,
    SingleUseToken,
    User,
    utcnow,
)

_UPDATABLE_USER_FIELDS = frozenset(
    {"full_name", "avatar_url", "role", "email_verified", "password_hash"}
)


class MemoryStore:
    """In-process user, session and single-use token store.

    Suitable for tests and single-process deployments. When ``fs_root`` is
    given, state is written to ``<fs_root>/state/auth_state.json`` after every
    mutation and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[tuple[str, str], SingleUseToken] = {}
        self.oauth_accounts: Dict[tuple[str, str], OAuthAccount] = {}
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        *,
        full_name: str,
        password_hash: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        role: str = "user",
        oauth_account: Optional[OAuthAccount] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ValueError(f"unknown role: {role}")
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                avatar_url=avatar_url,
                email_verified=email_verified,
                role=role,
            )
            self.users[user.id] = user
            if oauth_account is not None:
                self._put_oauth_account(replace(oauth_account, user_id=user.id))
            self._persist_state()
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if "role" in fields and fields["role"] not in USER_ROLES:
            raise ValueError(f"unknown role: {fields['role']}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, email_verified=True)

    def link_oauth_account(self, account: OAuthAccount) -> OAuthAccount:
        with self._data_lock:
            if account.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
            stored = self._put_oauth_account(account)
            self._persist_state()
            return replace(stored)

    def sync_oauth_account(
        self, account: OAuthAccount, *, avatar_url: Optional[str] = None
    ) -> User:
        """Link ``account`` and optionally refresh the avatar under one lock hold."""
        with self._data_lock:
            user = self.users.get(account.user_id)
            if user is None:
                raise ConstraintViolation("user does not exist", {"user_id": account.user_id})
            self._put_oauth_account(account)
            if avatar_url:
                user = replace(user, avatar_url=avatar_url, updated_at=utcnow())
                self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _put_oauth_account(self, account: OAuthAccount) -> OAuthAccount:
        key = (account.provider, account.provider_account_id)
        existing = self.oauth_accounts.get(key)
        if existing:
            account = replace(account, created_at=existing.created_at, updated_at=utcnow())
        self.oauth_accounts[key] = account
        return account

    def get_oauth_account(self, provider: str, provider_account_id: str) -> Optional[OAuthAccount]:
        with self._data_lock:
            account = self.oauth_accounts.get((provider, provider_account_id))
            return replace(account) if account else None

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            now = utcnow()
            sess = Session(
                id=session_id or str(uuid.uuid4()),
                user_id=user_id,
                refresh_token_hash=refresh_token_hash,
                expires_at=expires_at,
                created_at=now,
                last_used_at=now,
            )
            if sess.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": sess.id})
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token_hash(self, refresh_token_hash: str) -> Optional[Session]:
        now = utcnow()
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token_hash == refresh_token_hash and sess.expires_at > now:
                    return replace(sess)
            return None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def touch_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_used_at = utcnow()
            self._persist_state()

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # single-use tokens
    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in SINGLE_USE_TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")

    def create_single_use_token(
        self, kind: str, user_id: str, token: str, expires_at: datetime
    ) -> SingleUseToken:
        self._check_kind(kind)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if (kind, token) in self.tokens:
                raise ConstraintViolation("token already exists", {"kind": kind})
            record = SingleUseToken(token=token, kind=kind, user_id=user_id, expires_at=expires_at)
            self.tokens[(kind, token)] = record
            self._persist_state()
            return replace(record)

    def get_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]:
        self._check_kind(kind)
        with self._data_lock:
            record = self.tokens.get((kind, token))
            if record is None or record.is_expired():
                return None
            return replace(record)

    def consume_single_use_token(self, kind: str, token: str) -> Optional[SingleUseToken]:
        """Delete and return the token; None if unknown, expired or already used."""
        self._check_kind(kind)
        with self._data_lock:
            record = self.tokens.pop((kind, token), None)
            if record is None:
                return None
            self._persist_state()
            if record.is_expired():
                return None
            return record

    def delete_single_use_token(self, kind: str, token: str) -> None:
        self._check_kind(kind)
        with self._data_lock:
            if self.tokens.pop((kind, token), None) is not None:
                self._persist_state()

    def delete_user_single_use_tokens(self, kind: str, user_id: str) -> int:
        self._check_kind(kind)
        with self._data_lock:
            stale = [
                key for key, rec in self.tokens.items()
                if rec.kind == kind and rec.user_id == user_id
            ]
            for key in stale:
                self.tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_single_use_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [key for key, rec in self.tokens.items() if rec.expires_at <= now]
            for key in stale:
                self.tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # compound writes
    def reset_password(self, token: str, password_hash: str) -> Optional[User]:
        """Consume a reset token, store the new hash and drop every session.

        All three happen under one lock hold, so no caller observes a state
        where only part of the reset applied.
        """
        with self._data_lock:
            record = self.consume_single_use_token("password_reset", token)
            if record is None:
                return None
            user = self.users.get(record.user_id)
            if user is None:
                return None
            self.users[user.id] = replace(user, password_hash=password_hash, updated_at=utcnow())
            for sid in [s for s, sess in self.sessions.items() if sess.user_id == user.id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return replace(self.users[user.id])

    def replace_password(self, user_id: str, password_hash: str) -> Optional[User]:
        """Store a new hash for ``user_id`` and drop every session it holds."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            self.users[user_id] = replace(user, password_hash=password_hash, updated_at=utcnow())
            for sid in [s for s, sess in self.sessions.items() if sess.user_id == user_id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return replace(self.users[user_id])

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_state.json"

    @staticmethod
    def _dump(record) -> dict:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in asdict(record).items()
        }

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._dump(u) for u in self.users.values()],
            "sessions": [self._dump(s) for s in self.sessions.values()],
            "tokens": [self._dump(t) for t in self.tokens.values()],
            "oauth_accounts": [self._dump(a) for a in self.oauth_accounts.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_state_corrupt", path=str(path), error=str(exc))
            return False

        def _dt(raw: str) -> datetime:
            return datetime.fromisoformat(raw)

        self.users = {}
        for raw in data.get("users", []):
            user = User(**{**raw, "created_at": _dt(raw["created_at"]), "updated_at": _dt(raw["updated_at"])})
            self.users[user.id] = user
        self.sessions = {}
        for raw in data.get("sessions", []):
            sess = Session(
                **{
                    **raw,
                    "expires_at": _dt(raw["expires_at"]),
                    "created_at": _dt(raw["created_at"]),
                    "last_used_at": _dt(raw["last_used_at"]),
                }
            )
            self.sessions[sess.id] = sess
        self.tokens = {}
        for raw in data.get("tokens", []):
            rec = SingleUseToken(
                **{**raw, "expires_at": _dt(raw["expires_at"]), "created_at": _dt(raw["created_at"])}
            )
            self.tokens[(rec.kind, rec.token)] = rec
        self.oauth_accounts = {}
        for raw in data.get("oauth_accounts", []):
            acct = OAuthAccount(
                **{**raw, "created_at": _dt(raw["created_at"]), "updated_at": _dt(raw["updated_at"])}
            )
            self.oauth_accounts[(acct.provider, acct.provider_account_id)] = acct
        self.logger.info(
            "memory_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
