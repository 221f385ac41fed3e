import logging
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

import bcrypt

from errors import AuthError
from models.models import AuthEvent, Identity
from mongo import ACCOUNTS, SESSIONS, DocumentStore, ListenerRegistry, Subscription, where

MIN_PASSWORD_LENGTH = 6


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


class IdentityGateway:
    """
    Email/password accounts with opaque bearer tokens.

    Accounts and live sessions are kept in the document store; listeners
    registered with on_auth_change hear about every sign-in and sign-out.
    """

    def __init__(self, store: DocumentStore, session_ttl_hours: int = 24):
        self.store = store
        self.session_ttl = session_ttl_hours * 3600
        self._listeners = ListenerRegistry()

    def sign_up(self, email: str, password: str, display_name: str) -> Identity:
        normalized_email = email.strip().lower()
        if not normalized_email:
            raise AuthError("Email is required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
        if self.store.query(ACCOUNTS, [where("email", "==", normalized_email)]):
            raise AuthError("Email already registered")

        uid = uuid.uuid4().hex
        self.store.set(ACCOUNTS, uid, {
            "email": normalized_email,
            "passwordHash": hash_password(password),
            "displayName": display_name,
            "createdAt": datetime.now(timezone.utc),
        })
        logging.info(f"Account created for {normalized_email}")
        return self._open_session(uid, normalized_email, display_name)

    def sign_in(self, email: str, password: str) -> Identity:
        normalized_email = email.strip().lower()
        accounts = self.store.query(ACCOUNTS, [where("email", "==", normalized_email)])
        if not accounts or not verify_password(password, accounts[0].get("passwordHash", "")):
            raise AuthError("Invalid credentials")
        account = accounts[0]
        return self._open_session(account["id"], account["email"], account.get("displayName", ""))

    def sign_out(self, token: str) -> None:
        session = self.store.get(SESSIONS, token) if token else None
        if not session:
            return
        self.store.delete(SESSIONS, token)
        self._emit(AuthEvent(uid=session["uid"], token=token, identity=None))

    def delete_account(self, uid: str) -> None:
        """Sign out every session of `uid` and remove the account record."""
        for session in self.store.query(SESSIONS, [where("uid", "==", uid)]):
            self.sign_out(session["id"])
        self.store.delete(ACCOUNTS, uid)
        logging.info(f"Account {uid} deleted")

    def current_identity(self, token: str) -> Identity:
        session = self.store.get(SESSIONS, token) if token else None
        if not session:
            raise AuthError("Invalid token")
        if session.get("expiresAt", 0) < time.time():
            self.store.delete(SESSIONS, token)
            raise AuthError("Session expired")
        account = self.store.get(ACCOUNTS, session["uid"])
        if not account:
            raise AuthError("User not found")
        return Identity(
            uid=account["id"],
            email=account["email"],
            display_name=account.get("displayName", ""),
            token=token,
            expires_at=session["expiresAt"],
        )

    def on_auth_change(self, callback: Callable[[AuthEvent], None]) -> Subscription:
        return self._listeners.add(callback)

    def _open_session(self, uid: str, email: str, display_name: str) -> Identity:
        token = secrets.token_urlsafe(32)
        expires_at = time.time() + self.session_ttl
        self.store.set(SESSIONS, token, {"uid": uid, "expiresAt": expires_at})
        identity = Identity(uid=uid, email=email, display_name=display_name, token=token, expires_at=expires_at)
        self._emit(AuthEvent(uid=uid, token=token, identity=identity))
        return identity

    def _emit(self, event: AuthEvent) -> None:
        for callback in self._listeners.entries():
            try:
                callback(event)
            except Exception:
                logging.exception("Auth change listener failed")
